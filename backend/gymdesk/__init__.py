"""Application package for the gymdesk gym-management backend.

This package exposes the billing, service, repository and model modules
used by the FastAPI application. It is intentionally lightweight;
individual modules contain the concrete implementations and
documentation.
"""
