"""Authentication helpers and FastAPI security dependencies.

This module decodes the JWT tokens issued at login and provides the
`get_current_account` dependency, which validates the bearer token and
returns the `GymAccount` it belongs to. Role checks are layered on top
as small dependencies (`require_admin`, `require_staff`) that raise
`PermissionError`; the application maps it to HTTP 403.

Token verification raises HTTPExceptions on failure so the helpers can
be used directly inside route dependencies.
"""

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session

bearer_scheme = HTTPBearer()


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="invalid token")


def get_current_account(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    session: Session = Depends(get_session),
) -> models.GymAccount:
    """FastAPI dependency that returns the authenticated staff account.

    The account is loaded in the request's session so services can use
    it directly. Deactivated accounts, accounts of suspended gyms and
    tokens whose gym no longer matches the account are rejected.
    """
    payload = decode_token(credentials.credentials)
    account_id = payload.get("account_id")
    if not account_id:
        raise HTTPException(status_code=401, detail="invalid token payload")
    account = repositories.LoginRepository(session).get(account_id)
    if not account or not account.is_active:
        raise HTTPException(status_code=401, detail="account not found")
    if account.gym_id != payload.get("gym_id"):
        raise HTTPException(status_code=401, detail="invalid token payload")
    gym = repositories.GymRepository(session).get(account.gym_id)
    if gym is None or gym.status != "active":
        raise HTTPException(status_code=403, detail="gym is not active")
    return account


def require_staff(account: models.GymAccount = Depends(get_current_account)) -> models.GymAccount:
    """Admins and receptionists; trainers are read-only on the front desk."""
    if account.role not in ("admin", "receptionist"):
        raise PermissionError("front desk role required")
    return account


def require_admin(account: models.GymAccount = Depends(get_current_account)) -> models.GymAccount:
    if account.role != "admin":
        raise PermissionError("admin role required")
    return account
