"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    DATABASE_URL: str
    LOG_LEVEL: str
    MAX_UPLOAD_BYTES: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    LOGIN_RATE_LIMIT_PER_MIN: int
    AUDIT_LOG_RETENTION_DAYS: int
    EXPIRY_WARNING_DAYS: int
    DEFAULT_CURRENCY: str
    DATA_DIR: Path

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "12"))
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'gymdesk.db'}")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(2 * 1024 * 1024)))  # 2 MB default
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOGIN_RATE_LIMIT_PER_MIN = int(os.getenv("LOGIN_RATE_LIMIT_PER_MIN", "10"))
        self.AUDIT_LOG_RETENTION_DAYS = int(os.getenv("AUDIT_LOG_RETENTION_DAYS", "180"))
        self.EXPIRY_WARNING_DAYS = int(os.getenv("EXPIRY_WARNING_DAYS", "7"))
        self.DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "COP").upper()
        self.DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE / "data"))).expanduser().resolve()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.AUDIT_LOG_RETENTION_DAYS < 1:
            raise RuntimeError("AUDIT_LOG_RETENTION_DAYS must be >= 1")
        if self.EXPIRY_WARNING_DAYS < 0:
            raise RuntimeError("EXPIRY_WARNING_DAYS must be >= 0")
        if len(self.DEFAULT_CURRENCY) != 3 or not self.DEFAULT_CURRENCY.isalpha():
            raise RuntimeError("DEFAULT_CURRENCY must be a three-letter ISO code")


settings = Settings()
