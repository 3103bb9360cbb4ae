"""Application settings and validation."""

import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    ENV: str
    DATA_DIR: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    AUTH_ENABLED: bool
    ALLOW_DEV_CORS: bool
    LOCK_TIMEOUT_SECONDS: float
    SEED_DEMO_DATA: bool
    ADMIN_EMAIL: str
    ADMIN_PASSWORD: str
    LOGIN_RATE_LIMIT_PER_MIN: int
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATA_DIR = os.path.abspath(os.getenv("DATA_DIR", "./data"))
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip() or f"sqlite:///{os.path.join(self.DATA_DIR, 'cms.db')}"
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.AUTH_ENABLED = _flag("AUTH_ENABLED", "true")
        self.ALLOW_DEV_CORS = _flag("ALLOW_DEV_CORS", "true")
        self.LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
        self.SEED_DEMO_DATA = _flag("SEED_DEMO_DATA", "true")
        self.ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@cms.com").strip().lower()
        self.ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
        self.LOGIN_RATE_LIMIT_PER_MIN = int(os.getenv("LOGIN_RATE_LIMIT_PER_MIN", "20"))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.LOCK_TIMEOUT_SECONDS <= 0:
            raise RuntimeError("LOCK_TIMEOUT_SECONDS must be positive")
        if self.JWT_EXPIRE_HOURS <= 0:
            raise RuntimeError("JWT_EXPIRE_HOURS must be positive")
        if self.LOGIN_RATE_LIMIT_PER_MIN <= 0:
            raise RuntimeError("LOGIN_RATE_LIMIT_PER_MIN must be positive")
