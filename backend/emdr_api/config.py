"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent

DEFAULT_JWT_SECRET = "change_me_for_prod"
DEFAULT_WEBHOOK_SECRET = "change_me_webhook_secret"


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    RESET_TOKEN_EXPIRE_MINUTES: int
    MAX_UPLOAD_BYTES: int
    UPLOAD_DIR: Path
    WEBHOOK_SECRET: str
    WEBHOOK_TARGET_URL: str
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET)
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "168"))  # 7 days
        self.RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", "60"))
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10 MB default
        self.UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(BASE / "data" / "uploads"))).expanduser()
        self.WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", DEFAULT_WEBHOOK_SECRET)
        self.WEBHOOK_TARGET_URL = os.getenv("WEBHOOK_TARGET_URL", "http://localhost:3000/api/webhooks/kajabi")
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    @property
    def is_dev(self) -> bool:
        return self.ENV == "dev"

    def _validate(self):
        if self.JWT_EXPIRE_HOURS <= 0 or self.RESET_TOKEN_EXPIRE_MINUTES <= 0:
            raise RuntimeError("token lifetimes must be positive")
        if self.is_dev or self.ALLOW_INSECURE_JWT:
            return
        if self.JWT_SECRET == DEFAULT_JWT_SECRET:
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.WEBHOOK_SECRET == DEFAULT_WEBHOOK_SECRET:
            raise RuntimeError("WEBHOOK_SECRET must be set to a non-default value in non-dev environments")


settings = Settings()
