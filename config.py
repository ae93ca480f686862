import os
from typing import List, Optional

from pydantic import BaseModel


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "sqlite:///./storefront.db"
    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = 60
    port: int = 8000
    track_stock: bool = True
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    bcrypt_rounds: int = 12
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./storefront.db"),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", "60")),
            port=int(os.getenv("PORT", "8000")),
            track_stock=_env_bool("TRACK_STOCK", True),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
            admin_email=os.getenv("ADMIN_EMAIL"),
            admin_password=os.getenv("ADMIN_PASSWORD"),
        )
