import os
import logging
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables - explicitly look in backend directory
backend_dir = Path(__file__).parent
env_path = backend_dir / '.env'
load_dotenv(dotenv_path=env_path)

logger = logging.getLogger(__name__)

DEV_SECRET_KEY = "ilaw_ng_bayan_dev_secret_key_change_me"


class Settings(BaseModel):
    secret_key: str = DEV_SECRET_KEY
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7

    # percent_complete at or above this counts as a finished book
    completion_threshold: float = 100.0
    # reported as avgReadingTime when no closed session has a duration
    fallback_avg_reading_time: int = 25

    reset_token_expire_minutes: int = 15
    min_password_length: int = 6

    upload_dir: str = str(backend_dir / "uploads")
    max_upload_bytes: int = 5 * 1024 * 1024
    allowed_upload_extensions: List[str] = [
        "png", "jpg", "jpeg", "gif", "webp", "pdf", "mp3", "wav", "mp4",
    ]

    cors_origins: List[str] = ["*"]


def _csv(value: str) -> List[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def load_settings() -> Settings:
    """Build settings from the process environment."""
    defaults = Settings()
    secret_key = os.getenv("SECRET_KEY") or os.getenv("JWT_SECRET")
    if not secret_key:
        logger.warning("⚠️  SECRET_KEY not found in environment variables. Using development fallback.")
        secret_key = DEV_SECRET_KEY
    elif len(secret_key) < 32:
        logger.warning("⚠️  SECRET_KEY is too short. Consider using a longer, more secure key.")

    extensions = os.getenv("ALLOWED_UPLOAD_EXTENSIONS")
    origins = os.getenv("CORS_ORIGINS")

    return Settings(
        secret_key=secret_key,
        algorithm=os.getenv("ALGORITHM", defaults.algorithm),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", defaults.access_token_expire_minutes)),
        completion_threshold=float(os.getenv("COMPLETION_THRESHOLD", defaults.completion_threshold)),
        fallback_avg_reading_time=int(os.getenv("FALLBACK_AVG_READING_TIME", defaults.fallback_avg_reading_time)),
        reset_token_expire_minutes=int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", defaults.reset_token_expire_minutes)),
        min_password_length=int(os.getenv("MIN_PASSWORD_LENGTH", defaults.min_password_length)),
        upload_dir=os.getenv("UPLOAD_DIR", defaults.upload_dir),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", defaults.max_upload_bytes)),
        allowed_upload_extensions=_csv(extensions) if extensions else defaults.allowed_upload_extensions,
        cors_origins=[o.strip() for o in origins.split(",")] if origins else defaults.cors_origins,
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
