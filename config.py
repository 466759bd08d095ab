"""
Configuration for the PetDance backend.
Holds the runtime settings, the dance-style allow-list and prompt templates.
"""

import os
import logging
from typing import List, Optional

from pydantic import BaseModel


# --- Constants ---
DANCE_STYLES = ["hip-hop", "ballet", "disco", "breakdance", "salsa", "robot"]

STORAGE_UNAVAILABLE_MSG = (
    "Video storage is being configured. Please try again later. (Storage requires billing setup)"
)
TEMPORARILY_UNAVAILABLE_MSG = "Service temporarily unavailable, please try again."

VALID_IMAGE_TYPES = ["image/jpeg", "image/jpg", "image/png", "image/webp"]
MAX_IMAGE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB

DEFAULT_REPLICATE_MODEL = "minimax/hailuo-2.3-fast"

# --- Prompt Engineering Section ---

DANCE_PROMPT = "A cute pet dancing in {style} style, smooth motion, professional quality"
SHORT_DANCE_PROMPT = "Pet dancing in {style} style"


def build_instruction(dance_style: str, short: bool = False) -> str:
    """Natural-language instruction sent to the video model for a style."""
    template = SHORT_DANCE_PROMPT if short else DANCE_PROMPT
    return template.format(style=dance_style)


# --- Storage layout ---

def input_image_path(user_id: str, job_id: str) -> str:
    return f"uploads/{user_id}/{job_id}/original.jpg"


def output_video_path(user_id: str, job_id: str) -> str:
    return f"outputs/{user_id}/{job_id}/dance.mp4"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


class Settings(BaseModel):
    """Runtime settings. Resolved once at process start, then passed around."""

    database_url: str = "sqlite:///./petdance.db"

    # Object storage
    storage_bucket: Optional[str] = None
    aws_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None

    # Inference provider
    replicate_api_token: Optional[str] = None
    replicate_model: str = DEFAULT_REPLICATE_MODEL
    replicate_webhook_secret: Optional[str] = None
    public_base_url: Optional[str] = None

    # Billing
    revenuecat_secret_key: Optional[str] = None

    # Identity
    auth_jwt_secret: Optional[str] = None
    auth_jwks_url: Optional[str] = None
    auth_audience: Optional[str] = None
    auth_issuer: Optional[str] = None

    # Background work
    celery_broker_url: str = "redis://localhost:6379/0"
    callback_dispatch: str = "inline"  # inline | celery

    # Limits
    free_user_daily_limit: int = 2
    upload_url_ttl: int = 15 * 60
    download_url_ttl: int = 60 * 60
    webhook_tolerance_seconds: int = 5 * 60
    start_claim_ttl: int = 120

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./petdance.db"),
            storage_bucket=_env_str("STORAGE_BUCKET"),
            aws_region=_env_str("AWS_REGION") or _env_str("AWS_DEFAULT_REGION"),
            s3_endpoint_url=_env_str("S3_ENDPOINT_URL"),
            replicate_api_token=_env_str("REPLICATE_API_TOKEN"),
            replicate_model=_env_str("REPLICATE_MODEL") or DEFAULT_REPLICATE_MODEL,
            replicate_webhook_secret=_env_str("REPLICATE_WEBHOOK_SECRET"),
            public_base_url=_env_str("PUBLIC_BASE_URL"),
            revenuecat_secret_key=_env_str("REVENUECAT_SECRET_KEY"),
            auth_jwt_secret=_env_str("AUTH_JWT_SECRET"),
            auth_jwks_url=_env_str("AUTH_JWKS_URL"),
            auth_audience=_env_str("AUTH_AUDIENCE"),
            auth_issuer=_env_str("AUTH_ISSUER"),
            celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
            callback_dispatch=os.getenv("CALLBACK_DISPATCH", "inline").strip().lower(),
            free_user_daily_limit=_env_int("FREE_USER_DAILY_LIMIT", 2),
            upload_url_ttl=_env_int("UPLOAD_URL_TTL", 15 * 60),
            download_url_ttl=_env_int("DOWNLOAD_URL_TTL", 60 * 60),
            webhook_tolerance_seconds=_env_int("WEBHOOK_TOLERANCE_SECONDS", 5 * 60),
            start_claim_ttl=_env_int("START_CLAIM_TTL", 120),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def callback_url(self) -> Optional[str]:
        if not self.public_base_url:
            return None
        return self.public_base_url.rstrip("/") + "/completion-callback"


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level, format="%(asctime)s - %(levelname)s - %(message)s")
