"""Startup configuration.

Environment variables are read once into a frozen Settings object.
validate_config() runs before the server accepts deliveries so that a missing
key causes a clear startup failure rather than a 500 on the first webhook.
"""

import os
import sys
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
]

# At least one of these must be set; the first wins.
WEBHOOK_SECRET_VARS = [
    "RETELL_WEBHOOK_API_KEY",
    "RETELL_API_KEY",
]

OPTIONAL_VARS = [
    "OPENAI_MODEL",
    "SUPABASE_URL",
    "SUPABASE_SECRET_KEY",
    "DEFAULT_TIMEZONE",
    "LOG_LEVEL",
]


def resolve_webhook_secret() -> str:
    """Return the webhook verification key, preferring the dedicated variable."""
    secret = os.getenv("RETELL_WEBHOOK_API_KEY", "")
    if secret:
        return secret
    secret = os.getenv("RETELL_API_KEY", "")
    if secret:
        logger.warning("RETELL_WEBHOOK_API_KEY not set, falling back to RETELL_API_KEY")
    return secret


@dataclass(frozen=True)
class Settings:
    webhook_secret: str = ""
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    extraction_timeout: float = 20.0
    extraction_lease_seconds: float = 120.0
    human_duration_threshold_ms: int = 5000
    max_write_attempts: int = 3
    default_timezone: str = "UTC"
    supabase_url: str = ""
    supabase_secret_key: str = ""
    log_level: str = "INFO"
    port: int = 8765

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_secret_key)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            webhook_secret=resolve_webhook_secret(),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            extraction_timeout=float(os.getenv("EXTRACTION_TIMEOUT", "20")),
            extraction_lease_seconds=float(os.getenv("EXTRACTION_LEASE_SECONDS", "120")),
            human_duration_threshold_ms=int(os.getenv("HUMAN_DURATION_THRESHOLD_MS", "5000")),
            max_write_attempts=int(os.getenv("MAX_WRITE_ATTEMPTS", "3")),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
            supabase_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
            supabase_secret_key=os.getenv("SUPABASE_SECRET_KEY", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "8765")),
        )


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
    if not any(os.getenv(var) for var in WEBHOOK_SECRET_VARS):
        missing.append(" or ".join(WEBHOOK_SECRET_VARS))

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or your deployment secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)
