import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")
    STORAGE_TIMEOUT = float(os.environ.get("STORAGE_TIMEOUT", "5"))

    # --- Redis (notification queue) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    NOTIFICATION_QUEUE = os.environ.get("NOTIFICATION_QUEUE", "notifications")
    PUBLISH_TIMEOUT = float(os.environ.get("PUBLISH_TIMEOUT", "5"))
    PUBLISH_RETRIES = int(os.environ.get("PUBLISH_RETRIES", "3"))
    # How long the per-reminder "already pushed" marker is kept
    PUBLISH_DEDUPE_SECONDS = int(os.environ.get("PUBLISH_DEDUPE_SECONDS", "86400"))
    # Envelopes carry the pre-commit "waiting" snapshot unless this is set
    PUBLISH_TERMINAL_STATUS = _env_bool("PUBLISH_TERMINAL_STATUS", "false")

    # --- Dispatch loop ---
    DISPATCH_INTERVAL_SECONDS = float(os.environ.get("DISPATCH_INTERVAL_SECONDS", "1.0"))
    DISPATCH_BATCH_SIZE = int(os.environ.get("DISPATCH_BATCH_SIZE", "100"))
    DISPATCH_CONCURRENCY = int(os.environ.get("DISPATCH_CONCURRENCY", "4"))
    DISPATCH_ON_STARTUP = _env_bool("DISPATCH_ON_STARTUP", "true")
    CLAIM_TTL_SECONDS = float(os.environ.get("CLAIM_TTL_SECONDS", "60"))

    # --- Rendering ---
    SMS_SENDER_NAME = os.environ.get("SMS_SENDER_NAME", "Abigail")
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/Los_Angeles")

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise AttributeError(f"unknown setting {key!r}")
            setattr(self, key, value)

settings = Settings()
