import os
from typing import Optional

_TRUTHY = {"1", "true", "yes", "y", "on"}


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_required_setting(name: str) -> str:
    """Return a required environment setting or raise a ValueError."""
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def _int_setting(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = str(os.getenv(name) or "").strip()
    try:
        parsed = int(raw) if raw else default
    except ValueError:
        parsed = default
    return max(minimum, min(maximum, parsed))


def _float_setting(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = str(os.getenv(name) or "").strip()
    try:
        parsed = float(raw) if raw else default
    except ValueError:
        parsed = default
    return max(minimum, min(maximum, parsed))


def _flag_setting(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/app.db"


def get_storage_connection_string() -> Optional[str]:
    return os.getenv("AZURE_STORAGE_CONNECTION_STRING") or os.getenv("AzureWebJobsStorage") or None


def get_dedupe_settings() -> dict:
    """
    Tunables for duplicate detection and resolution.
    `detection_mode` is one of auto/inline/queue; auto picks the queue only
    when a storage connection string is configured.
    """
    mode = str(os.getenv("DUPLICATE_DETECTION_MODE") or "auto").strip().lower()
    if mode not in {"auto", "inline", "queue"}:
        mode = "auto"
    if mode == "auto":
        mode = "queue" if get_storage_connection_string() else "inline"
    return {
        "threshold": _float_setting("DUPLICATE_THRESHOLD", 80.0, minimum=0.0, maximum=100.0),
        "batch_size": _int_setting("DUPLICATE_DETECTION_BATCH_SIZE", 100, minimum=1, maximum=5000),
        "rescan_dismissed": _flag_setting("DUPLICATE_RESCAN_DISMISSED"),
        "detection_mode": mode,
        "queue_name": os.getenv("DUPLICATE_DETECTION_QUEUE", "duplicate-detection-jobs"),
        "timeout_seconds": _int_setting("DUPLICATE_DETECTION_TIMEOUT_SECONDS", 240, minimum=1, maximum=3600),
        "max_page_size": _int_setting("DUPLICATES_MAX_PAGE_SIZE", 100, minimum=1, maximum=500),
    }
