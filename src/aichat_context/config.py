"""Environment-driven configuration for aichat-context."""

import logging
import os
import sys
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "Brisbane, Australia"
DEFAULT_GEOCODER_URL = "https://nominatim.openstreetmap.org"
BACKEND_CHOICES = ("auto", "sqlite", "json")


def get_data_dir() -> Path:
    """Return the directory where the conversation document is stored."""
    env = os.environ.get("AICHAT_CONTEXT_DIR")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "aichat-context"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "aichat-context"
    else:  # Linux
        return Path.home() / ".local" / "share" / "aichat-context"


def get_backend_preference() -> str:
    """Return the storage backend to use: auto, sqlite or json."""
    value = os.environ.get("AICHAT_CONTEXT_BACKEND", "auto").strip().lower()
    if value not in BACKEND_CHOICES:
        logger.warning("Unknown AICHAT_CONTEXT_BACKEND %r, using auto", value)
        return "auto"
    return value


def get_default_location() -> str:
    return os.environ.get("AICHAT_CONTEXT_LOCATION") or DEFAULT_LOCATION


def get_timezone() -> tzinfo | None:
    """Return the zone used to format session date/time, or None for host local time."""
    name = os.environ.get("AICHAT_CONTEXT_TZ")
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning("Unknown time zone %r, using local time: %s", name, e)
        return None


def get_geocoder_url() -> str:
    return os.environ.get("AICHAT_CONTEXT_GEOCODER_URL") or DEFAULT_GEOCODER_URL
