"""
Configuration - Environment-backed settings.

Values are read at call time so tests and long-lived processes always see
the current environment. The CLI loads a .env file before anything reads
these helpers.
"""

import os
from typing import Optional

DEFAULT_STEP_TIMEOUT = 10
DEFAULT_EXPORT_FILE = "exported_vars.json"
DEFAULT_FLOW_DIR = "flow"


def get_default_timeout() -> int:
    """Default per-step timeout in seconds."""
    return int(os.environ.get("STEPFLOW_DEFAULT_TIMEOUT", str(DEFAULT_STEP_TIMEOUT)))


def get_database_url() -> str:
    """Fallback SQL connection string (last in the resolution order)."""
    return os.environ.get("DATABASE_URL", "").strip()


def get_mongo_uri() -> str:
    """Fallback document-store URI (last in the resolution order)."""
    return os.environ.get("MONGO_URI", "").strip()


def get_export_file() -> str:
    return os.environ.get("STEPFLOW_EXPORT_FILE", DEFAULT_EXPORT_FILE)


def get_flow_dir() -> str:
    return os.environ.get("STEPFLOW_FLOW_DIR", DEFAULT_FLOW_DIR)


def get_log_dir() -> Optional[str]:
    """Run log directory, or None when run logging is disabled."""
    value = os.environ.get("STEPFLOW_LOG_DIR", "").strip()
    return value or None
