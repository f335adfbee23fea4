# config.py
"""
Environment-driven settings shared by the license tools.

Values come from the process environment, optionally seeded from a local .env file.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default=None):
    v = os.getenv(name)
    return v if v not in ("", None) else default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, default))
    except (TypeError, ValueError):
        return default


# Auth scope
TENANT_ID = _env("AZURE_TENANT_ID")
CLIENT_ID = _env("AZURE_CLIENT_ID")
ACCESS_TOKEN = _env("AZURE_ACCESS_TOKEN")

# Readiness polling for stopped resources (seconds)
POLL_INTERVAL = _env_float("SQLLIC_POLL_INTERVAL", 30.0)
POLL_BACKOFF = _env_float("SQLLIC_POLL_BACKOFF", 1.5)
POLL_MAX_INTERVAL = _env_float("SQLLIC_POLL_MAX_INTERVAL", 300.0)
POLL_MAX_ATTEMPTS = _env_int("SQLLIC_POLL_MAX_ATTEMPTS", 40)
POLL_TIMEOUT = _env_float("SQLLIC_POLL_TIMEOUT", 3600.0)

# Optional JSON copy of the end-of-run report
OUTPUT_DIR = _env("OUTPUT_DIR", "")

DEBUG = (_env("SQLLIC_DEBUG", "") or "").strip() in ("1", "true", "True", "yes", "YES")


def debug(msg: str) -> None:
    if DEBUG:
        print(f"[DEBUG] {msg}")
