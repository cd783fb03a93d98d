"""Single source of truth for all configuration and secrets.

All modules import from here: never from os.environ directly.

Values come from secrets/internal.env (or its SOPS-encrypted twin when
MAGPIE_USE_SOPS=true). Environment variables of the same name win.
"""

import os
from pathlib import Path

from magpie.secrets import load_dotenv_fallback, load_secrets

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("MAGPIE_USE_SOPS", "false").lower() == "true"


def _load(scope: str) -> dict[str, str | None]:
    """Load secrets for a given scope (internal or external)."""
    if USE_SOPS:
        return load_secrets(PROJECT_ROOT / f"secrets/{scope}.env.enc")
    return load_dotenv_fallback(PROJECT_ROOT / f"secrets/{scope}.env")


_internal = _load("internal")


def _get(key: str, default: str = "") -> str:
    value = os.environ.get(key)
    if value is None:
        value = _internal.get(key)
    return default if value is None else value


# --- Mail provider ---
GMAIL_API_BASE_URL: str = _get("GMAIL_API_BASE_URL", "https://gmail.googleapis.com")
GMAIL_ACCESS_TOKEN: str = _get("GMAIL_ACCESS_TOKEN")
GMAIL_USER_ID: str = _get("GMAIL_USER_ID", "me")
PROVIDER_PAGE_SIZE: int = int(_get("PROVIDER_PAGE_SIZE", "50"))
REQUEST_TIMEOUT_SECONDS: float = float(_get("REQUEST_TIMEOUT_SECONDS", "30"))

# --- AI classification service ---
OLLAMA_BASE_URL: str = _get("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL: str = _get("OLLAMA_MODEL")

# --- Pipeline ---
MAX_EMAILS_CAP: int = int(_get("MAX_EMAILS_CAP", "1000"))

# --- History / audit ---
HISTORY_DB_PATH: str = _get("HISTORY_DB_PATH", str(PROJECT_ROOT / "data" / "history.db"))
HISTORY_VISIBLE_LIMIT: int = int(_get("HISTORY_VISIBLE_LIMIT", "20"))
LABEL_AUDIT_LOG_PATH: str = _get(
    "LABEL_AUDIT_LOG_PATH", str(PROJECT_ROOT / "data" / "label_audit.jsonl")
)
