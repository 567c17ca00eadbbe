# backend/logs.py
# Optional interaction logging to Supabase. Nothing here may break a reply.

import threading
import traceback
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from backend_logging import get_logger
from backend_settings import get_settings


logger = get_logger("supabase")

MAX_TEXT_CHARS = 4000

_client: Optional[Client] = None
_client_checked = False
_client_lock = threading.Lock()


def get_supabase_client() -> Optional[Client]:
    """Create the client on first use; None when Supabase is not configured."""
    global _client, _client_checked
    if _client_checked:
        return _client
    with _client_lock:
        if not _client_checked:
            settings = get_settings()
            if settings.supabase_enabled:
                try:
                    _client = create_client(settings.supabase_url, settings.supabase_key)
                except Exception as e:
                    logger.error("supabase_client_failed", error=str(e))
                    _client = None
            else:
                logger.warning("supabase_disabled", reason="SUPABASE_URL or key missing")
            _client_checked = True
    return _client


def reset_supabase_client() -> None:
    global _client, _client_checked
    with _client_lock:
        _client = None
        _client_checked = False


def _truncate(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text[:MAX_TEXT_CHARS]


def log_interaction(
    endpoint: str,
    mode: str,
    user_text: Optional[str],
    reply: Optional[str],
    model: Optional[str] = None,
    user_lang: Optional[str] = None,
    matched_titles: Optional[List[str]] = None,
    status: str = "success",
    error_message: Optional[str] = None,
    latency_ms: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Insert one row into fixlens_logs. Returns True when the row was written.
    """
    client = get_supabase_client()
    if client is None:
        return False

    payload = {
        "endpoint": endpoint,
        "mode": mode,
        "input_type": mode,
        "user_lang": user_lang,
        "user_description": _truncate(user_text),
        "ai_response": _truncate(reply),
        "model": model,
        "status": status,
        "error_message": error_message,
        "latency_ms": latency_ms,
        "meta": {
            "source": "mobile-app",
            "matched_issues": matched_titles or [],
            **(meta or {}),
        },
    }

    try:
        client.table("fixlens_logs").insert(payload).execute()
    except Exception as e:
        logger.error("log_interaction_failed", endpoint=endpoint, error=str(e))
        return False
    return True


def log_error(endpoint: str, error: BaseException, payload: Optional[Dict[str, Any]] = None) -> bool:
    client = get_supabase_client()
    if client is None:
        return False

    row = {
        "endpoint": endpoint,
        "error_message": str(error) or type(error).__name__,
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)) or None,
        "payload": payload,
    }

    try:
        client.table("fixlens_errors").insert(row).execute()
    except Exception as e:
        logger.error("log_error_failed", endpoint=endpoint, error=str(e))
        return False
    return True
