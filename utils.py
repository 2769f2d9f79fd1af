# utils.py
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from config import settings


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())
    return logger


# ---------------------------------------------------------------------------
# Webhook HMAC verification (Base64-encoded SHA256 HMAC, e.g. from Shopify)
# ---------------------------------------------------------------------------

def verify_hmac(secret: str, data: bytes | str, hmac_header: Optional[str]) -> bool:
    """
    Verifies an HMAC header (base64 encoded SHA256 digest) against a secret.

    Args:
        secret: The shared secret string.
        data:   The raw request body as bytes or str.
        hmac_header: The header value you received (base64-encoded digest).

    Returns:
        True if valid, False otherwise.
    """
    if not secret or not hmac_header:
        return False
    if isinstance(data, str):
        data = data.encode("utf-8")

    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    computed_b64 = base64.b64encode(digest).decode("utf-8")
    # Use constant-time comparison
    return hmac.compare_digest(computed_b64, hmac_header.strip())


def sign_payload(secret: str, data: bytes | str) -> str:
    """The header value a sender would attach for `data`."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()).decode("utf-8")


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(val) -> Optional[datetime]:
    """
    Parse ISO/Shopify timestamps and return TZ-aware UTC datetimes.
    """
    if not val:
        return None
    if isinstance(val, datetime):
        return val.astimezone(timezone.utc) if val.tzinfo else val.replace(tzinfo=timezone.utc)
    s = str(val).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    if " " in s and "T" not in s:
        s = s.replace(" ", "T")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


# ---------------------------------------------------------------------------
# Address blobs are stored verbatim; only the name is ever read.
# ---------------------------------------------------------------------------

def address_customer_name(address: Optional[Mapping[str, Any]]) -> str:
    if not address:
        return ""
    name = (address.get("name") or "").strip()
    if name:
        return name
    parts = [address.get("first_name") or "", address.get("last_name") or ""]
    return " ".join(p.strip() for p in parts if p and p.strip())


__all__ = [
    "get_logger",
    "verify_hmac",
    "sign_payload",
    "utcnow",
    "parse_dt",
    "truncate",
    "address_customer_name",
]
