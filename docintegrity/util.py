"""
Utility functions for docintegrity.

Provides encoding, time and identifier helpers shared by the subsystems.
"""

import base64
import hmac
import uuid
from datetime import datetime, timezone
from typing import Union


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_iso(dt: datetime) -> str:
    """
    Format an aware datetime as RFC3339 UTC with microseconds.

    Audit hashes are computed over this exact string, so the format
    must never change for persisted entries.
    """
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def generate_id() -> str:
    """Generate a random identifier for documents and signatures."""
    return uuid.uuid4().hex
