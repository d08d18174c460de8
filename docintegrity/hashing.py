"""
Content hashing.

All digests are SHA-256 with lowercase hexadecimal output (64 characters).
Document content hashes, version links and audit chain hashes all go
through this module.
"""

import hashlib
from typing import Any, Mapping, Union

from .canonicalization import canonicalize
from .util import constant_time_compare

DIGEST_HEX_LENGTH = 64

# previous_hash of the first audit entry
GENESIS_HASH = "0" * DIGEST_HEX_LENGTH


def content_hash(data: Union[bytes, str]) -> str:
    """
    Compute the content digest of raw document bytes.

    Strings are UTF-8 encoded first. Anything else is rejected rather
    than coerced, so two callers can never disagree on the bytes hashed.
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    elif isinstance(data, (bytearray, memoryview)):
        data = bytes(data)
    elif not isinstance(data, bytes):
        raise TypeError(f"content_hash expects bytes or str, got {type(data).__name__}")
    return hashlib.sha256(data).hexdigest()


def record_hash(record: Mapping[str, Any]) -> str:
    """Hash a structured record via its canonical JSON encoding."""
    return content_hash(canonicalize(dict(record)))


def verify_hash(declared_hash: str, data: Union[bytes, str]) -> bool:
    """
    Verify that data matches a declared hash.

    Recomputes from source data and compares in constant time.
    """
    if not isinstance(declared_hash, str) or len(declared_hash) != DIGEST_HEX_LENGTH:
        return False
    return constant_time_compare(content_hash(data), declared_hash.lower())
