"""
Shared helpers for the test suite.

RSA key generation is slow, so identities are generated once per process
and reused by every test.
"""

import functools
from pathlib import Path
from typing import Iterable

from docintegrity import Database, Document, InMemoryKeyStore, content_hash, generate_identity
from docintegrity.util import b64e


@functools.lru_cache(maxsize=None)
def identity(name: str, algorithm: str = "rsa-sha256"):
    return generate_identity(name, signing_algorithm=algorithm)


def key_store(names: Iterable[str] = ("alice", "bob", "carol"), ed25519: Iterable[str] = ("dave",)) -> InMemoryKeyStore:
    identities = [identity(n) for n in names] + [identity(n, "ed25519") for n in ed25519]
    return InMemoryKeyStore(identities)


def open_db(directory) -> Database:
    db = Database(Path(directory) / "docintegrity-test.db")
    db.init_schema()
    return db


def plain_document(content: bytes, owner: str = "alice", title: str = "Doc") -> Document:
    """An unencrypted document that has not been versioned yet."""
    return Document(owner_id=owner, title=title, content=b64e(content), content_hash=content_hash(content))


def set_content(document: Document, content: bytes) -> None:
    document.content = b64e(content)
    document.content_hash = content_hash(content)
