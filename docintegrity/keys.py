"""
Identity and key store.

The integrity core consumes keys, it does not manage their custody. A
KeyStore maps an identity id to its RSA encryption key pair and its
signing key pair. With ``rsa-sha256`` the signing pair is the encryption
pair; with ``ed25519`` it is a separate base64 Ed25519 pair.
"""

import json
import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from .cipher import generate_key_pair
from .config import KEYSTORE_PATH, SIGNATURE_ALGORITHM
from .errors import IdentityNotFoundError
from .signing import ED25519, RSA_SHA256, SUPPORTED_ALGORITHMS, generate_signing_key

_IDENTITY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]{0,127}$")


class Identity(BaseModel):
    id: str
    encryption_public_key: str
    encryption_private_key: Optional[str] = None
    signing_algorithm: str = RSA_SHA256
    signing_public_key: str
    signing_private_key: Optional[str] = None

    def public_view(self) -> "Identity":
        """Copy without private material."""
        return self.model_copy(update={"encryption_private_key": None, "signing_private_key": None})


def generate_identity(
    identity_id: str,
    signing_algorithm: str = SIGNATURE_ALGORITHM,
    bits: int = 2048
) -> Identity:
    """
    Generate a fresh identity.

    Args:
        identity_id: Identity name, e.g. "alice"
        signing_algorithm: "rsa-sha256" reuses the RSA pair; "ed25519" adds an Ed25519 pair
        bits: RSA modulus size

    Returns:
        Identity holding both private and public material
    """
    if signing_algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported signature algorithm: {signing_algorithm}")
    if not _IDENTITY_RE.match(identity_id):
        raise ValueError(f"Invalid identity id: {identity_id!r}")

    private_pem, public_pem = generate_key_pair(bits)
    if signing_algorithm == ED25519:
        signing_private, signing_public = generate_signing_key()
    else:
        signing_private, signing_public = private_pem, public_pem

    return Identity(
        id=identity_id,
        encryption_public_key=public_pem,
        encryption_private_key=private_pem,
        signing_algorithm=signing_algorithm,
        signing_public_key=signing_public,
        signing_private_key=signing_private,
    )


class KeyStore(ABC):
    """Abstract identity/key store collaborator."""

    @abstractmethod
    def get(self, identity_id: str) -> Identity:
        """
        Look up an identity.

        Raises:
            IdentityNotFoundError: unknown identity
        """
        pass

    @abstractmethod
    def put(self, identity: Identity) -> None:
        pass

    @abstractmethod
    def list_ids(self) -> List[str]:
        pass

    def encryption_public_key(self, identity_id: str) -> str:
        return self.get(identity_id).encryption_public_key

    def encryption_private_key(self, identity_id: str) -> str:
        key = self.get(identity_id).encryption_private_key
        if not key:
            raise IdentityNotFoundError(f"No private encryption key held for {identity_id}")
        return key

    def signing_key(self, identity_id: str) -> Tuple[str, str]:
        """(algorithm, private key material) for signing."""
        identity = self.get(identity_id)
        if not identity.signing_private_key:
            raise IdentityNotFoundError(f"No private signing key held for {identity_id}")
        return identity.signing_algorithm, identity.signing_private_key

    def verify_key(self, identity_id: str) -> Tuple[str, str]:
        """(algorithm, public key material) for verification."""
        identity = self.get(identity_id)
        return identity.signing_algorithm, identity.signing_public_key


class InMemoryKeyStore(KeyStore):
    """Dict-backed store for tests and embedding."""

    def __init__(self, identities: Optional[List[Identity]] = None):
        self._identities: Dict[str, Identity] = {}
        self._lock = threading.Lock()
        for identity in identities or []:
            self.put(identity)

    def get(self, identity_id: str) -> Identity:
        with self._lock:
            identity = self._identities.get(identity_id)
        if identity is None:
            raise IdentityNotFoundError(f"Unknown identity: {identity_id}")
        return identity

    def put(self, identity: Identity) -> None:
        with self._lock:
            self._identities[identity.id] = identity

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._identities)


class FileKeyStore(KeyStore):
    """
    One JSON file per identity under a directory.

    Thread-safe with per-file modification time caching, so keys replaced
    on disk are picked up without a restart.
    """

    def __init__(self, directory: Union[str, Path] = KEYSTORE_PATH):
        self._directory = Path(directory)
        self._lock = threading.RLock()
        self._cache: Dict[str, Tuple[float, Identity]] = {}

    def _path(self, identity_id: str) -> Path:
        if not _IDENTITY_RE.match(identity_id):
            raise IdentityNotFoundError(f"Invalid identity id: {identity_id!r}")
        return self._directory / f"{identity_id}.json"

    def get(self, identity_id: str) -> Identity:
        path = self._path(identity_id)
        with self._lock:
            try:
                mtime = os.path.getmtime(path)
            except FileNotFoundError:
                self._cache.pop(identity_id, None)
                raise IdentityNotFoundError(f"Unknown identity: {identity_id}") from None

            cached = self._cache.get(identity_id)
            if cached is None or mtime > cached[0]:
                with open(path, "r", encoding="utf-8") as f:
                    identity = Identity.model_validate(json.load(f))
                self._cache[identity_id] = (mtime, identity)
                return identity
            return cached[1]

    def put(self, identity: Identity) -> None:
        path = self._path(identity.id)
        with self._lock:
            self._directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(identity.model_dump(), f, indent=2)
            if identity.encryption_private_key or identity.signing_private_key:
                os.chmod(tmp, 0o600)
            os.replace(tmp, path)
            self._cache.pop(identity.id, None)

    def list_ids(self) -> List[str]:
        if not self._directory.is_dir():
            return []
        return sorted(p.stem for p in self._directory.glob("*.json"))


def get_key_store(kind: str = "file", path: Union[str, Path] = KEYSTORE_PATH) -> KeyStore:
    """
    Factory function to create the configured key store.

    Args:
        kind: "file" or "memory"
        path: Directory for the file store
    """
    if kind == "memory":
        return InMemoryKeyStore()
    if kind == "file":
        return FileKeyStore(path)
    raise ValueError(f"Unknown key store kind: {kind}")
