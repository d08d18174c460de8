"""
docintegrity: document integrity and provenance core

Version: 1.0.0

Four guarantees over a shared document store:

- Hybrid encryption: every recipient gets an independent AES-256-GCM
  envelope whose content key is wrapped under their RSA key.
- Content-anchored signatures: a signature binds to the content hash at
  signing time and is invalidated the moment the content changes.
- Version chain: every edit is an immutable, hash-linked snapshot; exactly
  one version per document is active.
- Audit chain: every integrity-relevant operation appends one entry to a
  global SHA-256 hash chain that detects any later tampering.

Usage:
    from docintegrity import (
        Database,
        IntegrityCoordinator,
        InMemoryKeyStore,
        CallablePermissionOracle,
        generate_identity,
    )

    db = Database("data/docintegrity.db")
    db.init_schema()

    keys = InMemoryKeyStore([generate_identity("alice"), generate_identity("bob")])
    oracle = CallablePermissionOracle(lambda actor, op, doc: actor in ("alice", "bob"))
    core = IntegrityCoordinator(db, keys, oracle)

    doc = core.on_create("alice", b"Quarterly report", encrypted=True)
    doc = core.on_share(doc, "alice", "bob")
    doc = core.on_sign(doc, "bob")
    doc = core.on_edit(doc, "alice", b"Quarterly report v2")   # bob's signature is now invalid

    core.audit.verify_chain_or_raise()
"""

__version__ = "1.0.0"

# Hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import GENESIS_HASH, content_hash, record_hash, verify_hash

# Errors
from .errors import (
    IntegrityError,
    KeyNotFoundError,
    DecryptionError,
    KeyPolicyError,
    SignatureCryptoInvalidError,
    SignatureStaleError,
    VersionNotFoundError,
    VersionConflictError,
    ChainBrokenError,
    ChainStateError,
    PermissionDeniedError,
    DocumentNotFoundError,
    IdentityNotFoundError,
)

# Models
from .models import (
    AuditAction,
    AuditEvent,
    AuditEventDraft,
    AuditResult,
    Document,
    EnvelopePackage,
    Severity,
    Signature,
    Version,
)

# Crypto
from .cipher import HybridCipher, generate_key_pair
from .signing import SignatureCheck, SignatureService, generate_signing_key

# Storage and chains
from .db import Database
from .version_chain import VersionChain, HistoryCheck, compare_versions
from .audit_chain import AuditChain, ChainVerification

# Collaborators
from .keys import Identity, KeyStore, InMemoryKeyStore, FileKeyStore, generate_identity
from .permissions import (
    PermissionOracle,
    AllowAllOracle,
    CallablePermissionOracle,
    OpaPermissionOracle,
)

# Orchestration
from .coordinator import IntegrityCoordinator


__all__ = [
    # Version
    "__version__",

    # Hashing
    "canonicalize",
    "canonicalize_str",
    "GENESIS_HASH",
    "content_hash",
    "record_hash",
    "verify_hash",

    # Errors
    "IntegrityError",
    "KeyNotFoundError",
    "DecryptionError",
    "KeyPolicyError",
    "SignatureCryptoInvalidError",
    "SignatureStaleError",
    "VersionNotFoundError",
    "VersionConflictError",
    "ChainBrokenError",
    "ChainStateError",
    "PermissionDeniedError",
    "DocumentNotFoundError",
    "IdentityNotFoundError",

    # Models
    "AuditAction",
    "AuditEvent",
    "AuditEventDraft",
    "AuditResult",
    "Document",
    "EnvelopePackage",
    "Severity",
    "Signature",
    "Version",

    # Crypto
    "HybridCipher",
    "generate_key_pair",
    "SignatureCheck",
    "SignatureService",
    "generate_signing_key",

    # Storage and chains
    "Database",
    "VersionChain",
    "HistoryCheck",
    "compare_versions",
    "AuditChain",
    "ChainVerification",

    # Collaborators
    "Identity",
    "KeyStore",
    "InMemoryKeyStore",
    "FileKeyStore",
    "generate_identity",
    "PermissionOracle",
    "AllowAllOracle",
    "CallablePermissionOracle",
    "OpaPermissionOracle",

    # Orchestration
    "IntegrityCoordinator",
]
