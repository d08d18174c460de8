"""
Error taxonomy for the integrity core.

Crypto and hash-mismatch failures are never retried or swallowed; they
propagate to the caller of the coordinator. ChainBrokenError is terminal:
it means tampering or corruption and is escalated for human review.
"""

from typing import Optional


class IntegrityError(Exception):
    """Base class for all integrity core errors."""


class KeyNotFoundError(IntegrityError):
    """No envelope package exists for the requesting identity."""

    def __init__(self, document_id: str, identity: str):
        self.document_id = document_id
        self.identity = identity
        super().__init__(f"No key package for {identity} on document {document_id}")


class DecryptionError(IntegrityError):
    """
    Key unwrap or symmetric decryption failed.

    Callers must treat this as an access denial.
    """


class KeyPolicyError(IntegrityError):
    """Key material is malformed or weaker than the configured minimum."""


class SignatureCryptoInvalidError(IntegrityError):
    """Signature bytes do not verify against the signer's public key."""

    def __init__(self, signature_id: Optional[str] = None, signer: Optional[str] = None):
        self.signature_id = signature_id
        self.signer = signer
        super().__init__(f"Signature {signature_id or '?'} by {signer or '?'} failed cryptographic verification")


class SignatureStaleError(IntegrityError):
    """Signature verifies, but its anchor no longer matches the current content hash."""

    def __init__(self, anchor_hash: str, current_hash: str, signature_id: Optional[str] = None):
        self.anchor_hash = anchor_hash
        self.current_hash = current_hash
        self.signature_id = signature_id
        super().__init__(
            f"Signature {signature_id or '?'} anchored to {anchor_hash[:12]}, "
            f"document is at {current_hash[:12]}"
        )


class VersionNotFoundError(IntegrityError):
    """The requested version does not exist for the document."""

    def __init__(self, document_id: str, version: int):
        self.document_id = document_id
        self.version = version
        super().__init__(f"Version {version} not found for document {document_id}")


class VersionConflictError(IntegrityError):
    """The document copy is stale relative to the persisted active version."""

    def __init__(self, document_id: str, expected: int, actual: int):
        self.document_id = document_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Document {document_id} is at version {actual}, caller holds version {expected}"
        )


class ChainBrokenError(IntegrityError):
    """
    Audit chain verification failed.

    Terminal condition. Never auto-repaired or re-based.
    """

    def __init__(self, broken_at: int, message: str = ""):
        self.broken_at = broken_at
        super().__init__(message or f"Audit hash chain broken at sequence {broken_at}")


class ChainStateError(IntegrityError):
    """
    The in-process chain head disagrees with the persisted head.

    Raised instead of writing an entry that would fork the chain, e.g. after
    a restart that did not recover state, or a second unsynchronised writer.
    """


class PermissionDeniedError(IntegrityError):
    """The permission oracle refused the operation."""

    def __init__(self, actor: str, operation: str, document_id: str):
        self.actor = actor
        self.operation = operation
        self.document_id = document_id
        super().__init__(f"{actor} may not {operation} document {document_id}")


class DocumentNotFoundError(IntegrityError):
    """No document with the given id is stored."""


class IdentityNotFoundError(IntegrityError):
    """The key store has no identity with the given id."""
