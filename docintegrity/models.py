"""
Persisted shapes of the integrity core.

Document, Version, Signature and AuditEvent match the stored records one to
one; they round-trip through ``model_dump_json`` / ``model_validate_json``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .util import b64d, generate_id, utc_now

ENVELOPE_ALGORITHM = "RSA-OAEP-256+A256GCM"
CONTENT_MODIFIED = "content modified"


class AuditAction(str, Enum):
    DOCUMENT_CREATE = "document.create"
    DOCUMENT_READ = "document.read"
    DOCUMENT_UPDATE = "document.update"
    DOCUMENT_SIGN = "document.sign"
    DOCUMENT_RESTORE = "document.version.restore"
    PERMISSION_GRANT = "permission.grant"
    PERMISSION_REVOKE = "permission.revoke"
    SECURITY_VIOLATION = "security.violation"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"


class EnvelopePackage(BaseModel):
    """One recipient's copy of the content: AEAD ciphertext plus its wrapped key."""
    ciphertext: str
    wrapped_key: str
    iv: str
    algorithm: str = ENVELOPE_ALGORITHM
    created_at: datetime = Field(default_factory=utc_now)


class Signature(BaseModel):
    id: str = Field(default_factory=generate_id)
    signer_id: str
    signature: str
    algorithm: str
    signed_content_hash: str
    signed_at: datetime = Field(default_factory=utc_now)
    invalidated: bool = False
    invalidated_at: Optional[datetime] = None
    reason: Optional[str] = None

    def invalidate(self, reason: str = CONTENT_MODIFIED, when: Optional[datetime] = None) -> bool:
        """
        Mark the signature invalid. Only the first call has any effect.

        Returns True if the signature was newly invalidated.
        """
        if self.invalidated:
            return False
        self.invalidated = True
        self.invalidated_at = when or utc_now()
        self.reason = reason
        return True


class Document(BaseModel):
    """
    A document as seen by the integrity core.

    ``content`` is base64 text: the plaintext bytes for an unencrypted
    document, the owner's envelope ciphertext for an encrypted one.
    """
    id: str = Field(default_factory=generate_id)
    title: str = ""
    owner_id: str
    encrypted: bool = False
    content: str = ""
    envelopes: Dict[str, EnvelopePackage] = Field(default_factory=dict)
    content_hash: str = ""
    current_version: int = 0
    signatures: List[Signature] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def plaintext(self) -> bytes:
        """Raw content of an unencrypted document."""
        if self.encrypted:
            raise ValueError("Encrypted document content must be decrypted by a recipient")
        return b64d(self.content) if self.content else b""

    def recipients(self) -> List[str]:
        return sorted(self.envelopes)

    def outstanding_signatures(self) -> List[Signature]:
        return [s for s in self.signatures if not s.invalidated]


class Version(BaseModel):
    """Immutable snapshot of a document. Only ``is_active`` ever changes."""
    document_id: str
    version: int
    title: str = ""
    content: str = ""
    envelopes: Dict[str, EnvelopePackage] = Field(default_factory=dict)
    content_hash: str
    previous_version_hash: Optional[str] = None
    signatures: List[Signature] = Field(default_factory=list)
    changed_by: str
    change_description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    is_active: bool = True


class AuditEventDraft(BaseModel):
    """What a caller supplies to the audit chain; the chain fills in the rest."""
    action: AuditAction
    actor: str
    resource_type: str = "document"
    resource_id: str = ""
    severity: Severity = Severity.LOW
    result: AuditResult = AuditResult.SUCCESS
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditEvent(BaseModel):
    sequence_number: int
    previous_hash: str
    current_hash: str
    action: AuditAction
    actor: str
    resource_type: str
    resource_id: str
    severity: Severity
    result: AuditResult
    timestamp: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def hashed_fields(self) -> Dict[str, Any]:
        """The fields ``current_hash`` is computed over."""
        return hashed_audit_fields(
            action=self.action.value,
            actor=self.actor,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            severity=self.severity.value,
            result=self.result.value,
            timestamp=self.timestamp,
            sequence_number=self.sequence_number,
            previous_hash=self.previous_hash,
            metadata=self.metadata,
        )


def hashed_audit_fields(
    action: str,
    actor: str,
    resource_type: str,
    resource_id: str,
    severity: str,
    result: str,
    timestamp: str,
    sequence_number: int,
    previous_hash: str,
    metadata: Dict[str, Any],
) -> Dict[str, Any]:
    return {
        "action": action,
        "actor": actor,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "severity": severity,
        "result": result,
        "timestamp": timestamp,
        "sequence_number": sequence_number,
        "previous_hash": previous_hash,
        "metadata": metadata,
    }
