"""
Integrity coordinator.

The only component that touches more than one subsystem at once. Every
operation runs the same way:

1. Ask the permission oracle. A denial appends one blocked
   ``security.violation`` entry and raises PermissionDeniedError.
2. Take the document lock, then open an audit transaction (audit lock plus
   ``BEGIN IMMEDIATE``).
3. Load the persisted document and check the caller's copy is current.
4. Hash, encrypt or sign, create the version, append the audit entry.
5. Commit. Any failure rolls back the whole operation; the caller's
   document object is never modified, a fresh Document is returned.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .audit_chain import AuditAppender, AuditChain
from .cipher import HybridCipher
from .db import Database, DocumentStore
from .errors import (
    DecryptionError,
    IdentityNotFoundError,
    KeyNotFoundError,
    KeyPolicyError,
    PermissionDeniedError,
    VersionConflictError,
)
from .hashing import content_hash, verify_hash
from .keys import KeyStore
from .logging_config import integrity_log
from .models import (
    AuditAction,
    AuditEventDraft,
    AuditResult,
    Document,
    Severity,
    Signature,
    Version,
)
from . import permissions
from .permissions import PermissionOracle
from .signing import SignatureService
from .util import b64d, b64e, utc_now
from .version_chain import VersionChain

logger = logging.getLogger("docintegrity.coordinator")


class IntegrityCoordinator:
    """
    Orchestrates create, edit, share, revoke, sign, restore and read.

    Args:
        db: Database holding documents, versions and the audit log
        key_store: Identity/key store collaborator
        oracle: Permission oracle collaborator
    """

    def __init__(
        self,
        db: Database,
        key_store: KeyStore,
        oracle: PermissionOracle,
        cipher: Optional[HybridCipher] = None,
        signer: Optional[SignatureService] = None,
        versions: Optional[VersionChain] = None,
        audit: Optional[AuditChain] = None
    ):
        self.db = db
        self.key_store = key_store
        self.oracle = oracle
        self.cipher = cipher or HybridCipher()
        self.signer = signer or SignatureService()
        self.documents = DocumentStore(db)
        self.versions = versions or VersionChain(db, documents=self.documents)
        self.audit = audit or AuditChain(db)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _authorize(self, actor: str, operation: str, document_id: str, action: AuditAction) -> None:
        if self.oracle.allows(actor, operation, document_id):
            return
        integrity_log.permission_denied(actor, operation, document_id)
        self.audit.append(AuditEventDraft(
            action=AuditAction.SECURITY_VIOLATION,
            actor=actor,
            resource_id=document_id,
            severity=Severity.MEDIUM,
            result=AuditResult.BLOCKED,
            metadata={"operation": operation, "attempted_action": action.value},
        ))
        raise PermissionDeniedError(actor, operation, document_id)

    @contextmanager
    def _operation(self, name: str, document_id: str) -> Iterator[AuditAppender]:
        """Document lock, then audit transaction. Failures are logged and re-raised."""
        with self.versions.lock(document_id):
            try:
                with self.audit.transaction() as tx:
                    yield tx
            except Exception as e:
                integrity_log.operation_failed(name, document_id, f"{type(e).__name__}: {e}")
                raise

    def _load_current(self, document: Document, conn) -> Document:
        """Persisted copy of the document, provided the caller's copy is up to date."""
        stored = self.documents.get(document.id, conn)
        if stored.current_version != document.current_version or stored.updated_at != document.updated_at:
            raise VersionConflictError(document.id, document.current_version, stored.current_version)
        return stored

    def _public_keys(self, identities: Iterable[str]) -> Dict[str, str]:
        return {i: self.key_store.encryption_public_key(i) for i in identities}

    def _open(self, document: Document, identity: str, package=None, expected_hash: Optional[str] = None) -> bytes:
        """
        Plaintext of a document (or of a version snapshot's package) for one identity.

        Encrypted content is checked against the expected hash after
        decryption; a mismatch is treated as a decryption failure.
        """
        expected_hash = expected_hash or document.content_hash
        if not document.encrypted:
            return document.plaintext()

        if package is None:
            package = document.envelopes.get(identity)
        if package is None:
            raise KeyNotFoundError(document.id, identity)
        plaintext = self.cipher.decrypt_for(package, self.key_store.encryption_private_key(identity))
        if not verify_hash(expected_hash, plaintext):
            raise DecryptionError(f"Package for {identity} does not match the content hash of {document.id}")
        return plaintext

    def get_document(self, document_id: str) -> Document:
        return self.documents.get(document_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def on_create(
        self,
        owner: str,
        content: bytes,
        title: str = "",
        encrypted: bool = False,
        recipients: Iterable[str] = ()
    ) -> Document:
        """
        Create a document together with Version 1.

        Encrypted documents get one envelope for the owner and one for each
        initial recipient.
        """
        document = Document(owner_id=owner, title=title, encrypted=encrypted)
        self._authorize(owner, permissions.CREATE, document.id, AuditAction.DOCUMENT_CREATE)

        document.content_hash = content_hash(content)
        if encrypted:
            identities = [owner] + [r for r in recipients if r != owner]
            document.envelopes = self.cipher.encrypt_for_recipients(content, self._public_keys(identities))
            document.content = document.envelopes[owner].ciphertext
        else:
            document.content = b64e(content)

        with self._operation("create", document.id) as tx:
            version = self.versions.create_version(
                document, owner, "Initial version", conn=tx.conn, metadata={"size": len(content)}
            )
            tx.append(AuditEventDraft(
                action=AuditAction.DOCUMENT_CREATE,
                actor=owner,
                resource_id=document.id,
                metadata={
                    "title": title,
                    "encrypted": encrypted,
                    "content_hash": document.content_hash,
                    "version": version.version,
                    "recipients": document.recipients(),
                },
            ))

        integrity_log.document_created(document.id, owner, encrypted)
        return document

    def on_edit(
        self,
        document: Document,
        editor: str,
        new_content: bytes,
        title: Optional[str] = None,
        description: str = ""
    ) -> Document:
        """
        Replace the content, creating one new version.

        If the hash changed, every outstanding signature is invalidated.
        Encrypted documents are re-encrypted with fresh keys for every
        current recipient.
        """
        self._authorize(editor, permissions.EDIT, document.id, AuditAction.DOCUMENT_UPDATE)

        with self._operation("edit", document.id) as tx:
            work = self._load_current(document, tx.conn)
            previous_hash = work.content_hash
            outstanding = {s.id for s in work.outstanding_signatures()}

            work.content_hash = content_hash(new_content)
            if title is not None:
                work.title = title
            if work.encrypted:
                work.envelopes = self.cipher.encrypt_for_recipients(
                    new_content, self._public_keys(work.recipients())
                )
                work.content = work.envelopes[work.owner_id].ciphertext
            else:
                work.content = b64e(new_content)

            version = self.versions.create_version(
                work, editor, description, conn=tx.conn, metadata={"size": len(new_content)}
            )
            invalidated = [s.id for s in work.signatures if s.id in outstanding and s.invalidated]
            changed = previous_hash != work.content_hash
            tx.append(AuditEventDraft(
                action=AuditAction.DOCUMENT_UPDATE,
                actor=editor,
                resource_id=work.id,
                metadata={
                    "version": version.version,
                    "previous_hash": previous_hash,
                    "content_hash": work.content_hash,
                    "content_changed": changed,
                    "invalidated_signatures": invalidated,
                },
            ))

        integrity_log.document_edited(work.id, editor, version.version, work.content_hash, changed)
        if invalidated:
            integrity_log.signatures_invalidated(work.id, invalidated)
        return work

    def on_share(
        self,
        document: Document,
        granter: str,
        recipient: str,
        permission_names: Iterable[str] = ("read",)
    ) -> Document:
        """
        Grant a recipient access.

        For encrypted documents the granter's own package is decrypted,
        checked against the content hash and re-encrypted for the recipient
        under a fresh content key. The version chain is unchanged.
        """
        self._authorize(granter, permissions.SHARE, document.id, AuditAction.PERMISSION_GRANT)
        self.key_store.get(recipient)
        granted = sorted(set(permission_names))

        with self._operation("share", document.id) as tx:
            work = self._load_current(document, tx.conn)
            if recipient == work.owner_id:
                raise ValueError("The owner already holds access to the document")
            if work.encrypted:
                try:
                    plaintext = self._open(work, granter)
                except (KeyNotFoundError, DecryptionError) as e:
                    integrity_log.decryption_failed(work.id, granter, str(e))
                    raise
                work.envelopes[recipient] = self.cipher.encrypt_for(
                    plaintext, self.key_store.encryption_public_key(recipient)
                )
            work.updated_at = utc_now()
            self.documents.save(work, tx.conn)
            tx.append(AuditEventDraft(
                action=AuditAction.PERMISSION_GRANT,
                actor=granter,
                resource_id=work.id,
                metadata={"recipient": recipient, "permissions": granted, "encrypted": work.encrypted},
            ))

        integrity_log.document_shared(work.id, granter, recipient, granted)
        return work

    def on_revoke(self, document: Document, revoker: str, recipient: str) -> Document:
        """
        Drop a recipient's envelope package.

        Content already delivered to them is not recalled; the next edit
        re-encrypts for the remaining recipients only.
        """
        self._authorize(revoker, permissions.REVOKE, document.id, AuditAction.PERMISSION_REVOKE)

        with self._operation("revoke", document.id) as tx:
            work = self._load_current(document, tx.conn)
            if recipient == work.owner_id:
                raise ValueError("The owner's access cannot be revoked")
            had_package = work.envelopes.pop(recipient, None) is not None
            work.updated_at = utc_now()
            self.documents.save(work, tx.conn)
            tx.append(AuditEventDraft(
                action=AuditAction.PERMISSION_REVOKE,
                actor=revoker,
                resource_id=work.id,
                metadata={"recipient": recipient, "had_package": had_package},
            ))

        integrity_log.access_revoked(work.id, revoker, recipient)
        return work

    def on_sign(self, document: Document, signer: str) -> Document:
        """
        Sign the current content, anchored to the current content hash.

        Does not create a version; the new signature is appended to the
        document's signature list.
        """
        self._authorize(signer, permissions.SIGN, document.id, AuditAction.DOCUMENT_SIGN)

        with self._operation("sign", document.id) as tx:
            work = self._load_current(document, tx.conn)
            plaintext = self._open(work, signer)
            algorithm, private_key = self.key_store.signing_key(signer)
            signature = Signature(
                signer_id=signer,
                signature=self.signer.sign(plaintext, work.content_hash, private_key, algorithm),
                algorithm=algorithm,
                signed_content_hash=work.content_hash,
            )
            work.signatures.append(signature)
            work.updated_at = utc_now()
            self.documents.save(work, tx.conn)
            tx.append(AuditEventDraft(
                action=AuditAction.DOCUMENT_SIGN,
                actor=signer,
                resource_id=work.id,
                metadata={
                    "signature_id": signature.id,
                    "anchor_hash": signature.signed_content_hash,
                    "algorithm": algorithm,
                    "version": work.current_version,
                },
            ))

        integrity_log.document_signed(work.id, signer, signature.id, signature.signed_content_hash)
        return work

    def on_restore(self, document: Document, editor: str, target_version: int) -> Document:
        """
        Restore an earlier version's content as a brand-new version.

        Signatures invalidated earlier stay invalidated. Encrypted content is
        decrypted from the target snapshot (the editor's package, else the
        owner's) and re-encrypted for the document's current recipients.
        """
        self._authorize(editor, permissions.RESTORE, document.id, AuditAction.DOCUMENT_RESTORE)

        with self._operation("restore", document.id) as tx:
            work = self._load_current(document, tx.conn)
            target = self.versions.get_version(work.id, target_version)
            previous_hash = work.content_hash
            outstanding = {s.id for s in work.outstanding_signatures()}

            envelopes = None
            if work.encrypted:
                plaintext = self._snapshot_plaintext(work, target, editor)
                envelopes = self.cipher.encrypt_for_recipients(plaintext, self._public_keys(work.recipients()))

            version = self.versions.restore_version(work, target_version, editor, envelopes, conn=tx.conn)
            invalidated = [s.id for s in work.signatures if s.id in outstanding and s.invalidated]
            changed = previous_hash != work.content_hash
            tx.append(AuditEventDraft(
                action=AuditAction.DOCUMENT_RESTORE,
                actor=editor,
                resource_id=work.id,
                metadata={
                    "restored_from": target_version,
                    "version": version.version,
                    "content_hash": work.content_hash,
                    "invalidated_signatures": invalidated,
                },
            ))

        integrity_log.document_edited(work.id, editor, version.version, work.content_hash, changed)
        if invalidated:
            integrity_log.signatures_invalidated(work.id, invalidated)
        return work

    def on_read(self, document: Document, reader: str) -> bytes:
        """
        Return the current plaintext for the reader.

        A failed decryption is audited as a failed read before the error
        propagates.
        """
        self._authorize(reader, permissions.READ, document.id, AuditAction.DOCUMENT_READ)

        with self._operation("read", document.id) as tx:
            current = self.documents.get(document.id, tx.conn)
            try:
                plaintext = self._open(current, reader)
            except (KeyNotFoundError, DecryptionError) as e:
                failure = e
            else:
                failure = None
                tx.append(AuditEventDraft(
                    action=AuditAction.DOCUMENT_READ,
                    actor=reader,
                    resource_id=current.id,
                    metadata={"version": current.current_version, "content_hash": current.content_hash},
                ))

        if failure is not None:
            integrity_log.decryption_failed(document.id, reader, str(failure))
            self.audit.append(AuditEventDraft(
                action=AuditAction.DOCUMENT_READ,
                actor=reader,
                resource_id=document.id,
                severity=Severity.HIGH,
                result=AuditResult.FAILURE,
                metadata={"error": type(failure).__name__},
            ))
            raise failure
        return plaintext

    def verify_signatures(self, document: Document, actor: str) -> Dict[str, Any]:
        """
        Check every signature on the persisted document.

        Each signature is verified against the version snapshot whose
        content hash equals its anchor, and its anchor is compared with the
        current content hash. Both results are reported separately.
        """
        self._authorize(actor, permissions.VERIFY, document.id, AuditAction.DOCUMENT_READ)

        current = self.documents.get(document.id)
        results: List[Dict[str, Any]] = []
        for signature in current.signatures:
            entry: Dict[str, Any] = {
                "signature_id": signature.id,
                "signer_id": signature.signer_id,
                "algorithm": signature.algorithm,
                "signed_at": signature.signed_at.isoformat(),
                "invalidated": signature.invalidated,
                "reason": signature.reason,
            }
            entry.update(self._check_signature(current, signature, actor))
            # an invalidated signature is never revived, even if the content returns
            entry["valid"] = entry["valid"] and not signature.invalidated
            results.append(entry)

        return {
            "document_id": current.id,
            "current_hash": current.content_hash,
            "signatures": results,
            "all_valid": all(r["valid"] for r in results),
        }

    def _check_signature(self, document: Document, signature: Signature, actor: str) -> Dict[str, Any]:
        hash_match = signature.signed_content_hash == document.content_hash
        unverifiable = {
            "crypto_valid": False,
            "hash_match": hash_match,
            "valid": False,
            "anchor_hash": signature.signed_content_hash,
            "current_hash": document.content_hash,
        }

        try:
            algorithm, public_key = self.key_store.verify_key(signature.signer_id)
        except IdentityNotFoundError:
            return dict(unverifiable, detail="signer not found")
        if algorithm != signature.algorithm:
            return dict(unverifiable, detail="signer key algorithm changed")

        snapshot = self.versions.version_for_hash(document.id, signature.signed_content_hash)
        if snapshot is None:
            return dict(unverifiable, detail="signed content not in version history")
        content = self._snapshot_plaintext(document, snapshot, actor)

        try:
            check = self.signer.verify(
                content,
                signature.signed_content_hash,
                signature.signature,
                public_key,
                current_hash=document.content_hash,
                algorithm=signature.algorithm,
            )
        except KeyPolicyError as e:
            logger.warning("Signature %s not verifiable: %s", signature.id, e)
            return dict(unverifiable, detail="signer key rejected")
        return check.to_dict()

    def _snapshot_plaintext(self, document: Document, snapshot: Version, actor: str) -> bytes:
        """
        Signed content from a version snapshot.

        The actor may have been granted access after the snapshot was taken,
        so the owner's package is the fallback.
        """
        if not document.encrypted:
            return b64d(snapshot.content) if snapshot.content else b""
        for identity in (actor, document.owner_id):
            package = snapshot.envelopes.get(identity)
            if package is not None:
                return self._open(document, identity, package=package, expected_hash=snapshot.content_hash)
        raise KeyNotFoundError(document.id, actor)
