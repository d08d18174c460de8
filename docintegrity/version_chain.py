"""
Per-document version chain.

Every content-affecting operation appends exactly one immutable Version.
Versions are numbered 1, 2, 3, ... without gaps, exactly one of them is
active, and each links to its predecessor by content hash:

    Version[n].previous_version_hash == Version[n-1].content_hash

When a new version's hash differs from the previous one, every outstanding
signature on the document is invalidated. There is no re-approval path;
signers must sign again. Restoring an old version is just another edit: a
new version with the old content, and no signature is revived.

Edits to the same document are serialized by a per-document lock and by an
optimistic check of the caller's ``current_version`` against the persisted
active version. Edits to different documents do not contend.
"""

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from .db import Database, DocumentStore, VersionStore
from .errors import VersionConflictError, VersionNotFoundError
from .models import CONTENT_MODIFIED, Document, EnvelopePackage, Version
from .util import utc_now


@dataclass
class HistoryCheck:
    """Result of checking one document's version chain."""
    valid: bool
    versions: int = 0
    broken_at: Optional[int] = None
    reason: Optional[str] = None


class VersionChain:
    """Creates, restores and compares document versions."""

    def __init__(
        self,
        db: Database,
        versions: Optional[VersionStore] = None,
        documents: Optional[DocumentStore] = None
    ):
        self.db = db
        self.versions = versions or VersionStore(db)
        self.documents = documents or DocumentStore(db)
        # document id -> [lock, holders and waiters]
        self._locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, document_id: str) -> Iterator[None]:
        """
        Serialize mutations of one document. Re-entrant on the same thread.

        A lock is dropped once nobody holds or waits for it.
        """
        with self._locks_guard:
            entry = self._locks.setdefault(document_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[document_id]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_version(
        self,
        document: Document,
        editor: str,
        description: str = "",
        conn: Optional[sqlite3.Connection] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Version:
        """
        Snapshot the document's current state as the next version.

        The document is updated in place: ``current_version`` advances and,
        if the content hash changed, outstanding signatures are invalidated.
        The document row is saved in the same transaction as the version.

        Raises:
            VersionConflictError: the document copy is behind the stored chain
        """
        with self.lock(document.id), self._transaction(conn) as c:
            previous = self.versions.active(document.id, c)
            expected = previous.version if previous else 0
            if document.current_version != expected:
                raise VersionConflictError(document.id, document.current_version, expected)

            now = utc_now()
            changed = previous is not None and previous.content_hash != document.content_hash
            for signature in document.signatures:
                if changed or signature.signed_content_hash != document.content_hash:
                    signature.invalidate(CONTENT_MODIFIED, now)

            if previous is not None:
                self.versions.deactivate(document.id, previous.version, c)

            snapshot_meta: Dict[str, Any] = {"size": _content_size(document)}
            snapshot_meta.update(metadata or {})

            version = Version(
                document_id=document.id,
                version=expected + 1,
                title=document.title,
                content=document.content,
                envelopes={k: v.model_copy() for k, v in document.envelopes.items()},
                content_hash=document.content_hash,
                previous_version_hash=previous.content_hash if previous else None,
                signatures=[s.model_copy() for s in document.signatures],
                changed_by=editor,
                change_description=description,
                metadata=snapshot_meta,
                created_at=now,
                is_active=True,
            )
            self.versions.insert(version, c)

            document.current_version = version.version
            document.updated_at = now
            self.documents.save(document, c)

        return version

    def restore_version(
        self,
        document: Document,
        target_version: int,
        editor: str,
        envelopes: Optional[Dict[str, EnvelopePackage]] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> Version:
        """
        Copy an earlier version's content into a brand-new version.

        History is never rewritten. For encrypted documents the caller must
        supply ``envelopes`` re-encrypted for the document's current
        recipients, since the old snapshot's recipient set may be stale.

        Raises:
            VersionNotFoundError: no such version for this document
        """
        with self.lock(document.id), self._transaction(conn) as c:
            target = self.versions.get(document.id, target_version, c)
            if target is None:
                raise VersionNotFoundError(document.id, target_version)

            document.title = target.title
            document.content_hash = target.content_hash
            if document.encrypted:
                if envelopes is None:
                    raise ValueError("Restoring an encrypted document requires re-encrypted envelopes")
                document.envelopes = dict(envelopes)
                owner_package = envelopes.get(document.owner_id)
                document.content = owner_package.ciphertext if owner_package else ""
            else:
                document.content = target.content

            return self.create_version(
                document,
                editor,
                f"Restored from version {target_version}",
                conn=c,
                metadata={"restored_from": target_version},
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def history(self, document_id: str) -> List[Version]:
        return self.versions.list(document_id)

    def get_version(self, document_id: str, version: int) -> Version:
        found = self.versions.get(document_id, version)
        if found is None:
            raise VersionNotFoundError(document_id, version)
        return found

    def active_version(self, document_id: str) -> Optional[Version]:
        return self.versions.active(document_id)

    def version_for_hash(self, document_id: str, content_hash: str) -> Optional[Version]:
        """The latest snapshot holding content with the given hash."""
        return self.versions.latest_with_hash(document_id, content_hash)

    def compare_versions(self, document_id: str, version1: int, version2: int) -> Dict[str, Any]:
        """Fetch two versions and compare them."""
        return compare_versions(
            self.get_version(document_id, version1),
            self.get_version(document_id, version2),
        )

    def verify_history(self, document_id: str) -> HistoryCheck:
        """
        Check contiguity, the single-active rule and hash links for one document.
        """
        versions = self.versions.list(document_id)
        if not versions:
            return HistoryCheck(valid=True)

        active = [v.version for v in versions if v.is_active]
        if len(active) != 1:
            return HistoryCheck(
                valid=False, versions=len(versions), broken_at=active[1] if active else versions[-1].version,
                reason=f"{len(active)} active versions",
            )

        previous = None
        for expected, version in enumerate(versions, start=1):
            if version.version != expected:
                return HistoryCheck(False, len(versions), expected, f"version {expected} missing")
            if previous is None:
                if version.previous_version_hash is not None:
                    return HistoryCheck(False, len(versions), expected, "first version has a predecessor hash")
            elif version.previous_version_hash != previous.content_hash:
                return HistoryCheck(False, len(versions), expected, "previous_version_hash does not link")
            previous = version

        if active[0] != versions[-1].version:
            return HistoryCheck(False, len(versions), active[0], "active version is not the latest")
        return HistoryCheck(valid=True, versions=len(versions))

    @contextmanager
    def _transaction(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.db.transaction() as c:
                yield c


def compare_versions(v1: Version, v2: Version) -> Dict[str, Any]:
    """Structural comparison of two versions. No I/O, no mutation."""
    def summary(v: Version) -> Dict[str, Any]:
        return {
            "number": v.version,
            "title": v.title,
            "content_hash": v.content_hash,
            "changed_by": v.changed_by,
            "created_at": v.created_at.isoformat(),
            "signatures": len(v.signatures),
            "valid_signatures": len([s for s in v.signatures if not s.invalidated]),
        }

    return {
        "document_id": v1.document_id,
        "version1": summary(v1),
        "version2": summary(v2),
        "content_changed": v1.content_hash != v2.content_hash,
        "title_changed": v1.title != v2.title,
        "signatures_changed": [s.id for s in v1.signatures] != [s.id for s in v2.signatures],
        "recipients_changed": sorted(v1.envelopes) != sorted(v2.envelopes),
    }


def _content_size(document: Document) -> int:
    if document.encrypted:
        return 0
    return len(document.plaintext())
