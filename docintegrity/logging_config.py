"""
Logging configuration for docintegrity.

Provides structured JSON logging and a typed logger for integrity events.
The tamper-evident record is the audit chain; these logs are the
operational trail that points operators at it.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import List, Optional, TextIO

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class IntegrityLogger:
    """
    Specialized logger for integrity events.

    Provides methods for logging edits, shares, signatures, permission
    decisions and chain verification outcomes.
    """

    def __init__(self, name: str = "docintegrity.integrity"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def document_created(self, document_id: str, owner_id: str, encrypted: bool) -> None:
        self._log(
            logging.INFO,
            "DOCUMENT_CREATED",
            document_id=document_id,
            owner_id=owner_id,
            encrypted=encrypted,
            message=f"Document {document_id} created by {owner_id}"
        )

    def document_edited(
        self,
        document_id: str,
        editor_id: str,
        version: int,
        content_hash: str,
        content_changed: bool
    ) -> None:
        self._log(
            logging.INFO,
            "DOCUMENT_EDITED",
            document_id=document_id,
            editor_id=editor_id,
            version=version,
            content_hash=content_hash,
            content_changed=content_changed,
            message=f"Document {document_id} is now at version {version}"
        )

    def signatures_invalidated(self, document_id: str, signature_ids: List[str]) -> None:
        """Log signatures downgraded by a content change."""
        self._log(
            logging.WARNING,
            "SIGNATURES_INVALIDATED",
            document_id=document_id,
            signature_ids=signature_ids,
            count=len(signature_ids),
            message=f"{len(signature_ids)} signature(s) invalidated on {document_id}"
        )

    def document_shared(self, document_id: str, granter_id: str, recipient_id: str, permissions: List[str]) -> None:
        self._log(
            logging.INFO,
            "DOCUMENT_SHARED",
            document_id=document_id,
            granter_id=granter_id,
            recipient_id=recipient_id,
            permissions=permissions,
            message=f"Document {document_id} shared with {recipient_id}"
        )

    def access_revoked(self, document_id: str, revoker_id: str, recipient_id: str) -> None:
        self._log(
            logging.INFO,
            "ACCESS_REVOKED",
            document_id=document_id,
            revoker_id=revoker_id,
            recipient_id=recipient_id,
            message=f"Access to {document_id} revoked for {recipient_id}"
        )

    def document_signed(self, document_id: str, signer_id: str, signature_id: str, anchor_hash: str) -> None:
        self._log(
            logging.INFO,
            "DOCUMENT_SIGNED",
            document_id=document_id,
            signer_id=signer_id,
            signature_id=signature_id,
            anchor_hash=anchor_hash,
            message=f"Document {document_id} signed by {signer_id}"
        )

    def permission_denied(self, actor: str, operation: str, document_id: str) -> None:
        self._log(
            logging.WARNING,
            "PERMISSION_DENIED",
            actor=actor,
            operation=operation,
            document_id=document_id,
            message=f"{actor} denied {operation} on {document_id}"
        )

    def decryption_failed(self, document_id: str, identity: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "DECRYPTION_FAILED",
            document_id=document_id,
            identity=identity,
            reason=reason,
            message=f"Decryption of {document_id} failed for {identity}"
        )

    def operation_failed(self, operation: str, document_id: str, error: str) -> None:
        """Log an orchestration failure that was rolled back."""
        self._log(
            logging.ERROR,
            "OPERATION_FAILED",
            operation=operation,
            document_id=document_id,
            error=error,
            message=f"{operation} on {document_id} rolled back: {error}"
        )

    def chain_verified(self, from_seq: int, to_seq: int, entries: int) -> None:
        self._log(
            logging.INFO,
            "AUDIT_CHAIN_VERIFIED",
            from_seq=from_seq,
            to_seq=to_seq,
            entries=entries,
            message=f"Audit chain verified for {entries} entries"
        )

    def chain_broken(self, broken_at: int, reason: str) -> None:
        """Tampering or corruption. Always escalated for human review."""
        self._log(
            logging.CRITICAL,
            "AUDIT_CHAIN_BROKEN",
            broken_at=broken_at,
            reason=reason,
            severity="critical",
            message=f"Audit chain broken at sequence {broken_at}: {reason}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
    stream: Optional[TextIO] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
        stream: Console stream, stdout by default
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global integrity logger instance
integrity_log = IntegrityLogger()
