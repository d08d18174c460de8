"""
Permission oracle collaborator.

The integrity core never stores ACLs. It asks an injected oracle whether an
actor may perform an operation on a document, and treats anything other
than an explicit yes as a denial.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import requests

from .config import OPA_TIMEOUT_SECONDS, OPA_URL, PERMISSION_ORACLE, is_production

logger = logging.getLogger("docintegrity.permissions")

# Operation names passed to the oracle
CREATE = "create"
READ = "read"
EDIT = "edit"
SHARE = "share"
REVOKE = "revoke"
SIGN = "sign"
RESTORE = "restore"
VERIFY = "verify"


class PermissionOracle(ABC):
    """Abstract permission decision point."""

    @abstractmethod
    def allows(
        self,
        actor: str,
        operation: str,
        document_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Return True only if the operation is permitted."""
        pass


class AllowAllOracle(PermissionOracle):
    """Grants everything. For local tooling and tests only."""

    def allows(self, actor, operation, document_id, context=None) -> bool:
        return True


class CallablePermissionOracle(PermissionOracle):
    """Wraps a plain function ``fn(actor, operation, document_id) -> bool``."""

    def __init__(self, fn: Callable[[str, str, str], Optional[bool]]):
        self._fn = fn

    def allows(self, actor, operation, document_id, context=None) -> bool:
        return self._fn(actor, operation, document_id) is True


class OpaPermissionOracle(PermissionOracle):
    """
    Open Policy Agent decision over HTTP.

    POSTs ``{"input": {...}}`` to the data API and reads the boolean
    ``result``. Fails closed: timeouts, HTTP errors, malformed bodies and
    non-boolean results all deny.
    """

    def __init__(self, url: str = OPA_URL, timeout: float = OPA_TIMEOUT_SECONDS, session=None):
        if not url:
            raise ValueError("OPA_URL required for the opa permission oracle")
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def allows(self, actor, operation, document_id, context=None) -> bool:
        payload = {
            "input": {
                "actor": actor,
                "operation": operation,
                "document_id": document_id,
                "context": context or {},
            }
        }
        try:
            r = self._session.post(self.url, json=payload, timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("OPA decision unavailable for %s/%s: %s", operation, document_id, e)
            return False
        if not isinstance(body, dict):
            return False
        return body.get("result") is True


def get_permission_oracle(kind: str = PERMISSION_ORACLE) -> PermissionOracle:
    """
    Factory function for the configured oracle.

    Args:
        kind: "opa" or "none"; "none" grants everything and is refused in production
    """
    if kind == "opa":
        return OpaPermissionOracle()
    if kind == "none":
        if is_production():
            raise ValueError("PERMISSION_ORACLE=none is not allowed in production")
        return AllowAllOracle()
    raise ValueError(f"Unknown permission oracle: {kind}")
