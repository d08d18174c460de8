"""
Content-anchored signatures.

A signature covers ``content || anchor_hash`` where the anchor is the
content hash at signing time. Verification reports two independent facts:

- crypto_valid: the bytes verify under the signer's public key
- hash_match:   the anchor equals the document's *current* content hash

A signature is valid only when both hold. Keeping them apart lets callers
tell a forged signature from an honest signature over content that has
since changed.

Two algorithms are supported:
- rsa-sha256: RSA PKCS#1 v1.5 over SHA-256, PEM keys (same key pairs the
  envelope cipher uses)
- ed25519:    Ed25519 (RFC 8032), base64-encoded raw 32-byte keys
"""

import binascii
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .cipher import load_private_key, load_public_key
from .config import MIN_RSA_KEY_BITS, SIGNATURE_ALGORITHM
from .errors import KeyPolicyError, SignatureCryptoInvalidError, SignatureStaleError
from .hashing import content_hash
from .util import b64d, b64e, constant_time_compare

RSA_SHA256 = "rsa-sha256"
ED25519 = "ed25519"
SUPPORTED_ALGORITHMS = (RSA_SHA256, ED25519)

KeyMaterial = Union[str, bytes]


@dataclass
class SignatureCheck:
    """Outcome of verifying one signature."""
    crypto_valid: bool
    hash_match: bool
    anchor_hash: str = ""
    current_hash: str = ""

    def is_valid(self) -> bool:
        return self.crypto_valid and self.hash_match

    def to_dict(self):
        return {
            "crypto_valid": self.crypto_valid,
            "hash_match": self.hash_match,
            "valid": self.is_valid(),
            "anchor_hash": self.anchor_hash,
            "current_hash": self.current_hash,
        }


def signing_payload(content: bytes, anchor_hash: str) -> bytes:
    """The exact bytes a signature covers."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return bytes(content) + anchor_hash.encode("ascii")


def generate_signing_key() -> Tuple[str, str]:
    """
    Generate an Ed25519 key pair.

    Returns:
        Tuple of (signing_key_b64, verify_key_b64)
    """
    signing_key = SigningKey.generate()
    return b64e(bytes(signing_key)), b64e(bytes(signing_key.verify_key))


def _ed25519_key(material: KeyMaterial, key_type):
    try:
        raw = b64d(material.decode("ascii") if isinstance(material, bytes) else material)
        return key_type(raw)
    except (binascii.Error, ValueError, TypeError) as e:
        raise KeyPolicyError(f"Unreadable Ed25519 key: {e}") from e


class SignatureService:
    """
    Signs and verifies content against an anchor hash.

    Stateless apart from configuration; safe to share across threads.
    """

    def __init__(self, algorithm: str = SIGNATURE_ALGORITHM, min_key_bits: int = MIN_RSA_KEY_BITS):
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported signature algorithm: {algorithm}")
        self.algorithm = algorithm
        self.min_key_bits = min_key_bits

    def sign(
        self,
        content: bytes,
        anchor_hash: str,
        private_key: KeyMaterial,
        algorithm: Optional[str] = None
    ) -> str:
        """
        Sign ``content || anchor_hash``.

        Args:
            content: Raw document bytes
            anchor_hash: Content hash the signature is bound to
            private_key: PEM RSA private key, or base64 Ed25519 signing key
            algorithm: Override the service default

        Returns:
            Base64-encoded signature
        """
        algorithm = algorithm or self.algorithm
        payload = signing_payload(content, anchor_hash)

        if algorithm == RSA_SHA256:
            key = load_private_key(private_key, self.min_key_bits)
            return b64e(key.sign(payload, padding.PKCS1v15(), hashes.SHA256()))
        if algorithm == ED25519:
            key = _ed25519_key(private_key, SigningKey)
            return b64e(key.sign(payload).signature)
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")

    def verify(
        self,
        content: bytes,
        anchor_hash: str,
        signature_b64: str,
        public_key: KeyMaterial,
        current_hash: Optional[str] = None,
        algorithm: Optional[str] = None
    ) -> SignatureCheck:
        """
        Verify a signature and compare its anchor with the current content hash.

        Args:
            content: The content the signature was made over
            anchor_hash: The anchor recorded at signing time
            signature_b64: Base64-encoded signature
            public_key: PEM RSA public key, or base64 Ed25519 verify key
            current_hash: Current document content hash; defaults to hash(content)
            algorithm: Override the service default

        Returns:
            SignatureCheck with crypto_valid and hash_match reported separately
        """
        algorithm = algorithm or self.algorithm
        if current_hash is None:
            current_hash = content_hash(content)

        crypto_valid = self._verify_bytes(
            signing_payload(content, anchor_hash), signature_b64, public_key, algorithm
        )
        return SignatureCheck(
            crypto_valid=crypto_valid,
            hash_match=constant_time_compare(anchor_hash, current_hash),
            anchor_hash=anchor_hash,
            current_hash=current_hash,
        )

    def _verify_bytes(self, payload: bytes, signature_b64: str, public_key: KeyMaterial, algorithm: str) -> bool:
        try:
            signature = b64d(signature_b64)
        except (binascii.Error, ValueError):
            return False

        if algorithm == RSA_SHA256:
            key = load_public_key(public_key, self.min_key_bits)
            try:
                key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
                return True
            except InvalidSignature:
                return False
        if algorithm == ED25519:
            key = _ed25519_key(public_key, VerifyKey)
            try:
                key.verify(payload, signature)
                return True
            except (BadSignatureError, ValueError):
                return False
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")

    @staticmethod
    def require_valid(check: SignatureCheck, signature_id: Optional[str] = None, signer: Optional[str] = None) -> None:
        """
        Raise if a check did not pass both parts.

        Raises:
            SignatureCryptoInvalidError: bytes did not verify
            SignatureStaleError: bytes verify but the anchor is out of date
        """
        if not check.crypto_valid:
            raise SignatureCryptoInvalidError(signature_id, signer)
        if not check.hash_match:
            raise SignatureStaleError(check.anchor_hash, check.current_hash, signature_id)
