"""
Hybrid envelope encryption.

Every call to ``encrypt_for`` draws a fresh 256-bit content key and a fresh
96-bit nonce, encrypts the plaintext with AES-256-GCM, and wraps the content
key under the recipient's RSA public key with OAEP/SHA-256. Sharing with N
recipients produces N independent packages, so revoking one recipient is
just dropping their package.

GCM authenticates the ciphertext: a flipped bit anywhere in the package
fails decryption instead of yielding garbage.
"""

import binascii
import logging
import secrets
from typing import Dict, Mapping, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import MIN_RSA_KEY_BITS
from .errors import DecryptionError, KeyNotFoundError, KeyPolicyError
from .models import ENVELOPE_ALGORITHM, Document, EnvelopePackage
from .util import b64d, b64e

logger = logging.getLogger("docintegrity.cipher")

KeyMaterial = Union[str, bytes]

CONTENT_KEY_BYTES = 32
NONCE_BYTES = 12

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def _as_bytes(pem: KeyMaterial) -> bytes:
    return pem.encode("ascii") if isinstance(pem, str) else pem


def load_public_key(pem: KeyMaterial, min_bits: int = MIN_RSA_KEY_BITS) -> rsa.RSAPublicKey:
    """Parse a PEM RSA public key, enforcing the minimum modulus size."""
    try:
        key = serialization.load_pem_public_key(_as_bytes(pem))
    except (ValueError, TypeError) as e:
        raise KeyPolicyError(f"Unreadable public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyPolicyError(f"Expected an RSA public key, got {type(key).__name__}")
    if key.key_size < min_bits:
        raise KeyPolicyError(f"RSA key is {key.key_size} bits, minimum is {min_bits}")
    return key


def load_private_key(pem: KeyMaterial, min_bits: int = MIN_RSA_KEY_BITS) -> rsa.RSAPrivateKey:
    """Parse an unencrypted PEM RSA private key, enforcing the minimum modulus size."""
    try:
        key = serialization.load_pem_private_key(_as_bytes(pem), password=None)
    except (ValueError, TypeError) as e:
        raise KeyPolicyError(f"Unreadable private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyPolicyError(f"Expected an RSA private key, got {type(key).__name__}")
    if key.key_size < min_bits:
        raise KeyPolicyError(f"RSA key is {key.key_size} bits, minimum is {min_bits}")
    return key


def generate_key_pair(bits: int = 2048) -> Tuple[str, str]:
    """
    Generate an RSA key pair.

    Returns:
        Tuple of (private_key_pem, public_key_pem); private key is PKCS#8,
        public key is SubjectPublicKeyInfo.
    """
    if bits < 2048:
        raise KeyPolicyError(f"Refusing to generate a {bits}-bit RSA key")
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


class HybridCipher:
    """
    Per-recipient envelope encryption.

    Stateless; one instance can be shared across threads.
    """

    def __init__(self, min_key_bits: int = MIN_RSA_KEY_BITS):
        self.min_key_bits = min_key_bits

    def encrypt_for(self, plaintext: bytes, recipient_public_key: KeyMaterial) -> EnvelopePackage:
        """
        Encrypt plaintext for one recipient with a fresh content key and nonce.

        Args:
            plaintext: Raw content bytes
            recipient_public_key: PEM RSA public key

        Returns:
            EnvelopePackage with base64 ciphertext, wrapped key and IV
        """
        if not isinstance(plaintext, (bytes, bytearray)):
            raise TypeError(f"plaintext must be bytes, got {type(plaintext).__name__}")

        public_key = load_public_key(recipient_public_key, self.min_key_bits)
        content_key = AESGCM.generate_key(bit_length=CONTENT_KEY_BYTES * 8)
        nonce = secrets.token_bytes(NONCE_BYTES)

        ciphertext = AESGCM(content_key).encrypt(nonce, bytes(plaintext), ENVELOPE_ALGORITHM.encode("ascii"))
        wrapped_key = public_key.encrypt(content_key, _OAEP)

        logger.debug("Encrypted %d bytes into a fresh envelope", len(plaintext))
        return EnvelopePackage(
            ciphertext=b64e(ciphertext),
            wrapped_key=b64e(wrapped_key),
            iv=b64e(nonce),
        )

    def encrypt_for_recipients(
        self,
        plaintext: bytes,
        public_keys: Mapping[str, KeyMaterial]
    ) -> Dict[str, EnvelopePackage]:
        """Build one independent envelope per recipient identity."""
        return {identity: self.encrypt_for(plaintext, pem) for identity, pem in public_keys.items()}

    def decrypt_for(self, package: EnvelopePackage, recipient_private_key: KeyMaterial) -> bytes:
        """
        Unwrap the content key and decrypt.

        Raises:
            DecryptionError: wrong key, corrupted wrap, or tampered ciphertext
        """
        if package.algorithm != ENVELOPE_ALGORITHM:
            raise DecryptionError(f"Unsupported envelope algorithm: {package.algorithm}")

        private_key = load_private_key(recipient_private_key, self.min_key_bits)

        try:
            wrapped_key = b64d(package.wrapped_key)
            nonce = b64d(package.iv)
            ciphertext = b64d(package.ciphertext)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Envelope fields are not valid base64") from e

        try:
            content_key = private_key.decrypt(wrapped_key, _OAEP)
        except ValueError as e:
            raise DecryptionError("Content key unwrap failed") from e

        if len(content_key) != CONTENT_KEY_BYTES or len(nonce) != NONCE_BYTES:
            raise DecryptionError("Envelope key or nonce has the wrong length")

        try:
            return AESGCM(content_key).decrypt(nonce, ciphertext, ENVELOPE_ALGORITHM.encode("ascii"))
        except InvalidTag as e:
            raise DecryptionError("Ciphertext failed authentication") from e

    def decrypt_document(self, document: Document, identity: str, private_key: KeyMaterial) -> bytes:
        """
        Decrypt the caller's own package of an encrypted document.

        Raises:
            KeyNotFoundError: the identity has no package on this document
            DecryptionError: the package does not open with this key
        """
        package = document.envelopes.get(identity)
        if package is None:
            raise KeyNotFoundError(document.id, identity)
        return self.decrypt_for(package, private_key)
