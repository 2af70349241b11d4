"""
TEL Cryptographic Signer

Ed25519 signing capability and signature verification for TEL events.

The registry never holds private keys of its own: a signer is handed in by
the caller whenever an event is built locally, and only the public half is
recorded (see ``tel_registry.core.keys``).

Usage:
    >>> from tel_registry.core.signer import Ed25519Signer, verify
    >>>
    >>> signer = Ed25519Signer()
    >>> result = signer.sign(b"data to sign")
    >>> verify(result.signature, b"data to sign", signer.public_key)
    True
"""

import base64
from typing import Optional, Tuple
from dataclasses import dataclass

from tel_registry.core.errors import CryptoError

try:
    from nacl.signing import SigningKey, VerifyKey
    from nacl.exceptions import BadSignatureError, CryptoError as NaclCryptoError
    NACL_AVAILABLE = True
except ImportError:
    NACL_AVAILABLE = False
    # Fallback to cryptography library
    from cryptography.hazmat.primitives.asymmetric.ed25519 import (
        Ed25519PrivateKey,
        Ed25519PublicKey
    )
    from cryptography.hazmat.primitives import serialization
    from cryptography.exceptions import InvalidSignature as CryptographyInvalidSignature


PUBLIC_KEY_SIZE = 32
PRIVATE_KEY_SIZE = 32
SIGNATURE_SIZE = 64


@dataclass
class SignatureResult:
    """Result of a signing operation."""
    signature: bytes
    signature_b64: str
    public_key: bytes
    public_key_b64: str


class Ed25519Signer:
    """
    Ed25519 signing capability.

    Attributes:
        public_key: 32-byte verification key
    """

    def __init__(self, private_key: Optional[bytes] = None):
        """
        Initialize the signer.

        Args:
            private_key: Optional 32-byte private key seed. If not provided,
                        a new key pair will be generated.

        Raises:
            CryptoError: If the private key has the wrong length
        """
        if private_key is not None and len(private_key) != PRIVATE_KEY_SIZE:
            raise CryptoError(
                f"Private key must be {PRIVATE_KEY_SIZE} bytes, got {len(private_key)}"
            )
        if NACL_AVAILABLE:
            self._init_nacl(private_key)
        else:
            self._init_cryptography(private_key)

    def _init_nacl(self, private_key: Optional[bytes] = None):
        """Initialize using PyNaCl library."""
        if private_key:
            self._signing_key = SigningKey(private_key)
        else:
            self._signing_key = SigningKey.generate()
        self._verify_key = self._signing_key.verify_key

    def _init_cryptography(self, private_key: Optional[bytes] = None):
        """Initialize using cryptography library."""
        if private_key:
            self._private_key = Ed25519PrivateKey.from_private_bytes(private_key)
        else:
            self._private_key = Ed25519PrivateKey.generate()
        self._public_key = self._private_key.public_key()

    @classmethod
    def from_private_key_b64(cls, private_key_b64: str) -> 'Ed25519Signer':
        """Create a signer from a base64-encoded private key seed."""
        try:
            private_key = base64.b64decode(private_key_b64, validate=True)
        except ValueError as e:
            raise CryptoError(f"Private key is not valid base64: {e}") from e
        return cls(private_key=private_key)

    @property
    def public_key(self) -> bytes:
        """Get the public key bytes."""
        if NACL_AVAILABLE:
            return bytes(self._verify_key)
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

    @property
    def public_key_b64(self) -> str:
        """Get the public key as base64 string."""
        return base64.b64encode(self.public_key).decode('ascii')

    @property
    def private_key(self) -> bytes:
        """Get the private key seed."""
        if NACL_AVAILABLE:
            return bytes(self._signing_key)
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )

    @property
    def private_key_b64(self) -> str:
        return base64.b64encode(self.private_key).decode('ascii')

    def sign(self, data: bytes) -> SignatureResult:
        """
        Sign data with the private key.

        Args:
            data: The bytes to sign

        Returns:
            SignatureResult: Contains signature and public key
        """
        if NACL_AVAILABLE:
            signature = self._signing_key.sign(data).signature
        else:
            signature = self._private_key.sign(data)

        return SignatureResult(
            signature=signature,
            signature_b64=base64.b64encode(signature).decode('ascii'),
            public_key=self.public_key,
            public_key_b64=self.public_key_b64
        )


def verify(signature: bytes, signed_bytes: bytes, public_key: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature: 64-byte signature
        signed_bytes: The bytes that were signed
        public_key: 32-byte Ed25519 public key

    Returns:
        bool: True if the signature is valid for the key

    Raises:
        CryptoError: If the key or signature is malformed
    """
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise CryptoError(
            f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}"
        )
    if len(signature) != SIGNATURE_SIZE:
        raise CryptoError(
            f"Signature must be {SIGNATURE_SIZE} bytes, got {len(signature)}"
        )

    if NACL_AVAILABLE:
        try:
            verify_key = VerifyKey(public_key)
        except (NaclCryptoError, ValueError, TypeError) as e:
            raise CryptoError(f"Invalid public key: {e}") from e
        try:
            verify_key.verify(signed_bytes, signature)
        except BadSignatureError:
            return False
        return True

    try:
        pk = Ed25519PublicKey.from_public_bytes(public_key)
    except ValueError as e:
        raise CryptoError(f"Invalid public key: {e}") from e
    try:
        pk.verify(signature, signed_bytes)
    except CryptographyInvalidSignature:
        return False
    return True


def generate_key_pair() -> Tuple[bytes, bytes]:
    """
    Generate a new Ed25519 key pair.

    Returns:
        Tuple[bytes, bytes]: (private_key, public_key) each 32 bytes
    """
    signer = Ed25519Signer()
    return (signer.private_key, signer.public_key)
