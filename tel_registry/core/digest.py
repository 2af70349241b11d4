"""
TEL Digest Primitives

Self-addressing identifiers: a content hash anyone can recompute from the
bytes it addresses. Digests are rendered as ``"<algorithm>:<hex>"`` so a
verifier always knows which function produced them.

Usage:
    >>> from tel_registry.core.digest import digest
    >>> digest(b"hello")
    'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
"""

import hashlib
from typing import Callable, Dict, Tuple

from tel_registry.core.errors import CryptoError


DEFAULT_ALGORITHM = "sha256"

_HASHERS: Dict[str, Callable[[bytes], bytes]] = {
    "sha256": lambda data: hashlib.sha256(data).digest(),
    "blake2b-256": lambda data: hashlib.blake2b(data, digest_size=32).digest(),
    "sha3-256": lambda data: hashlib.sha3_256(data).digest(),
}

SUPPORTED_ALGORITHMS = tuple(sorted(_HASHERS))


def digest(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """
    Compute the self-addressing digest of raw bytes.

    Args:
        data: Bytes to hash
        algorithm: One of SUPPORTED_ALGORITHMS

    Returns:
        str: Digest with algorithm prefix

    Raises:
        CryptoError: If the algorithm is unknown
    """
    try:
        hasher = _HASHERS[algorithm]
    except KeyError:
        raise CryptoError(f"Unsupported digest algorithm: {algorithm}") from None
    return f"{algorithm}:{hasher(data).hex()}"


def split_digest(value: str) -> Tuple[str, str]:
    """
    Split a digest string into ``(algorithm, hex)``.

    Raises:
        CryptoError: If the string is not a well-formed digest
    """
    algorithm, sep, hex_part = value.partition(":")
    if not sep or algorithm not in _HASHERS:
        raise CryptoError(f"Malformed digest: {value!r}")
    try:
        raw = bytes.fromhex(hex_part)
    except ValueError:
        raise CryptoError(f"Malformed digest: {value!r}") from None
    if len(raw) != 32:
        raise CryptoError(f"Digest must be 32 bytes, got {len(raw)}")
    return algorithm, hex_part


def verify_digest(data: bytes, expected: str) -> bool:
    """Recompute the digest of ``data`` with the algorithm named in ``expected``."""
    algorithm, _ = split_digest(expected)
    return digest(data, algorithm) == expected


def derive_member_id(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """
    Derive a self-addressing member identifier.

    The identifier of a registry member is the digest of the content it
    stands for (for a credential, the credential bytes).
    """
    return digest(data, algorithm)
