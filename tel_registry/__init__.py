"""
TEL Registry: Transaction Event Log

Append-only, hash-chained, signed event logs recording whether registry
members are currently issued or revoked.

This library provides:
- Self-addressing event digests and Ed25519 signatures
- A registry management log binding the issuer and its backers
- Per-member logs with fork and duplicate rejection
- Escrow of out-of-order events with automatic promotion
- Deterministic state derivation by replay
- Independent verification of exported logs

Example:
    >>> from tel_registry import RegistryManager, Ed25519Signer, TelState
    >>>
    >>> signer = Ed25519Signer()
    >>> registry = RegistryManager()
    >>>
    >>> log = registry.inception("member-1", signer)
    >>> result = registry.issue("member-1", signer, payload=b"sha256:abc...")
    >>> registry.get_state("member-1") is TelState.ISSUED
    True
    >>> result = registry.revoke("member-1", signer)
    >>> registry.get_state("member-1") is TelState.REVOKED
    True

License:
    Apache License 2.0
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from tel_registry.core.errors import (
    TelError,
    CryptoError,
    InvalidSignature,
    StaleOrForkedEvent,
    DuplicateEvent,
    IllegalTransition,
    UnknownMember,
    RegistryMismatch,
    MalformedEvent,
    CorruptLogInvariant,
    EscrowExpired,
)
from tel_registry.core.events import EventType, TelEvent
from tel_registry.core.state import TelState, derive_state
from tel_registry.core.management import ManagementState
from tel_registry.core.signer import Ed25519Signer
from tel_registry.core.registry import RegistryManager
from tel_registry.core.validator import Outcome, SubmitResult
from tel_registry.core.verifier import ChainVerifier, ChainVerificationResult
from tel_registry.config import RegistryConfig, ConfigError

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "RegistryConfig",
    "ConfigError",
    # Errors
    "TelError",
    "CryptoError",
    "InvalidSignature",
    "StaleOrForkedEvent",
    "DuplicateEvent",
    "IllegalTransition",
    "UnknownMember",
    "RegistryMismatch",
    "MalformedEvent",
    "CorruptLogInvariant",
    "EscrowExpired",
    # Events and state
    "EventType",
    "TelEvent",
    "TelState",
    "derive_state",
    "ManagementState",
    # Core components
    "Ed25519Signer",
    "RegistryManager",
    "Outcome",
    "SubmitResult",
    # Verification
    "ChainVerifier",
    "ChainVerificationResult",
]
