"""
TEL Core Module

This module contains the event log engine of the TEL registry.

Submodules:
    - digest: Self-addressing digests
    - signer: Ed25519 signing and verification
    - keys: Member public key history
    - events: Event record and canonical encoding
    - state: State machine and replay engine
    - management: Registry management log (issuer and backers)
    - store: Member log store and escrow buffer
    - persistence: Storage backends
    - validator: Event validation pipeline
    - registry: Registry manager
    - verifier: Independent log verification and export files
"""

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
    StorageError,
)

from tel_registry.core.digest import digest, derive_member_id, verify_digest

from tel_registry.core.signer import (
    Ed25519Signer,
    SignatureResult,
    verify,
    generate_key_pair,
)

from tel_registry.core.keys import KeyRegistry

from tel_registry.core.events import (
    EventType,
    TelEvent,
    event_from_dict,
    make_inception_event,
    make_issuance_event,
    make_revocation_event,
)

from tel_registry.core.state import TelState, apply_event, derive_state, replay_history

from tel_registry.core.management import (
    ManagementEvent,
    ManagementEventType,
    ManagementLog,
    ManagementState,
    apply_management_event,
    make_backer_rotation,
    make_registry_inception,
    replay_management,
)

from tel_registry.core.store import MemberLog, EscrowBuffer, EscrowEntry

from tel_registry.core.persistence import StorageBackend, MemoryBackend, FileBackend

from tel_registry.core.validator import Outcome, Rejection, SubmitResult, Validator

from tel_registry.core.registry import RegistryManager

from tel_registry.core.verifier import (
    ChainVerifier,
    ChainVerificationResult,
    LogExport,
    load_log_file,
    write_log_file,
)

__all__ = [
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
    "StorageError",
    # Primitives
    "digest",
    "derive_member_id",
    "verify_digest",
    "Ed25519Signer",
    "SignatureResult",
    "verify",
    "generate_key_pair",
    "KeyRegistry",
    # Events
    "EventType",
    "TelEvent",
    "event_from_dict",
    "make_inception_event",
    "make_issuance_event",
    "make_revocation_event",
    # State
    "TelState",
    "apply_event",
    "derive_state",
    "replay_history",
    # Registry management
    "ManagementEvent",
    "ManagementEventType",
    "ManagementLog",
    "ManagementState",
    "apply_management_event",
    "make_backer_rotation",
    "make_registry_inception",
    "replay_management",
    # Store
    "MemberLog",
    "EscrowBuffer",
    "EscrowEntry",
    "StorageBackend",
    "MemoryBackend",
    "FileBackend",
    # Validation
    "Outcome",
    "Rejection",
    "SubmitResult",
    "Validator",
    "RegistryManager",
    # Verification
    "ChainVerifier",
    "ChainVerificationResult",
    "LogExport",
    "load_log_file",
    "write_log_file",
]
