"""
TEL Verification Module

Independent re-verification of an exported member log, without access to
the registry that produced it. Unlike the replay engine, which stops at the
first inconsistency and raises, the verifier walks the whole log and
reports every problem it finds.

Checks per event:
    1. Digest correctness - stored self_digest equals the recomputed digest
    2. Chain continuity - prior_digest links to the previous event
    3. Sequence continuity - sequence_number equals the position
    4. Signature validity - signature verifies against the member's keys
    5. State legality - the transition table allows the event
    6. Registry scope - every event names the same registry

Usage:
    >>> from tel_registry.core.verifier import ChainVerifier, load_log_file
    >>>
    >>> export = load_log_file("member.json")
    >>> verifier = ChainVerifier(export.public_keys, registry_id=export.registry_id)
    >>> result = verifier.verify(export.events)
    >>> print(f"Chain intact: {result.is_valid}, state: {result.state.value}")
"""

import base64
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from tel_registry.core.errors import CryptoError, IllegalTransition, MalformedEvent
from tel_registry.core.events import TelEvent, event_from_dict
from tel_registry.core.signer import verify
from tel_registry.core.state import TelState, apply_event
from tel_registry.utils.helpers import format_timestamp


EXPORT_VERSION = "1.0.0"


@dataclass
class ChainVerificationResult:
    """
    Result of a log verification.

    Attributes:
        is_valid: True if the entire log is valid
        events_verified: Number of events examined
        state: State derived from the valid prefix of the log
        first_invalid_index: Index of first invalid event (if any)
        invalid_hashes: (index, expected, actual) for digest or link failures
        invalid_signatures: Indices with invalid signatures
        illegal_transitions: (index, reason) for state machine violations
        registry_mismatches: Indices naming a different registry
        error_message: Summary of the issues found
    """
    is_valid: bool
    events_verified: int = 0
    state: TelState = TelState.NULL
    first_invalid_index: Optional[int] = None
    invalid_hashes: List[Tuple[int, str, str]] = field(default_factory=list)
    invalid_signatures: List[int] = field(default_factory=list)
    illegal_transitions: List[Tuple[int, str]] = field(default_factory=list)
    registry_mismatches: List[int] = field(default_factory=list)
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "events_verified": self.events_verified,
            "state": self.state.value,
            "first_invalid_index": self.first_invalid_index,
            "error_message": self.error_message,
            "invalid_hash_count": len(self.invalid_hashes),
            "invalid_signature_count": len(self.invalid_signatures),
            "illegal_transition_count": len(self.illegal_transitions),
            "registry_mismatch_count": len(self.registry_mismatches),
        }


class ChainVerifier:
    """
    Verifies digest chain, signatures and transitions of one member log.
    """

    def __init__(
        self,
        public_keys: Optional[Sequence[bytes]] = None,
        allow_reissuance: bool = True,
        registry_id: Optional[str] = None
    ):
        """
        Initialize the chain verifier.

        Args:
            public_keys: Member key history for signature verification.
                        If not provided, signature verification is skipped.
            allow_reissuance: Whether REVOKED -> ISSUED is permitted
            registry_id: Registry the log must belong to. If not provided,
                        events must agree with the first one.
        """
        self._public_keys = list(public_keys or [])
        self._allow_reissuance = allow_reissuance
        self._registry_id = registry_id

    def _signature_ok(self, event: TelEvent) -> bool:
        signing_bytes = event.signing_bytes()
        for key in self._public_keys:
            try:
                if verify(event.signature, signing_bytes, key):
                    return True
            except CryptoError:
                continue
        return False

    def verify(
        self,
        events: Sequence[TelEvent],
        verify_signatures: bool = True
    ) -> ChainVerificationResult:
        """
        Verify a log.

        Args:
            events: The member's events, in sequence order
            verify_signatures: Whether to verify Ed25519 signatures

        Returns:
            ChainVerificationResult: Detailed verification result
        """
        invalid_hashes: List[Tuple[int, str, str]] = []
        invalid_signatures: List[int] = []
        illegal: List[Tuple[int, str]] = []
        mismatches: List[int] = []
        bad_indices = set()
        registry_id = self._registry_id
        if registry_id is None and events:
            registry_id = events[0].registry_id

        state = TelState.NULL
        previous_digest = ""
        prefix_valid = True

        for i, event in enumerate(events):
            try:
                computed = event.compute_digest()
            except CryptoError:
                computed = "unsupported digest algorithm"
            if event.self_digest != computed:
                invalid_hashes.append((
                    i,
                    f"Expected hash: {computed[:23]}...",
                    f"Got: {event.self_digest[:23]}..."
                ))
                bad_indices.add(i)

            if event.prior_digest != previous_digest:
                invalid_hashes.append((
                    i,
                    f"Expected prior_digest: {previous_digest[:23] or 'empty'}",
                    f"Got: {event.prior_digest[:23] or 'empty'}"
                ))
                bad_indices.add(i)

            if event.sequence_number != i:
                illegal.append((i, f"sequence {event.sequence_number} at position {i}"))
                bad_indices.add(i)

            if event.registry_id != registry_id:
                mismatches.append(i)
                bad_indices.add(i)

            if verify_signatures and self._public_keys and not self._signature_ok(event):
                invalid_signatures.append(i)
                bad_indices.add(i)

            try:
                next_state = apply_event(state, event, i, self._allow_reissuance)
            except IllegalTransition as e:
                illegal.append((i, e.message))
                bad_indices.add(i)
            else:
                if prefix_valid and i not in bad_indices:
                    state = next_state

            if i in bad_indices:
                prefix_valid = False
            previous_digest = event.self_digest

        is_valid = not bad_indices

        error_message = None
        if not is_valid:
            issues = []
            if invalid_hashes:
                issues.append(f"{len(invalid_hashes)} invalid hashes")
            if invalid_signatures:
                issues.append(f"{len(invalid_signatures)} invalid signatures")
            if illegal:
                issues.append(f"{len(illegal)} illegal transitions")
            if mismatches:
                issues.append(f"{len(mismatches)} events from another registry")
            error_message = "; ".join(issues)

        return ChainVerificationResult(
            is_valid=is_valid,
            events_verified=len(events),
            state=state,
            first_invalid_index=min(bad_indices) if bad_indices else None,
            invalid_hashes=invalid_hashes,
            invalid_signatures=invalid_signatures,
            illegal_transitions=illegal,
            registry_mismatches=mismatches,
            error_message=error_message
        )


@dataclass
class LogExport:
    """Contents of an exported member log file."""
    member_id: str
    public_keys: List[bytes]
    events: List[TelEvent]
    state: Optional[str] = None
    registry_id: str = ""
    exported_at: Optional[str] = None
    version: str = EXPORT_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "exported_at": self.exported_at or format_timestamp(),
            "member_id": self.member_id,
            "registry_id": self.registry_id,
            "public_keys": [base64.b64encode(k).decode('ascii') for k in self.public_keys],
            "state": self.state,
            "event_count": len(self.events),
            "events": [event.to_dict() for event in self.events],
        }


def write_log_file(export: LogExport, filepath: Union[str, Path]) -> None:
    """Write an export document as JSON."""
    with open(filepath, 'w') as f:
        json.dump(export.to_dict(), f, indent=2)


def load_log_file(filepath: Union[str, Path]) -> LogExport:
    """
    Read an export document.

    Raises:
        MalformedEvent: If the document or one of its events is malformed
    """
    with open(filepath, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"Export is not valid JSON: {e}") from e

    try:
        member_id = data["member_id"]
        public_keys = [
            base64.b64decode(k, validate=True) for k in data.get("public_keys", [])
        ]
    except KeyError as e:
        raise MalformedEvent(f"Missing export field: {e.args[0]}") from e
    except ValueError as e:
        raise MalformedEvent(f"Invalid public key encoding: {e}") from e

    return LogExport(
        member_id=member_id,
        public_keys=public_keys,
        events=[event_from_dict(e) for e in data.get("events", [])],
        state=data.get("state"),
        registry_id=data.get("registry_id") or "",
        exported_at=data.get("exported_at"),
        version=data.get("version", EXPORT_VERSION),
    )
