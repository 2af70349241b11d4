"""
TEL State Machine and Replay Engine

A member's state is never stored on its own: it is the left fold of the
member's log, starting from NULL.

    NULL    --INCEPTION (seq 0, empty log)-->  NULL
    NULL    --ISSUANCE-->                      ISSUED
    ISSUED  --REVOCATION-->                    REVOKED
    REVOKED --ISSUANCE (re-issuance)-->        ISSUED

Every other pair is illegal. Inception only opens the log; a separate
issuance is always required before the member counts as issued.

``apply_event`` is the single step used both by the validator (where an
illegal step is the sender's fault, ``IllegalTransition``) and by the
replay engine (where it means the stored log is broken,
``CorruptLogInvariant``). Using one step function for both keeps the
incremental and the full-replay state identical.
"""

from enum import Enum
from typing import Iterable, List, Optional

from tel_registry.core.errors import CorruptLogInvariant, CryptoError, IllegalTransition
from tel_registry.core.events import EventType, TelEvent
from tel_registry.core.signer import verify


class TelState(Enum):
    """Derived lifecycle state of a registry member."""

    NULL = "NULL"
    ISSUED = "ISSUED"
    REVOKED = "REVOKED"


def apply_event(
    state: TelState,
    event: TelEvent,
    log_length: int,
    allow_reissuance: bool = True
) -> TelState:
    """
    Apply one event to a state.

    Args:
        state: State before the event
        event: Event being applied
        log_length: Number of events already in the log
        allow_reissuance: Whether REVOKED -> ISSUED is permitted

    Returns:
        TelState: State after the event

    Raises:
        IllegalTransition: If the table does not allow the transition
    """
    event_type = event.event_type

    if event_type is EventType.INCEPTION:
        if log_length != 0:
            raise IllegalTransition(
                "Inception is only allowed as the first event of a log",
                event.member_id, event.self_digest
            )
        return state

    if log_length == 0:
        raise IllegalTransition(
            f"{event_type.value} cannot open a log; inception is required first",
            event.member_id, event.self_digest
        )

    if event_type is EventType.ISSUANCE:
        if state is TelState.NULL:
            return TelState.ISSUED
        if state is TelState.REVOKED:
            if allow_reissuance:
                return TelState.ISSUED
            raise IllegalTransition(
                "Re-issuance after revocation is disabled",
                event.member_id, event.self_digest
            )
        raise IllegalTransition(
            "Duplicate issuance: member is already issued",
            event.member_id, event.self_digest
        )

    if event_type is EventType.REVOCATION:
        if state is TelState.ISSUED:
            return TelState.REVOKED
        if state is TelState.REVOKED:
            raise IllegalTransition(
                "Duplicate revocation: member is already revoked",
                event.member_id, event.self_digest
            )
        raise IllegalTransition(
            "Cannot revoke a member that was never issued",
            event.member_id, event.self_digest
        )

    raise IllegalTransition(f"Unhandled event type: {event_type}")


def replay_history(
    events: Iterable[TelEvent],
    allow_reissuance: bool = True,
    public_keys: Optional[List[bytes]] = None,
    registry_id: Optional[str] = None
) -> List[TelState]:
    """
    Fold a stored log from NULL, re-checking every record.

    Checks per record: the stored self_digest matches the recomputed one,
    the record links to its predecessor, sequence numbers are contiguous,
    all records belong to one member and one registry, and the transition is
    legal. When ``public_keys`` is given, the signature must verify against
    one of them; when ``registry_id`` is given, every record must name it.

    Args:
        events: The log, in sequence order
        allow_reissuance: Whether REVOKED -> ISSUED is permitted
        public_keys: Member key history for signature re-verification
        registry_id: Registry the log must belong to

    Returns:
        List[TelState]: State after each event

    Raises:
        CorruptLogInvariant: On the first record that fails a check
    """
    states: List[TelState] = []
    state = TelState.NULL
    previous: Optional[TelEvent] = None

    for index, event in enumerate(events):
        member_id = event.member_id

        def corrupt(reason: str) -> CorruptLogInvariant:
            return CorruptLogInvariant(
                f"Record {index}: {reason}", member_id, event.self_digest
            )

        if not event.has_valid_digest():
            raise corrupt("stored digest does not match recomputed digest")
        if event.sequence_number != index:
            raise corrupt(f"expected sequence {index}, found {event.sequence_number}")
        if previous is None:
            if event.prior_digest:
                raise corrupt("first record must not reference a prior event")
        else:
            if event.member_id != previous.member_id:
                raise corrupt("record belongs to a different member")
            if event.prior_digest != previous.self_digest:
                raise corrupt("prior_digest does not link to the previous record")
            if event.registry_id != previous.registry_id:
                raise corrupt("record names a different registry")
        if registry_id is not None and event.registry_id != registry_id:
            raise corrupt(f"record belongs to registry {event.registry_id[:23] or '(none)'}")
        if public_keys is not None and not _signed_by_any(event, public_keys):
            raise corrupt("signature does not verify against the member's keys")

        try:
            state = apply_event(state, event, index, allow_reissuance)
        except IllegalTransition as e:
            raise corrupt(e.message) from e

        states.append(state)
        previous = event

    return states


def derive_state(
    events: Iterable[TelEvent],
    allow_reissuance: bool = True,
    public_keys: Optional[List[bytes]] = None
) -> TelState:
    """Full replay of a log; NULL for an empty one."""
    history = replay_history(events, allow_reissuance, public_keys)
    return history[-1] if history else TelState.NULL


def _signed_by_any(event: TelEvent, public_keys: List[bytes]) -> bool:
    signing_bytes = event.signing_bytes()
    for key in public_keys:
        try:
            if verify(event.signature, signing_bytes, key):
                return True
        except CryptoError:
            continue
    return False
