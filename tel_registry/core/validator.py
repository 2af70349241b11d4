"""
TEL Validator

Gatekeeper for a member's log. An incoming event goes through, in order,
stopping at the first failure:

    1. Signature against the member's authoritative key  -> InvalidSignature
       and registry scope                                -> RegistryMismatch
    2. Chain linkage against the log head                -> DuplicateEvent,
                                                            StaleOrForkedEvent,
                                                            or Escrowed
    3. State machine legality                            -> IllegalTransition
    4. Persist, append, then promote escrowed dependents

The validator assumes its caller holds the member's exclusive lock (see
``RegistryManager``). Nothing becomes visible to readers until step 4, and
step 4 persists before it appends, so a failed write leaves no trace.

Promotion is an explicit worklist: each appended digest may release the
events escrowed behind it, which are validated (steps 2-4) and, if
appended, queued in turn. A failed write stops promotion and puts the
released events back into escrow; the next submission retries them first.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, List, Optional, Tuple

from tel_registry.core.errors import (
    CorruptLogInvariant,
    CryptoError,
    DuplicateEvent,
    EscrowExpired,
    IllegalTransition,
    InvalidSignature,
    MalformedEvent,
    RegistryMismatch,
    StaleOrForkedEvent,
    StorageError,
    TelError,
)
from tel_registry.core.events import EventType, TelEvent
from tel_registry.core.keys import KeyRegistry
from tel_registry.core.persistence import StorageBackend
from tel_registry.core.signer import verify
from tel_registry.core.state import TelState, apply_event
from tel_registry.core.store import EscrowBuffer, EscrowEntry, MemberLog


logger = logging.getLogger(__name__)


class Outcome(Enum):
    """Non-error results of submitting an event."""

    APPENDED = "APPENDED"
    ESCROWED = "ESCROWED"


@dataclass(frozen=True)
class Rejection:
    """Audit record of a discarded event."""
    event: TelEvent
    error: TelError
    at: float

    def to_dict(self) -> dict:
        d = self.error.to_dict()
        d["event"] = self.event.short()
        d["at"] = self.at
        return d


@dataclass
class SubmitResult:
    """
    Result of one submission.

    Attributes:
        outcome: APPENDED or ESCROWED
        event: The submitted event
        state: Member state after the submission (and any promotions)
        promoted: Escrowed events appended as a consequence, in order
        rejected: Escrowed or evicted events discarded as a consequence
    """
    outcome: Outcome
    event: TelEvent
    state: TelState
    promoted: List[TelEvent] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)

    @property
    def appended(self) -> bool:
        return self.outcome is Outcome.APPENDED

    @property
    def escrowed(self) -> bool:
        return self.outcome is Outcome.ESCROWED


class Validator:
    """
    Validates and appends events for member logs.

    Args:
        keys: Authoritative signing keys per member
        storage: Persistence collaborator
        escrow: Shared escrow buffer
        allow_reissuance: Whether REVOKED -> ISSUED is permitted
        clock: Time source for escrow arrival stamps
        reporter: Called with every Rejection produced as a side effect

    Attributes:
        registry_id: Registry every accepted event must name ("" for none)
    """

    def __init__(
        self,
        keys: KeyRegistry,
        storage: StorageBackend,
        escrow: EscrowBuffer,
        allow_reissuance: bool = True,
        clock: Callable[[], float] = time.monotonic,
        reporter: Optional[Callable[[Rejection], None]] = None
    ):
        self._keys = keys
        self._storage = storage
        self._escrow = escrow
        self._allow_reissuance = allow_reissuance
        self._clock = clock
        self._reporter = reporter
        self.registry_id = ""

    def check_signature(self, event: TelEvent) -> None:
        """
        Step 1: the event must be signed by the member's current key.

        Raises:
            CryptoError: Malformed key or signature
            InvalidSignature: Signature does not verify, or no key is bound
            MalformedEvent: self_digest does not match the content
        """
        public_key = self._keys.current(event.member_id)
        if public_key is None:
            raise InvalidSignature(
                "No authoritative signing key for member",
                event.member_id, event.self_digest
            )
        try:
            valid = verify(event.signature, event.signing_bytes(), public_key)
        except CryptoError as e:
            raise CryptoError(e.message, event.member_id, event.self_digest) from e
        if not valid:
            raise InvalidSignature(
                "Signature does not verify against the member's key",
                event.member_id, event.self_digest
            )
        if not event.has_valid_digest():
            raise MalformedEvent(
                "self_digest does not match the event content",
                event.member_id, event.self_digest
            )

    def check_registry(self, event: TelEvent) -> None:
        if event.registry_id != self.registry_id:
            raise RegistryMismatch(
                f"Event names registry {event.registry_id[:23] or '(none)'}, "
                f"expected {self.registry_id[:23] or '(none)'}",
                event.member_id, event.self_digest
            )

    def links_to_head(self, log: MemberLog, event: TelEvent) -> bool:
        """
        Step 2: decide whether the event extends the head or must wait.

        Returns:
            bool: True if the event extends the head, False if it belongs
                in escrow

        Raises:
            DuplicateEvent: The event is already in the log
            StaleOrForkedEvent: The event builds on a non-head event
            IllegalTransition: Head matches but the sequence number does not
        """
        length, head, _ = log.snapshot()

        if event.self_digest in log:
            raise DuplicateEvent(
                f"Event already appended at sequence {log.index_of(event.self_digest)}",
                event.member_id, event.self_digest
            )

        if event.event_type is EventType.INCEPTION:
            if length > 0:
                raise StaleOrForkedEvent(
                    "Log already has an inception event",
                    event.member_id, event.self_digest
                )
            if event.sequence_number != 0 or event.prior_digest:
                raise IllegalTransition(
                    "Inception must be sequence 0 with no prior_digest",
                    event.member_id, event.self_digest
                )
            return True

        if head is not None and event.prior_digest == head:
            if event.sequence_number != length:
                raise IllegalTransition(
                    f"Sequence {event.sequence_number} does not follow head "
                    f"(expected {length})",
                    event.member_id, event.self_digest
                )
            return True

        if event.prior_digest in log:
            raise StaleOrForkedEvent(
                f"prior_digest references sequence {log.index_of(event.prior_digest)}, "
                f"not the head at {length - 1}",
                event.member_id, event.self_digest
            )

        return False

    def check_transition(self, log: MemberLog, event: TelEvent) -> TelState:
        """Step 3: state machine legality."""
        return apply_event(log.state, event, log.length(), self._allow_reissuance)

    def submit(self, log: MemberLog, event: TelEvent) -> SubmitResult:
        """
        Run every step for one incoming event.

        Returns:
            SubmitResult: APPENDED (with promotions) or ESCROWED

        Raises:
            TelError: Any rejection; the event is not appended
        """
        if log.halted:
            raise CorruptLogInvariant(
                f"Member is halted pending recovery: {log.halt_reason.message}",
                event.member_id, event.self_digest
            )
        self.check_signature(event)
        self.check_registry(event)
        promoted, rejected = self.retry(log)
        if event in promoted:
            return SubmitResult(
                outcome=Outcome.APPENDED,
                event=event,
                state=log.state,
                promoted=[e for e in promoted if e != event],
                rejected=rejected
            )

        if not self.links_to_head(log, event):
            result = self._escrow_event(log, event)
            result.promoted[:0] = promoted
            result.rejected[:0] = rejected
            return result

        self._commit(log, event)
        more_promoted, more_rejected = self._promote(log, event.self_digest)
        return SubmitResult(
            outcome=Outcome.APPENDED,
            event=event,
            state=log.state,
            promoted=promoted + more_promoted,
            rejected=rejected + more_rejected
        )

    def retry(self, log: MemberLog) -> Tuple[List[TelEvent], List[Rejection]]:
        """
        Promote escrowed events already waiting on the current head.

        They are left there when a write fails during promotion.
        """
        if log.halted:
            return [], []
        _, head, _ = log.snapshot()
        if head is None:
            return [], []
        return self._promote(log, head)

    def _escrow_event(self, log: MemberLog, event: TelEvent) -> SubmitResult:
        added, evicted = self._escrow.add(event, self._clock())
        if added:
            logger.debug(
                "Escrowed %s for %s waiting on %s",
                event.short(), event.member_id, event.prior_digest[:23]
            )
        rejected = [
            self._reject(entry.event, EscrowExpired(
                "Evicted from escrow: per-member limit reached",
                entry.event.member_id, entry.event.self_digest
            ))
            for entry in evicted
        ]
        return SubmitResult(
            outcome=Outcome.ESCROWED,
            event=event,
            state=log.state,
            rejected=rejected
        )

    def _commit(self, log: MemberLog, event: TelEvent) -> None:
        self.check_transition(log, event)
        self._storage.append(event.member_id, event.sequence_number, event.to_record())
        log.append(event)
        logger.debug("Appended %s for %s", event.short(), event.member_id)

    def _promote(self, log: MemberLog, digest: str) -> Tuple[List[TelEvent], List[Rejection]]:
        promoted: List[TelEvent] = []
        rejected: List[Rejection] = []
        worklist: Deque[str] = deque([digest])

        while worklist:
            released: List[EscrowEntry] = self._escrow.pop_dependents(
                log.member_id, worklist.popleft()
            )
            for position, entry in enumerate(released):
                event = entry.event
                try:
                    if not self.links_to_head(log, event):
                        # Cannot happen: its prior_digest was just appended.
                        self._escrow.add(event, entry.received_at)
                        continue
                    self._commit(log, event)
                except (StaleOrForkedEvent, IllegalTransition) as e:
                    rejected.append(self._reject(event, e))
                    continue
                except StorageError:
                    logger.error(
                        "Could not persist %s during promotion, keeping it and "
                        "%d later dependents in escrow",
                        event.short(), len(released) - position - 1, exc_info=True
                    )
                    # Arrival order is kept so the same entry wins on retry.
                    for pending in released[position:]:
                        self._escrow.add(pending.event, pending.received_at)
                    return promoted, rejected
                promoted.append(event)
                worklist.append(event.self_digest)
                logger.debug("Promoted %s from escrow", event.short())

        return promoted, rejected

    def _reject(self, event: TelEvent, error: TelError) -> Rejection:
        rejection = Rejection(event=event, error=error, at=self._clock())
        logger.warning(
            "Discarded %s for %s: %s: %s",
            event.short(), event.member_id, type(error).__name__, error.message
        )
        if self._reporter is not None:
            self._reporter(rejection)
        return rejection
