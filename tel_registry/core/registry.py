"""
TEL Registry Manager

Owns every member log, the escrow buffer, the key table and the audit trail
of rejected events. All three sources of incoming events (network
submissions, local issuance and escrow promotion) pass through the same
per-member lock, so two events can never race for the same prior_digest.
Different members never contend.

Usage:
    >>> from tel_registry import RegistryManager, Ed25519Signer
    >>>
    >>> signer = Ed25519Signer()
    >>> with RegistryManager() as registry:
    ...     log = registry.inception("member-1", signer)
    ...     result = registry.issue("member-1", signer, payload=b"credential-digest")
    ...     registry.get_state("member-1")
    <TelState.ISSUED: 'ISSUED'>
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from tel_registry.config import RegistryConfig
from tel_registry.core.errors import (
    CorruptLogInvariant,
    DuplicateEvent,
    EscrowExpired,
    IllegalTransition,
    MalformedEvent,
    StaleOrForkedEvent,
    TelError,
    UnknownMember,
)
from tel_registry.core.events import (
    EventType,
    TelEvent,
    make_inception_event,
    make_next_event,
)
from tel_registry.core.keys import KeyRegistry
from tel_registry.core.management import (
    MANAGEMENT_STREAM,
    ManagementEvent,
    ManagementLog,
    ManagementState,
    make_backer_rotation,
    make_registry_inception,
    replay_management,
)
from tel_registry.core.persistence import FileBackend, MemoryBackend, StorageBackend
from tel_registry.core.signer import Ed25519Signer
from tel_registry.core.state import TelState, replay_history
from tel_registry.core.store import EscrowBuffer, MemberLog
from tel_registry.core.validator import Rejection, SubmitResult, Validator
from tel_registry.core.verifier import LogExport, write_log_file


logger = logging.getLogger(__name__)


class RegistryManager:
    """
    Maps member identifiers to their logs and coordinates every write.

    Thread Safety:
        Writes for one member are serialized by that member's lock; reads
        take only the log's own lock and see a consistent prefix.

    Attributes:
        config: Active RegistryConfig
        keys: Public key history per member
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        storage: Optional[StorageBackend] = None,
        keys: Optional[KeyRegistry] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.config = config or RegistryConfig()
        if storage is None:
            if self.config.storage_path:
                storage = FileBackend(self.config.storage_path)
            else:
                storage = MemoryBackend()
        self.keys = keys or KeyRegistry()
        self._storage = storage
        self._clock = clock

        self._lock = threading.Lock()
        self._logs: Dict[str, MemberLog] = {}
        self._member_locks: Dict[str, threading.RLock] = {}
        self._rejections: List[Rejection] = []
        self._escrow = EscrowBuffer(self.config.escrow_max_per_member)
        self._management = ManagementLog()
        self._validator = Validator(
            keys=self.keys,
            storage=self._storage,
            escrow=self._escrow,
            allow_reissuance=self.config.allow_reissuance,
            clock=clock,
            reporter=self._record
        )
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> 'RegistryManager':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Tear the registry down and close the storage backend."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._storage.close()
        logger.debug("Registry closed")

    def load(self) -> Dict[str, TelState]:
        """
        Rebuild every member log from storage by full replay.

        The management log is replayed first; members whose stored records
        fail replay are loaded halted.

        Returns:
            Dict[str, TelState]: State per loaded member

        Raises:
            CorruptLogInvariant: The management log fails replay
        """
        stored = self._storage.members()
        if MANAGEMENT_STREAM in stored:
            self._load_management()
        states = {}
        for member_id in stored:
            if member_id == MANAGEMENT_STREAM:
                continue
            with self._exclusive(member_id):
                log = MemberLog(member_id, self.config.allow_reissuance)
                try:
                    events, history = self._replay_stored(member_id)
                except CorruptLogInvariant as e:
                    logger.error("Member %s failed replay on load: %s", member_id, e.message)
                    log.halt(e)
                else:
                    log.reset(events, history[-1] if history else TelState.NULL)
                with self._lock:
                    self._logs[member_id] = log
                states[member_id] = log.state
        logger.info("Loaded %d member logs", len(states))
        return states

    def _load_management(self) -> None:
        with self._exclusive(MANAGEMENT_STREAM):
            events = []
            try:
                for index, record in enumerate(self._storage.scan(MANAGEMENT_STREAM)):
                    try:
                        events.append(ManagementEvent.from_record(record))
                    except MalformedEvent as e:
                        raise CorruptLogInvariant(
                            f"Management record {index} cannot be decoded: {e.message}"
                        ) from e
                state = replay_management(events)
            except CorruptLogInvariant as e:
                logger.error("Management log failed replay on load: %s", e.message)
                raise
            self._management.reset(events, state)
            self._validator.registry_id = self._management.registry_id
        logger.info("Loaded registry %s", self.registry_id[:23])

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self, member_id: str) -> Iterator[None]:
        with self._lock:
            if self._closed:
                raise TelError("Registry is closed", member_id=member_id)
            member_lock = self._member_locks.setdefault(member_id, threading.RLock())
        with member_lock:
            yield

    def _log(self, member_id: str) -> Optional[MemberLog]:
        with self._lock:
            return self._logs.get(member_id)

    def _require_log(self, member_id: str) -> MemberLog:
        log = self._log(member_id)
        if log is None:
            raise UnknownMember("Member has no log", member_id=member_id)
        return log

    # ------------------------------------------------------------------
    # Registry management
    # ------------------------------------------------------------------

    @property
    def registry_id(self) -> str:
        """Identifier of this registry; empty until ``create_registry``."""
        return self._management.registry_id

    @property
    def management(self) -> Optional[ManagementState]:
        return self._management.state

    def get_management_log(self) -> Tuple[ManagementEvent, ...]:
        return self._management.events()

    def create_registry(
        self,
        issuer: Ed25519Signer,
        backers: Sequence[str] = (),
        no_backers: bool = False,
        backer_threshold: int = 0
    ) -> ManagementState:
        """
        Incept the registry and bind its issuer.

        Every member event accepted afterwards must name the new registry_id.

        Raises:
            StaleOrForkedEvent: The registry is already incepted
            IllegalTransition: Member logs already exist outside the registry
        """
        event = make_registry_inception(
            issuer, backers, no_backers, backer_threshold, self.config.digest_algorithm
        )
        return self.submit_management_event(event)

    def rotate_backers(
        self,
        issuer: Ed25519Signer,
        add: Sequence[str] = (),
        remove: Sequence[str] = (),
        backer_threshold: Optional[int] = None
    ) -> ManagementState:
        """Add and remove backers; signed by the registry issuer."""
        with self._exclusive(MANAGEMENT_STREAM):
            state = self._management.state
            if state is None:
                raise IllegalTransition("Registry has not been incepted")
            event = make_backer_rotation(
                state, issuer, add, remove, backer_threshold, self.config.digest_algorithm
            )
            return self.submit_management_event(event)

    def submit_management_event(self, event: ManagementEvent) -> ManagementState:
        """
        Validate, persist and apply one management event.

        Management events are not escrowed: one that does not build on the
        management head is rejected.

        Raises:
            TelError: The rejection reason; the management log is unchanged
        """
        with self._exclusive(MANAGEMENT_STREAM):
            try:
                if self._management.length() == 0 and self.members():
                    raise IllegalTransition(
                        "Member logs already exist outside a registry",
                        event_digest=event.self_digest
                    )
                state = self._management.check(event)
                self._storage.append(
                    MANAGEMENT_STREAM, event.sequence_number, event.to_record()
                )
            except TelError as e:
                logger.info(
                    "Rejected management event %s: %s: %s",
                    event.short(), type(e).__name__, e.message
                )
                raise
            self._management.append(event, state)
            self._validator.registry_id = state.registry_id
        logger.info(
            "Registry %s at management sequence %d with %s backers",
            state.registry_id[:23], state.sequence_number,
            "no" if state.backers is None else len(state.backers)
        )
        return state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register_key(self, member_id: str, public_key: bytes) -> None:
        """Bind the authoritative signing key of a member (key management hook)."""
        self.keys.bind(member_id, public_key)

    def inception(
        self,
        member_id: str,
        signer: Ed25519Signer,
        payload: bytes = b""
    ) -> MemberLog:
        """
        Create a member log, seeded with a signed inception event.

        The signer's public key becomes the member's authoritative key once
        the inception is appended; a failed inception leaves the key table
        as it was.

        Raises:
            StaleOrForkedEvent: If the member already has a log
        """
        with self._exclusive(member_id):
            existing = self._log(member_id)
            if existing is not None and existing.length() > 0:
                raise StaleOrForkedEvent("Member already incepted", member_id=member_id)
            bound = self.keys.bind(member_id, signer.public_key)
            event = make_inception_event(
                member_id, signer, payload, self.config.digest_algorithm,
                registry_id=self.registry_id
            )
            try:
                self.submit_event(member_id, event)
            except TelError:
                if bound:
                    self.keys.unbind(member_id, signer.public_key)
                raise
            logger.info("Incepted member %s", member_id)
            return self._require_log(member_id)

    def issue(
        self,
        member_id: str,
        signer: Ed25519Signer,
        payload: bytes = b""
    ) -> SubmitResult:
        """Build, sign and submit an issuance on top of the current head."""
        return self._local_event(EventType.ISSUANCE, member_id, signer, payload)

    def revoke(
        self,
        member_id: str,
        signer: Ed25519Signer,
        payload: bytes = b""
    ) -> SubmitResult:
        """Build, sign and submit a revocation on top of the current head."""
        return self._local_event(EventType.REVOCATION, member_id, signer, payload)

    def _local_event(
        self,
        event_type: EventType,
        member_id: str,
        signer: Ed25519Signer,
        payload: bytes
    ) -> SubmitResult:
        with self._exclusive(member_id):
            log = self._require_log(member_id)
            promoted, rejected = self.retry_escrow(member_id)
            length, head, _ = log.snapshot()
            event = make_next_event(
                event_type, (length, head), member_id, signer, payload,
                self.config.digest_algorithm, registry_id=self.registry_id
            )
            result = self.submit_event(member_id, event)
            result.promoted[:0] = promoted
            result.rejected[:0] = rejected
            return result

    def retry_escrow(self, member_id: str) -> Tuple[List[TelEvent], List[Rejection]]:
        """
        Retry escrowed events already linked to the member's head.

        Events stay in that position only after a storage failure during
        promotion. Submissions retry them too.

        Returns:
            Tuple of the promoted events and the rejections produced
        """
        with self._exclusive(member_id):
            log = self._log(member_id)
            if log is None:
                return [], []
            return self._validator.retry(log)

    def submit_event(self, member_id: str, event: TelEvent) -> SubmitResult:
        """
        Validate an event and append or escrow it.

        Returns:
            SubmitResult: APPENDED (with any promoted escrow entries) or
                ESCROWED

        Raises:
            TelError: The rejection reason; the event is discarded and the
                rejection recorded in ``rejections``
        """
        if event.member_id != member_id:
            raise MalformedEvent(
                f"Event belongs to member {event.member_id!r}",
                member_id, event.self_digest
            )
        if member_id == MANAGEMENT_STREAM:
            raise MalformedEvent(
                "member_id is reserved for the management log", member_id, event.self_digest
            )

        with self._exclusive(member_id):
            log = self._log(member_id)
            is_new = log is None
            try:
                if is_new:
                    if event.event_type is not EventType.INCEPTION:
                        raise UnknownMember(
                            f"{event.event_type.value} for a member without a log",
                            member_id, event.self_digest
                        )
                    log = MemberLog(member_id, self.config.allow_reissuance)
                result = self._validator.submit(log, event)
            except TelError as e:
                self._on_rejected(event, e)
                raise

            if is_new and result.appended:
                with self._lock:
                    self._logs[member_id] = log
            return result

    def _on_rejected(self, event: TelEvent, error: TelError) -> None:
        self._record(Rejection(event=event, error=error, at=self._clock()))
        if isinstance(error, StaleOrForkedEvent) and not isinstance(error, DuplicateEvent):
            logger.warning(
                "Possible equivocation for %s: %s rejected: %s",
                event.member_id, event.short(), error.message
            )
        elif isinstance(error, CorruptLogInvariant):
            logger.error("Refused %s for halted member %s", event.short(), event.member_id)
        else:
            logger.info(
                "Rejected %s for %s: %s: %s",
                event.short(), event.member_id, type(error).__name__, error.message
            )

    def _record(self, rejection: Rejection) -> None:
        with self._lock:
            self._rejections.append(rejection)

    def expire_escrow(self, now: Optional[float] = None) -> List[Rejection]:
        """
        Drop escrowed events older than ``config.escrow_max_age``.

        Returns:
            List[Rejection]: One EscrowExpired record per dropped event
        """
        if self.config.escrow_max_age is None:
            return []
        now = self._clock() if now is None else now
        dropped = []
        for entry in self._escrow.expire(now, self.config.escrow_max_age):
            event = entry.event
            rejection = Rejection(
                event=event,
                error=EscrowExpired(
                    f"Predecessor {event.prior_digest[:23]} did not arrive within "
                    f"{self.config.escrow_max_age}s",
                    event.member_id, event.self_digest
                ),
                at=now
            )
            logger.warning("Dropped stale escrow entry %s for %s", event.short(), event.member_id)
            self._record(rejection)
            dropped.append(rejection)
        return dropped

    # ------------------------------------------------------------------
    # Verification and recovery
    # ------------------------------------------------------------------

    def _replay_stored(self, member_id: str) -> Tuple[List[TelEvent], List[TelState]]:
        events = []
        for index, record in enumerate(self._storage.scan(member_id)):
            try:
                events.append(TelEvent.from_record(record))
            except MalformedEvent as e:
                raise CorruptLogInvariant(
                    f"Record {index} cannot be decoded: {e.message}", member_id
                ) from e
        public_keys = self.keys.history(member_id) or None
        history = replay_history(
            events, self.config.allow_reissuance, public_keys, registry_id=self.registry_id
        )
        return events, history

    def verify_member(self, member_id: str) -> TelState:
        """
        Re-derive a member's state from its stored records.

        The result must agree with the incrementally maintained log; any
        disagreement or replay failure halts the member.

        Raises:
            CorruptLogInvariant: The stored log is inconsistent
            UnknownMember: The member has no log
        """
        with self._exclusive(member_id):
            log = self._require_log(member_id)
            try:
                events, history = self._replay_stored(member_id)
                state = history[-1] if history else TelState.NULL
                in_memory = log.events()
                if [e.self_digest for e in events] != [e.self_digest for e in in_memory]:
                    raise CorruptLogInvariant(
                        "Stored records diverge from the in-memory log", member_id
                    )
                if state is not log.state:
                    raise CorruptLogInvariant(
                        f"Replayed state {state.value} differs from cached {log.state.value}",
                        member_id
                    )
            except CorruptLogInvariant as e:
                log.halt(e)
                logger.error("Halting member %s: %s", member_id, e.message)
                raise
            return state

    def recover_member(self, member_id: str) -> TelState:
        """
        Manual recovery: rebuild a halted member from storage and resume it.

        Raises:
            CorruptLogInvariant: The stored log still fails replay
        """
        with self._exclusive(member_id):
            log = self._require_log(member_id)
            try:
                events, history = self._replay_stored(member_id)
            except CorruptLogInvariant as e:
                log.halt(e)
                raise
            state = history[-1] if history else TelState.NULL
            log.reset(events, state)
            log.resume()
            logger.info("Recovered member %s at length %d", member_id, len(events))
            return state

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, member_id: str) -> TelState:
        """Current state; NULL for a member without a log."""
        log = self._log(member_id)
        return log.state if log is not None else TelState.NULL

    def get_log(self, member_id: str) -> Tuple[TelEvent, ...]:
        """Ordered events of a member; empty for a member without a log."""
        log = self._log(member_id)
        return log.events() if log is not None else ()

    def get_history(self, member_id: str) -> List[TelState]:
        """State after each event, by full replay of the in-memory log."""
        return replay_history(self.get_log(member_id), self.config.allow_reissuance)

    def is_halted(self, member_id: str) -> bool:
        log = self._log(member_id)
        return log is not None and log.halted

    def members(self) -> List[str]:
        with self._lock:
            return list(self._logs)

    def escrowed(self, member_id: Optional[str] = None) -> List[TelEvent]:
        return [entry.event for entry in self._escrow.entries(member_id)]

    @property
    def rejections(self) -> List[Rejection]:
        with self._lock:
            return list(self._rejections)

    def get_statistics(self) -> dict:
        with self._lock:
            logs = dict(self._logs)
            rejections = list(self._rejections)
        states: Dict[str, int] = {s.value: 0 for s in TelState}
        for log in logs.values():
            states[log.state.value] += 1
        by_error: Dict[str, int] = {}
        for rejection in rejections:
            name = type(rejection.error).__name__
            by_error[name] = by_error.get(name, 0) + 1
        return {
            "registry_id": self.registry_id,
            "members": len(logs),
            "events": sum(log.length() for log in logs.values()),
            "states": states,
            "halted": sorted(m for m, log in logs.items() if log.halted),
            "escrowed": len(self._escrow),
            "rejections": by_error,
        }

    def export_log(self, member_id: str, filepath: str) -> LogExport:
        """
        Export one member's log to a JSON file for independent verification.

        Args:
            member_id: Member to export
            filepath: Path to the output file

        Returns:
            LogExport: What was written
        """
        log = self._require_log(member_id)
        export = LogExport(
            member_id=member_id,
            public_keys=self.keys.history(member_id),
            events=list(log.events()),
            state=log.state.value,
            registry_id=self.registry_id,
        )
        write_log_file(export, filepath)
        return export
