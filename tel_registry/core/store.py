"""
TEL Log Store and Escrow

``MemberLog`` is the in-memory domain model of one member's log: an
append-only list of validated events, a digest index and the incrementally
maintained state. All reads take the log's lock and return snapshots, so a
reader never sees a log of length N with a gap below N.

``EscrowBuffer`` holds events that passed signature checks but whose
``prior_digest`` is not in the log yet, keyed by ``(member_id,
prior_digest)`` and kept in arrival order.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from tel_registry.core.errors import CorruptLogInvariant
from tel_registry.core.events import TelEvent
from tel_registry.core.state import TelState, apply_event


class MemberLog:
    """
    Ordered, append-only sequence of validated events for one member.

    Attributes:
        member_id: The member this log belongs to
        state: Incrementally maintained state
        halted: Set once the log failed a replay; no further appends
    """

    def __init__(self, member_id: str, allow_reissuance: bool = True):
        self.member_id = member_id
        self._allow_reissuance = allow_reissuance
        self._lock = threading.RLock()
        self._events: List[TelEvent] = []
        self._index: Dict[str, int] = {}
        self._state = TelState.NULL
        self._halt_reason: Optional[CorruptLogInvariant] = None

    def append(self, event: TelEvent) -> TelState:
        """
        Append a validated event and advance the state.

        Only the validator calls this, after every check has passed.

        Returns:
            TelState: The state after the event
        """
        with self._lock:
            if self._halt_reason is not None:
                raise CorruptLogInvariant(
                    f"Log is halted: {self._halt_reason.message}", self.member_id
                )
            new_state = apply_event(
                self._state, event, len(self._events), self._allow_reissuance
            )
            self._index[event.self_digest] = len(self._events)
            self._events.append(event)
            self._state = new_state
            return new_state

    def head(self) -> Optional[str]:
        """self_digest of the last event, or None for an empty log."""
        with self._lock:
            return self._events[-1].self_digest if self._events else None

    def get(self, sequence_number: int) -> Optional[TelEvent]:
        with self._lock:
            if 0 <= sequence_number < len(self._events):
                return self._events[sequence_number]
            return None

    def length(self) -> int:
        with self._lock:
            return len(self._events)

    def __len__(self) -> int:
        return self.length()

    def events(self) -> Tuple[TelEvent, ...]:
        """Consistent snapshot of the whole log."""
        with self._lock:
            return tuple(self._events)

    def snapshot(self) -> Tuple[int, Optional[str], TelState]:
        """``(length, head, state)`` read atomically."""
        with self._lock:
            head = self._events[-1].self_digest if self._events else None
            return len(self._events), head, self._state

    def index_of(self, event_digest: str) -> Optional[int]:
        with self._lock:
            return self._index.get(event_digest)

    def __contains__(self, event_digest: str) -> bool:
        return self.index_of(event_digest) is not None

    @property
    def state(self) -> TelState:
        with self._lock:
            return self._state

    @property
    def halted(self) -> bool:
        with self._lock:
            return self._halt_reason is not None

    @property
    def halt_reason(self) -> Optional[CorruptLogInvariant]:
        with self._lock:
            return self._halt_reason

    def halt(self, reason: CorruptLogInvariant) -> None:
        with self._lock:
            self._halt_reason = reason

    def resume(self) -> None:
        with self._lock:
            self._halt_reason = None

    def reset(self, events: List[TelEvent], state: TelState) -> None:
        """Replace the content with an already replayed log (recovery/load only)."""
        with self._lock:
            self._events = list(events)
            self._index = {e.self_digest: i for i, e in enumerate(self._events)}
            self._state = state


@dataclass(frozen=True)
class EscrowEntry:
    """An event waiting for its predecessor."""
    event: TelEvent
    received_at: float

    @property
    def key(self) -> Tuple[str, str]:
        return (self.event.member_id, self.event.prior_digest)


class EscrowBuffer:
    """
    Out-of-order events keyed by ``(member_id, prior_digest)``.

    Bounded per member by ``max_per_member`` (oldest entries are evicted
    first) and by age via ``expire``.
    """

    def __init__(self, max_per_member: Optional[int] = None):
        self._lock = threading.Lock()
        self._max_per_member = max_per_member
        # key -> digest -> entry, both levels in arrival order
        self._entries: "OrderedDict[Tuple[str, str], OrderedDict[str, EscrowEntry]]" = OrderedDict()

    def add(self, event: TelEvent, received_at: float) -> Tuple[bool, List[EscrowEntry]]:
        """
        Hold an event.

        Returns:
            Tuple[bool, List[EscrowEntry]]: Whether the event was newly added
                (False if it was already held) and any entries evicted to
                respect the per-member bound
        """
        key = (event.member_id, event.prior_digest)
        with self._lock:
            bucket = self._entries.setdefault(key, OrderedDict())
            if event.self_digest in bucket:
                return False, []
            bucket[event.self_digest] = EscrowEntry(event, received_at)
            evicted = self._enforce_bound(event.member_id)
            return True, evicted

    def _enforce_bound(self, member_id: str) -> List[EscrowEntry]:
        if self._max_per_member is None:
            return []
        held = sorted(
            (entry for key, bucket in self._entries.items() if key[0] == member_id
             for entry in bucket.values()),
            key=lambda entry: entry.received_at
        )
        evicted = held[:max(0, len(held) - self._max_per_member)]
        for entry in evicted:
            self._discard(entry)
        return evicted

    def _discard(self, entry: EscrowEntry) -> None:
        bucket = self._entries.get(entry.key)
        if bucket is None:
            return
        bucket.pop(entry.event.self_digest, None)
        if not bucket:
            del self._entries[entry.key]

    def pop_dependents(self, member_id: str, prior_digest: str) -> List[EscrowEntry]:
        """Remove and return every entry waiting on ``prior_digest``."""
        with self._lock:
            bucket = self._entries.pop((member_id, prior_digest), None)
            return list(bucket.values()) if bucket else []

    def expire(self, now: float, max_age: float) -> List[EscrowEntry]:
        """Remove and return entries older than ``max_age`` seconds."""
        with self._lock:
            stale = [
                entry for bucket in self._entries.values()
                for entry in bucket.values()
                if now - entry.received_at > max_age
            ]
            for entry in stale:
                self._discard(entry)
            return stale

    def entries(self, member_id: Optional[str] = None) -> List[EscrowEntry]:
        with self._lock:
            return [
                entry for key, bucket in self._entries.items()
                if member_id is None or key[0] == member_id
                for entry in bucket.values()
            ]

    def __contains__(self, event_digest: str) -> bool:
        with self._lock:
            return any(event_digest in bucket for bucket in self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._entries.values())
