"""
Tests for the TEL Log Store and Escrow

Tests cover:
- MemberLog append, reads and halting
- EscrowBuffer keying, bounds and expiry
"""

import pytest

from tel_registry.core.errors import CorruptLogInvariant, IllegalTransition
from tel_registry.core.events import EventType, make_inception_event, make_next_event
from tel_registry.core.signer import Ed25519Signer
from tel_registry.core.state import TelState
from tel_registry.core.store import EscrowBuffer, MemberLog


MEMBER = "member-1"


@pytest.fixture
def signer():
    return Ed25519Signer()


def chain(signer, length, member_id=MEMBER):
    """Inception plus alternating issuance/revocation events."""
    events = [make_inception_event(member_id, signer)]
    while len(events) < length:
        event_type = EventType.ISSUANCE if len(events) % 2 else EventType.REVOCATION
        events.append(make_next_event(
            event_type, (len(events), events[-1].self_digest), member_id, signer
        ))
    return events


class TestMemberLog:
    """Test the per-member log."""

    def test_empty(self):
        log = MemberLog(MEMBER)
        assert log.head() is None
        assert log.length() == 0
        assert log.get(0) is None
        assert log.snapshot() == (0, None, TelState.NULL)

    def test_append_advances_state(self, signer):
        log = MemberLog(MEMBER)
        events = chain(signer, 3)
        for event in events:
            log.append(event)

        assert len(log) == 3
        assert log.head() == events[-1].self_digest
        assert log.state is TelState.REVOKED
        assert log.get(1) == events[1]
        assert log.index_of(events[2].self_digest) == 2
        assert events[0].self_digest in log
        assert log.events() == tuple(events)

    def test_illegal_append_leaves_log_unchanged(self, signer):
        log = MemberLog(MEMBER)
        events = chain(signer, 2)
        log.append(events[0])
        with pytest.raises(IllegalTransition):
            log.append(events[0])
        assert log.length() == 1

    def test_events_is_a_snapshot(self, signer):
        log = MemberLog(MEMBER)
        events = chain(signer, 2)
        log.append(events[0])
        snapshot = log.events()
        log.append(events[1])
        assert len(snapshot) == 1

    def test_halted_log_refuses_appends(self, signer):
        log = MemberLog(MEMBER)
        events = chain(signer, 2)
        log.append(events[0])
        log.halt(CorruptLogInvariant("tampered", MEMBER))

        assert log.halted
        with pytest.raises(CorruptLogInvariant):
            log.append(events[1])

        log.resume()
        log.append(events[1])
        assert log.state is TelState.ISSUED

    def test_reset(self, signer):
        log = MemberLog(MEMBER)
        events = chain(signer, 3)
        log.reset(events[:2], TelState.ISSUED)
        assert log.length() == 2
        assert log.head() == events[1].self_digest
        assert log.state is TelState.ISSUED


class TestEscrowBuffer:
    """Test holding of out-of-order events."""

    def test_add_and_pop_dependents(self, signer):
        escrow = EscrowBuffer()
        events = chain(signer, 3)

        added, evicted = escrow.add(events[2], 0.0)
        assert added and evicted == []
        assert events[2].self_digest in escrow
        assert len(escrow) == 1

        assert escrow.pop_dependents(MEMBER, events[0].self_digest) == []
        released = escrow.pop_dependents(MEMBER, events[1].self_digest)
        assert [entry.event for entry in released] == [events[2]]
        assert len(escrow) == 0

    def test_same_event_held_once(self, signer):
        escrow = EscrowBuffer()
        event = chain(signer, 2)[1]
        escrow.add(event, 0.0)
        added, _ = escrow.add(event, 1.0)
        assert not added
        assert len(escrow) == 1

    def test_competing_dependents_keep_arrival_order(self, signer):
        escrow = EscrowBuffer()
        inception = make_inception_event(MEMBER, signer)
        first = make_next_event(EventType.ISSUANCE, (1, inception.self_digest), MEMBER, signer, b"a")
        second = make_next_event(EventType.ISSUANCE, (1, inception.self_digest), MEMBER, signer, b"b")
        escrow.add(first, 0.0)
        escrow.add(second, 0.0)

        released = escrow.pop_dependents(MEMBER, inception.self_digest)
        assert [entry.event for entry in released] == [first, second]

    def test_entries_by_member(self, signer):
        escrow = EscrowBuffer()
        escrow.add(chain(signer, 2)[1], 0.0)
        escrow.add(chain(signer, 2, member_id="member-2")[1], 0.0)
        assert len(escrow.entries()) == 2
        assert len(escrow.entries("member-2")) == 1

    def test_per_member_bound_evicts_oldest(self, signer):
        escrow = EscrowBuffer(max_per_member=2)
        events = chain(signer, 5)

        escrow.add(events[2], 1.0)
        escrow.add(events[3], 2.0)
        added, evicted = escrow.add(events[4], 3.0)

        assert added
        assert [entry.event for entry in evicted] == [events[2]]
        assert events[2].self_digest not in escrow
        assert len(escrow) == 2

    def test_bound_is_per_member(self, signer):
        escrow = EscrowBuffer(max_per_member=1)
        escrow.add(chain(signer, 2)[1], 0.0)
        _, evicted = escrow.add(chain(signer, 2, member_id="member-2")[1], 0.0)
        assert evicted == []
        assert len(escrow) == 2

    def test_expire(self, signer):
        escrow = EscrowBuffer()
        events = chain(signer, 4)
        escrow.add(events[2], 0.0)
        escrow.add(events[3], 50.0)

        stale = escrow.expire(now=100.0, max_age=60.0)
        assert [entry.event for entry in stale] == [events[2]]
        assert events[3].self_digest in escrow
        assert escrow.expire(now=100.0, max_age=60.0) == []
