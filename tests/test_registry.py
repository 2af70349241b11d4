"""
Tests for the TEL Registry Manager

Tests cover:
- End-to-end issuance, revocation and re-issuance
- Out-of-order delivery through escrow
- Rejections: forks, duplicates, unknown members, bad signatures
- Escrow retention by age and count
- Tamper detection, halting and manual recovery
- Loading from persistent storage
- Per-member serialization under concurrency
- Storage failures: rollback of key binding and of promotion
"""

import os
import threading
from dataclasses import replace

import pytest

from tel_registry.config import RegistryConfig
from tel_registry.core.errors import (
    CorruptLogInvariant,
    CryptoError,
    DuplicateEvent,
    EscrowExpired,
    InvalidSignature,
    MalformedEvent,
    StaleOrForkedEvent,
    StorageError,
    TelError,
    UnknownMember,
)
from tel_registry.core.events import EventType, make_inception_event, make_next_event
from tel_registry.core.persistence import MemoryBackend
from tel_registry.core.registry import RegistryManager
from tel_registry.core.signer import Ed25519Signer
from tel_registry.core.state import TelState, derive_state
from tel_registry.core.validator import Outcome
from tel_registry.core.verifier import ChainVerifier, load_log_file


M = "member-M"


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FlakyBackend(MemoryBackend):
    """Refuses the first write of sequence ``fail_at``, then recovers."""

    def __init__(self, fail_at):
        super().__init__()
        self.fail_at = fail_at
        self.failed = False

    def append(self, member_id, sequence_number, data):
        if sequence_number == self.fail_at and not self.failed:
            self.failed = True
            raise StorageError("I/O error", member_id=member_id)
        super().append(member_id, sequence_number, data)


@pytest.fixture
def signer():
    return Ed25519Signer()


@pytest.fixture
def registry():
    with RegistryManager() as manager:
        yield manager


def next_for(registry, member_id, event_type, signer, payload=b""):
    """Build, without submitting, the event that would extend the head."""
    log = registry.get_log(member_id)
    return make_next_event(
        event_type, (len(log), log[-1].self_digest), member_id, signer, payload
    )


class TestEndToEnd:
    """Inception, issuance, revocation and re-issuance for one member."""

    def test_lifecycle(self, registry, signer):
        log = registry.inception(M, signer)
        assert log.length() == 1
        assert registry.get_state(M) is TelState.NULL

        result = registry.issue(M, signer, payload=b"credential")
        assert result.outcome is Outcome.APPENDED
        assert result.event.sequence_number == 1
        assert registry.get_state(M) is TelState.ISSUED
        assert len(registry.get_log(M)) == 2

        registry.revoke(M, signer)
        assert registry.get_state(M) is TelState.REVOKED
        assert len(registry.get_log(M)) == 3

        registry.issue(M, signer, payload=b"credential-v2")
        assert registry.get_state(M) is TelState.ISSUED
        assert len(registry.get_log(M)) == 4

        assert registry.get_history(M) == [
            TelState.NULL, TelState.ISSUED, TelState.REVOKED, TelState.ISSUED
        ]

    def test_submitted_events(self, registry, signer):
        registry.inception(M, signer)
        for event_type in (EventType.ISSUANCE, EventType.REVOCATION, EventType.ISSUANCE):
            before = len(registry.get_log(M))
            result = registry.submit_event(M, next_for(registry, M, event_type, signer))
            assert result.appended
            assert len(registry.get_log(M)) == before + 1
        assert registry.get_state(M) is TelState.ISSUED

    def test_network_inception_with_registered_key(self, registry, signer):
        registry.register_key(M, signer.public_key)
        result = registry.submit_event(M, make_inception_event(M, signer))
        assert result.appended
        assert registry.members() == [M]

    def test_unknown_member_state_is_null(self, registry):
        assert registry.get_state("nobody") is TelState.NULL
        assert registry.get_log("nobody") == ()

    def test_incremental_state_matches_replay(self, registry, signer):
        registry.inception(M, signer)
        for _ in range(5):
            registry.issue(M, signer)
            assert registry.get_state(M) is derive_state(registry.get_log(M))
            registry.revoke(M, signer)
            assert registry.get_state(M) is derive_state(registry.get_log(M))

    def test_members_are_independent(self, registry, signer):
        registry.inception("a", signer)
        registry.inception("b", signer)
        registry.issue("a", signer)
        assert registry.get_state("a") is TelState.ISSUED
        assert registry.get_state("b") is TelState.NULL


class TestOutOfOrder:
    """Events whose predecessor has not arrived yet."""

    def test_revocation_before_issuance(self, registry, signer):
        registry.inception(M, signer)
        issuance = next_for(registry, M, EventType.ISSUANCE, signer)
        revocation = make_next_event(
            EventType.REVOCATION, (2, issuance.self_digest), M, signer
        )

        result = registry.submit_event(M, revocation)
        assert result.outcome is Outcome.ESCROWED
        assert registry.get_state(M) is TelState.NULL
        assert registry.escrowed(M) == [revocation]

        result = registry.submit_event(M, issuance)
        assert result.outcome is Outcome.APPENDED
        assert result.promoted == [revocation]
        assert registry.get_state(M) is TelState.REVOKED
        assert registry.escrowed() == []

    def test_escrowed_event_resubmitted(self, registry, signer):
        registry.inception(M, signer)
        issuance = next_for(registry, M, EventType.ISSUANCE, signer)
        revocation = make_next_event(
            EventType.REVOCATION, (2, issuance.self_digest), M, signer
        )
        registry.submit_event(M, revocation)
        assert registry.submit_event(M, revocation).escrowed
        assert len(registry.escrowed(M)) == 1

    def test_local_issue_releases_escrow(self, registry, signer):
        """Local issuance and network events share one serialization point."""
        registry.inception(M, signer)
        issuance = next_for(registry, M, EventType.ISSUANCE, signer)
        revocation = make_next_event(
            EventType.REVOCATION, (2, issuance.self_digest), M, signer
        )
        registry.submit_event(M, revocation)

        result = registry.issue(M, signer)
        assert result.event == issuance
        assert result.promoted == [revocation]


    def _failed_promotion(self, signer):
        registry = RegistryManager(storage=FlakyBackend(fail_at=2))
        registry.inception(M, signer)
        issuance = next_for(registry, M, EventType.ISSUANCE, signer)
        head = (2, issuance.self_digest)
        first = make_next_event(EventType.REVOCATION, head, M, signer, b"first")
        second = make_next_event(EventType.REVOCATION, head, M, signer, b"second")
        registry.submit_event(M, first)
        registry.submit_event(M, second)

        result = registry.submit_event(M, issuance)
        assert result.promoted == []
        assert registry.escrowed(M) == [first, second]
        return registry, first, second

    def test_storage_failure_during_promotion(self, signer):
        """The earlier escrowed sibling still wins once storage recovers."""
        registry, first, second = self._failed_promotion(signer)

        promoted, rejected = registry.retry_escrow(M)
        assert promoted == [first]
        assert [r.event for r in rejected] == [second]
        assert registry.get_log(M)[2] == first
        assert registry.get_state(M) is TelState.REVOKED
        assert registry.escrowed(M) == []

    def test_local_event_retries_escrow_first(self, signer):
        registry, first, _ = self._failed_promotion(signer)

        result = registry.issue(M, signer, b"again")
        assert result.promoted == [first]
        assert result.event.sequence_number == 3
        assert registry.get_state(M) is TelState.ISSUED

    def test_retry_escrow_for_unknown_member(self, registry):
        assert registry.retry_escrow("nobody") == ([], [])


class TestRejections:
    """Every rejection is raised to the caller and recorded."""

    def test_fork(self, registry, signer):
        registry.inception(M, signer)
        first = next_for(registry, M, EventType.ISSUANCE, signer, b"first")
        second = next_for(registry, M, EventType.ISSUANCE, signer, b"second")

        registry.submit_event(M, first)
        with pytest.raises(StaleOrForkedEvent):
            registry.submit_event(M, second)
        assert registry.get_log(M)[1] == first
        assert isinstance(registry.rejections[-1].error, StaleOrForkedEvent)

    def test_duplicate(self, registry, signer):
        registry.inception(M, signer)
        event = next_for(registry, M, EventType.ISSUANCE, signer)
        registry.submit_event(M, event)
        with pytest.raises(DuplicateEvent):
            registry.submit_event(M, event)
        assert len(registry.get_log(M)) == 2

    def test_unknown_member(self, registry, signer):
        registry.register_key(M, signer.public_key)
        inception = make_inception_event(M, signer)
        issuance = make_next_event(EventType.ISSUANCE, (1, inception.self_digest), M, signer)
        with pytest.raises(UnknownMember):
            registry.submit_event(M, issuance)
        with pytest.raises(UnknownMember):
            registry.issue(M, signer)
        assert registry.members() == []

    def test_double_inception(self, registry, signer):
        registry.inception(M, signer)
        with pytest.raises(StaleOrForkedEvent):
            registry.inception(M, signer)

    def test_invalid_signature(self, registry, signer):
        registry.inception(M, signer)
        forged = next_for(registry, M, EventType.ISSUANCE, Ed25519Signer())
        with pytest.raises(InvalidSignature):
            registry.submit_event(M, forged)
        assert registry.get_state(M) is TelState.NULL

    def test_malformed_signature(self, registry, signer):
        registry.inception(M, signer)
        event = next_for(registry, M, EventType.ISSUANCE, signer)
        with pytest.raises(CryptoError):
            registry.submit_event(M, replace(event, signature=b"\x00" * 63))

    def test_member_mismatch(self, registry, signer):
        registry.inception(M, signer)
        event = next_for(registry, M, EventType.ISSUANCE, signer)
        with pytest.raises(MalformedEvent):
            registry.submit_event("someone-else", event)

    def test_statistics_count_rejections(self, registry, signer):
        registry.inception(M, signer)
        event = next_for(registry, M, EventType.ISSUANCE, signer)
        registry.submit_event(M, event)
        for _ in range(2):
            with pytest.raises(DuplicateEvent):
                registry.submit_event(M, event)

        stats = registry.get_statistics()
        assert stats["members"] == 1
        assert stats["events"] == 2
        assert stats["states"]["ISSUED"] == 1
        assert stats["rejections"] == {"DuplicateEvent": 2}

    def test_failed_inception_leaves_no_key(self, signer):
        registry = RegistryManager(storage=FlakyBackend(fail_at=0))
        with pytest.raises(StorageError):
            registry.inception(M, signer)
        assert M not in registry.keys
        assert registry.keys.current(M) is None
        assert registry.members() == []

        registry.inception(M, signer)
        assert registry.keys.history(M) == [signer.public_key]

    def test_failed_inception_keeps_registered_key(self, signer):
        registry = RegistryManager(storage=FlakyBackend(fail_at=0))
        registry.register_key(M, signer.public_key)
        with pytest.raises(StorageError):
            registry.inception(M, signer)
        assert registry.keys.current(M) == signer.public_key

    def test_reserved_member_id(self, registry, signer):
        with pytest.raises(MalformedEvent):
            registry.inception("\x00management", signer)
        assert "\x00management" not in registry.keys

    def test_closed_registry(self, signer):
        registry = RegistryManager()
        registry.close()
        with pytest.raises(TelError):
            registry.inception(M, signer)


class TestEscrowRetention:
    """Escrow is bounded by age and by count."""

    def _escrow_revocation(self, registry, signer):
        registry.inception(M, signer)
        issuance = next_for(registry, M, EventType.ISSUANCE, signer)
        revocation = make_next_event(
            EventType.REVOCATION, (2, issuance.self_digest), M, signer
        )
        registry.submit_event(M, revocation)
        return issuance, revocation

    def test_expire_by_age(self, signer):
        clock = FakeClock()
        registry = RegistryManager(RegistryConfig(escrow_max_age=10), clock=clock)
        _, revocation = self._escrow_revocation(registry, signer)

        clock.now = 5.0
        assert registry.expire_escrow() == []

        clock.now = 11.0
        dropped = registry.expire_escrow()
        assert [r.event for r in dropped] == [revocation]
        assert isinstance(dropped[0].error, EscrowExpired)
        assert registry.escrowed() == []
        assert registry.rejections[-1] is dropped[0]

    def test_expired_event_is_not_promoted(self, signer):
        clock = FakeClock()
        registry = RegistryManager(RegistryConfig(escrow_max_age=10), clock=clock)
        issuance, _ = self._escrow_revocation(registry, signer)
        registry.expire_escrow(now=100.0)

        result = registry.submit_event(M, issuance)
        assert result.promoted == []
        assert registry.get_state(M) is TelState.ISSUED

    def test_count_bound(self, signer):
        registry = RegistryManager(RegistryConfig(escrow_max_per_member=1))
        issuance, revocation = self._escrow_revocation(registry, signer)
        reissuance = make_next_event(
            EventType.ISSUANCE, (3, revocation.self_digest), M, signer
        )

        result = registry.submit_event(M, reissuance)
        assert result.escrowed
        assert [r.event for r in result.rejected] == [revocation]
        assert registry.escrowed(M) == [reissuance]
        assert isinstance(registry.rejections[-1].error, EscrowExpired)


class TestTamperAndRecovery:
    """Stored records that no longer match halt the member."""

    def _registry(self, signer):
        storage = MemoryBackend()
        registry = RegistryManager(storage=storage)
        registry.inception(M, signer)
        registry.issue(M, signer, payload=b"credential")
        registry.revoke(M, signer)
        return registry, storage

    def test_verify_intact_member(self, signer):
        registry, _ = self._registry(signer)
        assert registry.verify_member(M) is TelState.REVOKED
        assert not registry.is_halted(M)

    def test_tampered_payload_halts_member(self, signer):
        registry, storage = self._registry(signer)
        original = registry.get_log(M)[1]
        storage.overwrite(M, 1, replace(original, payload=b"forged").to_record())

        with pytest.raises(CorruptLogInvariant):
            registry.verify_member(M)
        assert registry.is_halted(M)
        assert registry.get_statistics()["halted"] == [M]

        with pytest.raises(CorruptLogInvariant):
            registry.issue(M, signer)

    def test_halt_is_per_member(self, signer):
        registry, storage = self._registry(signer)
        registry.inception("other", signer)
        storage.overwrite(M, 0, b"garbage")

        with pytest.raises(CorruptLogInvariant):
            registry.verify_member(M)
        registry.issue("other", signer)
        assert registry.get_state("other") is TelState.ISSUED

    def test_recover_member(self, signer):
        registry, storage = self._registry(signer)
        original = registry.get_log(M)[1]
        storage.overwrite(M, 1, replace(original, payload=b"forged").to_record())
        with pytest.raises(CorruptLogInvariant):
            registry.verify_member(M)

        with pytest.raises(CorruptLogInvariant):
            registry.recover_member(M)
        assert registry.is_halted(M)

        storage.overwrite(M, 1, original.to_record())
        assert registry.recover_member(M) is TelState.REVOKED
        assert not registry.is_halted(M)
        registry.issue(M, signer)
        assert registry.get_state(M) is TelState.ISSUED

    def test_verify_unknown_member(self, registry):
        with pytest.raises(UnknownMember):
            registry.verify_member("nobody")


class TestPersistentRegistry:
    """A registry rebuilt from FileBackend storage."""

    def test_load(self, tmp_path, signer):
        config = RegistryConfig(storage_path=str(tmp_path / "data"))
        with RegistryManager(config) as registry:
            registry.inception(M, signer)
            registry.issue(M, signer)
            registry.inception("other", signer)

        with RegistryManager(config) as registry:
            registry.register_key(M, signer.public_key)
            states = registry.load()
            assert states == {M: TelState.ISSUED, "other": TelState.NULL}
            assert len(registry.get_log(M)) == 2

            registry.revoke(M, signer)
            assert registry.get_state(M) is TelState.REVOKED

    def test_failed_write_can_be_retried(self, tmp_path, signer, monkeypatch):
        config = RegistryConfig(storage_path=str(tmp_path / "data"))
        real_fsync = os.fsync
        failures = []

        def fsync_once_failing(fd):
            if not failures:
                failures.append(fd)
                raise OSError(28, "No space left on device")
            real_fsync(fd)

        with RegistryManager(config) as registry:
            registry.inception(M, signer)
            monkeypatch.setattr("tel_registry.core.persistence.os.fsync", fsync_once_failing)
            with pytest.raises(StorageError):
                registry.issue(M, signer, b"credential")
            assert len(registry.get_log(M)) == 1

            registry.issue(M, signer, b"credential")
            assert registry.verify_member(M) is TelState.ISSUED

        with RegistryManager(config) as registry:
            registry.register_key(M, signer.public_key)
            assert registry.load() == {M: TelState.ISSUED}
            assert not registry.is_halted(M)
            assert len(registry.get_log(M)) == 2

    def test_load_halts_corrupt_member(self, signer):
        storage = MemoryBackend()
        with RegistryManager(storage=storage) as registry:
            registry.inception(M, signer)
            registry.issue(M, signer)
        storage.overwrite(M, 1, b"TEL1 broken")

        registry = RegistryManager(storage=storage)
        registry.load()
        assert registry.is_halted(M)


class TestExport:
    """Exported logs verify independently."""

    def test_export_and_verify(self, registry, signer, tmp_path):
        registry.inception(M, signer)
        registry.issue(M, signer)
        path = tmp_path / "member.json"
        registry.export_log(M, str(path))

        export = load_log_file(path)
        assert export.member_id == M
        assert export.state == "ISSUED"
        result = ChainVerifier(export.public_keys).verify(export.events)
        assert result.is_valid
        assert result.state is TelState.ISSUED


class TestConcurrency:
    """Writes are serialized per member."""

    def test_racing_events_for_one_head(self, registry):
        signer = Ed25519Signer()
        registry.inception(M, signer)
        candidates = [
            next_for(registry, M, EventType.ISSUANCE, signer, f"candidate-{i}".encode())
            for i in range(8)
        ]
        outcomes = []
        barrier = threading.Barrier(len(candidates))

        def submit(event):
            barrier.wait()
            try:
                registry.submit_event(M, event)
                outcomes.append("appended")
            except StaleOrForkedEvent:
                outcomes.append("forked")

        threads = [threading.Thread(target=submit, args=(e,)) for e in candidates]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("appended") == 1
        assert outcomes.count("forked") == 7
        assert len(registry.get_log(M)) == 2

    def test_members_in_parallel(self, registry):
        signer = Ed25519Signer()
        errors = []

        def lifecycle(member_id):
            try:
                registry.inception(member_id, signer)
                for _ in range(10):
                    registry.issue(member_id, signer)
                    registry.revoke(member_id, signer)
                registry.issue(member_id, signer)
            except TelError as e:
                errors.append(e)

        threads = [
            threading.Thread(target=lifecycle, args=(f"member-{i}",)) for i in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        for i in range(8):
            log = registry.get_log(f"member-{i}")
            assert len(log) == 22
            assert derive_state(log) is TelState.ISSUED
