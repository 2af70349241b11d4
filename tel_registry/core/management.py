"""
TEL Registry Management Log

A registry has one management log of its own, next to the member logs. Its
first event (REGISTRY_INCEPTION) fixes the registry identifier, the issuer's
signing key and the initial backer set. Later events (BACKER_ROTATION) add
and remove backers. Member events carry the registry identifier, so a
member log can only be replayed inside the registry that created it.

The registry identifier is self-addressing: it is the digest of the
inception's signing bytes with an empty registry_id field.

Canonical encoding (integers big-endian):

    magic            b"TELM"
    u8               event type code
    u64              sequence_number
    u32 + bytes      registry_id (ascii, empty while deriving it)
    u32 + bytes      prior_digest (ascii, empty for inception)
    u32 + bytes      issuer public key (inception only)
    u8               no_backers flag
    u64              backer threshold
    u32 count        backers, each u32 + utf-8 bytes
    u32 count        backers added, each u32 + utf-8 bytes
    u32 count        backers removed, each u32 + utf-8 bytes

Backers are recorded, never contacted: receipts and backer consensus are
outside this package.
"""

import logging
import struct
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from tel_registry.core.digest import DEFAULT_ALGORITHM, digest, split_digest
from tel_registry.core.errors import (
    CorruptLogInvariant,
    CryptoError,
    DuplicateEvent,
    IllegalTransition,
    InvalidSignature,
    MalformedEvent,
    RegistryMismatch,
    StaleOrForkedEvent,
    TelError,
)
from tel_registry.core.events import MAX_SEQUENCE, _field, _Reader
from tel_registry.core.signer import PUBLIC_KEY_SIZE, Ed25519Signer, verify


logger = logging.getLogger(__name__)

MANAGEMENT_MAGIC = b"TELM"

# Storage stream of the management log; never a valid member_id.
MANAGEMENT_STREAM = "\x00management"

_U8 = struct.Struct(">B")
_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")


class ManagementEventType(Enum):
    """Management log event types."""

    REGISTRY_INCEPTION = "REGISTRY_INCEPTION"
    BACKER_ROTATION = "BACKER_ROTATION"

    @property
    def code(self) -> int:
        return 0 if self is ManagementEventType.REGISTRY_INCEPTION else 1

    @classmethod
    def from_code(cls, code: int) -> 'ManagementEventType':
        for event_type in cls:
            if event_type.code == code:
                return event_type
        raise MalformedEvent(f"Unknown management event type code: {code}")


def _names(values: Sequence[str]) -> bytes:
    return _U32.pack(len(values)) + b"".join(_field(v.encode('utf-8')) for v in values)


def _read_names(reader: _Reader) -> Tuple[str, ...]:
    return tuple(reader.field().decode('utf-8') for _ in range(reader.unpack(_U32)))


@dataclass(frozen=True)
class ManagementEvent:
    """
    One event of a registry's management log.

    Attributes:
        registry_id: Self-addressing registry identifier
        event_type: REGISTRY_INCEPTION or BACKER_ROTATION
        sequence_number: Position in the management log
        prior_digest: self_digest of the preceding event ("" for inception)
        issuer_key: Issuer's Ed25519 public key (inception only)
        no_backers: The registry runs without backers
        backer_threshold: Backer receipts a member event needs
        backers: Initial backers (inception only)
        backers_added: Backers added by a rotation
        backers_removed: Backers removed by a rotation
        signature: Issuer's signature over the signing bytes
        self_digest: Digest of signing bytes + signature
    """

    registry_id: str
    event_type: ManagementEventType
    sequence_number: int
    prior_digest: str
    issuer_key: bytes
    no_backers: bool
    backer_threshold: int
    backers: Tuple[str, ...]
    backers_added: Tuple[str, ...]
    backers_removed: Tuple[str, ...]
    signature: bytes
    self_digest: str

    def __post_init__(self):
        if not isinstance(self.event_type, ManagementEventType):
            raise MalformedEvent(f"Invalid management event type: {self.event_type!r}")
        if not 0 <= self.sequence_number <= MAX_SEQUENCE:
            raise MalformedEvent(f"sequence_number out of range: {self.sequence_number}")
        if not 0 <= self.backer_threshold <= MAX_SEQUENCE:
            raise MalformedEvent(f"backer_threshold out of range: {self.backer_threshold}")
        if self.event_type is ManagementEventType.REGISTRY_INCEPTION:
            if len(self.issuer_key) != PUBLIC_KEY_SIZE:
                raise MalformedEvent("Registry inception must carry the issuer key")
            if self.backers_added or self.backers_removed:
                raise MalformedEvent("Registry inception cannot rotate backers")
            if self.no_backers and self.backers:
                raise MalformedEvent("A registry without backers cannot list any")
        else:
            if self.issuer_key or self.backers:
                raise MalformedEvent("Backer rotation cannot change the issuer or backer list")
            if self.sequence_number == 0:
                raise MalformedEvent("Backer rotation cannot be sequence 0")
            try:
                split_digest(self.prior_digest)
            except CryptoError as e:
                raise MalformedEvent(
                    f"Backer rotation needs the digest of its predecessor, "
                    f"got {self.prior_digest!r}"
                ) from e

    @property
    def digest_algorithm(self) -> str:
        return self.self_digest.partition(":")[0] or DEFAULT_ALGORITHM

    def signing_bytes(self, registry_id: Optional[str] = None) -> bytes:
        """Canonical bytes; ``registry_id`` overrides the stored identifier."""
        registry = self.registry_id if registry_id is None else registry_id
        return b"".join((
            MANAGEMENT_MAGIC,
            _U8.pack(self.event_type.code),
            _U64.pack(self.sequence_number),
            _field(registry.encode('ascii')),
            _field(self.prior_digest.encode('ascii')),
            _field(self.issuer_key),
            _U8.pack(1 if self.no_backers else 0),
            _U64.pack(self.backer_threshold),
            _names(self.backers),
            _names(self.backers_added),
            _names(self.backers_removed),
        ))

    def derived_registry_id(self) -> str:
        """The identifier a registry inception commits to."""
        return digest(self.signing_bytes(registry_id=""), self.digest_algorithm)

    def compute_digest(self) -> str:
        return digest(self.signing_bytes() + _field(self.signature), self.digest_algorithm)

    def has_valid_digest(self) -> bool:
        try:
            return self.compute_digest() == self.self_digest
        except CryptoError:
            return False

    def to_record(self) -> bytes:
        return (
            self.signing_bytes()
            + _field(self.signature)
            + _field(self.self_digest.encode('ascii'))
        )

    @classmethod
    def from_record(cls, data: bytes) -> 'ManagementEvent':
        """
        Decode canonical record bytes.

        Raises:
            MalformedEvent: If the bytes are not a well-formed record
        """
        reader = _Reader(data)
        if reader.take(len(MANAGEMENT_MAGIC)) != MANAGEMENT_MAGIC:
            raise MalformedEvent("Bad management record magic")
        event_type = ManagementEventType.from_code(reader.unpack(_U8))
        sequence_number = reader.unpack(_U64)
        try:
            registry_id = reader.field().decode('ascii')
            prior_digest = reader.field().decode('ascii')
            issuer_key = reader.field()
            no_backers = reader.unpack(_U8) == 1
            backer_threshold = reader.unpack(_U64)
            backers = _read_names(reader)
            backers_added = _read_names(reader)
            backers_removed = _read_names(reader)
            signature = reader.field()
            self_digest = reader.field().decode('ascii')
        except UnicodeDecodeError as e:
            raise MalformedEvent(f"Record text field is not valid: {e}") from e
        if not reader.at_end():
            raise MalformedEvent(f"Trailing bytes after record at offset {reader.offset}")
        return cls(
            registry_id=registry_id,
            event_type=event_type,
            sequence_number=sequence_number,
            prior_digest=prior_digest,
            issuer_key=issuer_key,
            no_backers=no_backers,
            backer_threshold=backer_threshold,
            backers=backers,
            backers_added=backers_added,
            backers_removed=backers_removed,
            signature=signature,
            self_digest=self_digest,
        )

    def short(self) -> str:
        return f"{self.event_type.value}#{self.sequence_number} {self.self_digest[:23]}"


@dataclass(frozen=True)
class ManagementState:
    """
    Registry state after the management log is applied.

    ``backers`` is None for a registry incepted without backers.
    """
    registry_id: str
    issuer_key: bytes
    backers: Optional[Tuple[str, ...]]
    backer_threshold: int
    sequence_number: int
    last_digest: str

    def to_dict(self) -> dict:
        return {
            "registry_id": self.registry_id,
            "issuer_key": self.issuer_key.hex(),
            "backers": list(self.backers) if self.backers is not None else None,
            "backer_threshold": self.backer_threshold,
            "sequence_number": self.sequence_number,
        }


def _check_threshold(event: ManagementEvent, backers: Optional[Tuple[str, ...]]) -> None:
    available = len(backers) if backers is not None else 0
    if event.backer_threshold > available:
        raise IllegalTransition(
            f"Backer threshold {event.backer_threshold} exceeds {available} backers",
            event_digest=event.self_digest
        )


def apply_management_event(
    state: Optional[ManagementState],
    event: ManagementEvent
) -> ManagementState:
    """
    Apply one management event to the registry state.

    ``state`` is None before the registry inception.

    Raises:
        MalformedEvent: self_digest or registry_id does not match the content
        InvalidSignature: Not signed by the registry issuer
        RegistryMismatch: A rotation for another registry
        DuplicateEvent: The event is already applied
        StaleOrForkedEvent: A second inception, or a rotation off a non-head event
        IllegalTransition: Wrong sequence number or backer change
    """
    if not event.has_valid_digest():
        raise MalformedEvent(
            "self_digest does not match the management event content",
            event_digest=event.self_digest
        )
    if state is not None and event.self_digest == state.last_digest:
        raise DuplicateEvent(
            f"Management event already applied at sequence {state.sequence_number}",
            event_digest=event.self_digest
        )

    if event.event_type is ManagementEventType.REGISTRY_INCEPTION:
        if state is not None:
            raise StaleOrForkedEvent(
                f"Registry {state.registry_id[:23]} is already incepted",
                event_digest=event.self_digest
            )
        if event.sequence_number != 0 or event.prior_digest:
            raise IllegalTransition(
                "Registry inception must be sequence 0 with no prior_digest",
                event_digest=event.self_digest
            )
        if event.registry_id != event.derived_registry_id():
            raise MalformedEvent(
                "registry_id is not derived from the inception content",
                event_digest=event.self_digest
            )
        _verify_issuer(event, event.issuer_key)
        backers = None if event.no_backers else tuple(dict.fromkeys(event.backers))
        _check_threshold(event, backers)
        return ManagementState(
            registry_id=event.registry_id,
            issuer_key=event.issuer_key,
            backers=backers,
            backer_threshold=event.backer_threshold,
            sequence_number=0,
            last_digest=event.self_digest,
        )

    if state is None:
        raise IllegalTransition(
            "Backer rotation before registry inception", event_digest=event.self_digest
        )
    if event.registry_id != state.registry_id:
        raise RegistryMismatch(
            f"Rotation for registry {event.registry_id[:23]}, expected {state.registry_id[:23]}",
            event_digest=event.self_digest
        )
    _verify_issuer(event, state.issuer_key)
    if event.prior_digest != state.last_digest:
        raise StaleOrForkedEvent(
            "Backer rotation does not build on the management head",
            event_digest=event.self_digest
        )
    if event.sequence_number != state.sequence_number + 1:
        raise IllegalTransition(
            f"Sequence {event.sequence_number} does not follow "
            f"{state.sequence_number}",
            event_digest=event.self_digest
        )
    if state.backers is None:
        raise IllegalTransition(
            "Registry was incepted without backers", event_digest=event.self_digest
        )

    unknown = [b for b in event.backers_removed if b not in state.backers]
    if unknown:
        raise IllegalTransition(
            f"Cannot remove unknown backers: {', '.join(unknown)}",
            event_digest=event.self_digest
        )
    remaining = [b for b in state.backers if b not in event.backers_removed]
    present = [b for b in event.backers_added if b in remaining]
    if present:
        raise IllegalTransition(
            f"Backers already present: {', '.join(present)}",
            event_digest=event.self_digest
        )
    backers = tuple(dict.fromkeys(remaining + list(event.backers_added)))
    _check_threshold(event, backers)
    return ManagementState(
        registry_id=state.registry_id,
        issuer_key=state.issuer_key,
        backers=backers,
        backer_threshold=event.backer_threshold,
        sequence_number=event.sequence_number,
        last_digest=event.self_digest,
    )


def _verify_issuer(event: ManagementEvent, issuer_key: bytes) -> None:
    try:
        valid = verify(event.signature, event.signing_bytes(), issuer_key)
    except CryptoError as e:
        raise CryptoError(e.message, event_digest=event.self_digest) from e
    if not valid:
        raise InvalidSignature(
            "Management event is not signed by the registry issuer",
            event_digest=event.self_digest
        )


def replay_management(events: Iterable[ManagementEvent]) -> Optional[ManagementState]:
    """
    Full replay of a management log; None for an empty one.

    Raises:
        CorruptLogInvariant: At the first event that does not apply
    """
    state = None
    for index, event in enumerate(events):
        try:
            state = apply_management_event(state, event)
        except TelError as e:
            raise CorruptLogInvariant(
                f"Management event {index} ({event.short()}) does not replay: {e.message}",
                event_digest=event.self_digest
            ) from e
    return state


class ManagementLog:
    """Thread-safe management log of one registry."""

    def __init__(self):
        self._lock = threading.RLock()
        self._events: List[ManagementEvent] = []
        self._state: Optional[ManagementState] = None

    @property
    def state(self) -> Optional[ManagementState]:
        with self._lock:
            return self._state

    @property
    def registry_id(self) -> str:
        with self._lock:
            return self._state.registry_id if self._state is not None else ""

    def events(self) -> Tuple[ManagementEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def length(self) -> int:
        with self._lock:
            return len(self._events)

    def check(self, event: ManagementEvent) -> ManagementState:
        """State the event would produce; raises like ``apply_management_event``."""
        with self._lock:
            return apply_management_event(self._state, event)

    def append(self, event: ManagementEvent, state: ManagementState) -> None:
        """Append an event already checked against the current head."""
        with self._lock:
            self._events.append(event)
            self._state = state
        logger.debug("Applied %s to registry %s", event.short(), state.registry_id[:23])

    def reset(self, events: Sequence[ManagementEvent], state: Optional[ManagementState]) -> None:
        with self._lock:
            self._events = list(events)
            self._state = state


def _sign_management(
    event_type: ManagementEventType,
    sequence_number: int,
    prior_digest: str,
    signer: Ed25519Signer,
    registry_id: str = "",
    issuer_key: bytes = b"",
    no_backers: bool = False,
    backer_threshold: int = 0,
    backers: Sequence[str] = (),
    backers_added: Sequence[str] = (),
    backers_removed: Sequence[str] = (),
    algorithm: str = DEFAULT_ALGORITHM
) -> ManagementEvent:
    unsigned = ManagementEvent(
        registry_id=registry_id,
        event_type=event_type,
        sequence_number=sequence_number,
        prior_digest=prior_digest,
        issuer_key=issuer_key,
        no_backers=no_backers,
        backer_threshold=backer_threshold,
        backers=tuple(backers),
        backers_added=tuple(backers_added),
        backers_removed=tuple(backers_removed),
        signature=b"",
        self_digest=f"{algorithm}:",
    )
    if event_type is ManagementEventType.REGISTRY_INCEPTION:
        registry_id = unsigned.derived_registry_id()
    signing_bytes = unsigned.signing_bytes(registry_id=registry_id)
    signature = signer.sign(signing_bytes).signature
    return ManagementEvent(
        registry_id=registry_id,
        event_type=event_type,
        sequence_number=sequence_number,
        prior_digest=prior_digest,
        issuer_key=issuer_key,
        no_backers=no_backers,
        backer_threshold=backer_threshold,
        backers=tuple(backers),
        backers_added=tuple(backers_added),
        backers_removed=tuple(backers_removed),
        signature=signature,
        self_digest=digest(signing_bytes + _field(signature), algorithm),
    )


def make_registry_inception(
    issuer: Ed25519Signer,
    backers: Sequence[str] = (),
    no_backers: bool = False,
    backer_threshold: int = 0,
    algorithm: str = DEFAULT_ALGORITHM
) -> ManagementEvent:
    """Build the event that creates a registry and binds its issuer."""
    return _sign_management(
        ManagementEventType.REGISTRY_INCEPTION, 0, "", issuer,
        issuer_key=issuer.public_key,
        no_backers=no_backers,
        backer_threshold=backer_threshold,
        backers=backers,
        algorithm=algorithm,
    )


def make_backer_rotation(
    state: ManagementState,
    issuer: Ed25519Signer,
    add: Sequence[str] = (),
    remove: Sequence[str] = (),
    backer_threshold: Optional[int] = None,
    algorithm: str = DEFAULT_ALGORITHM
) -> ManagementEvent:
    """Build a rotation on top of ``state``; the threshold is kept unless given."""
    return _sign_management(
        ManagementEventType.BACKER_ROTATION,
        state.sequence_number + 1,
        state.last_digest,
        issuer,
        registry_id=state.registry_id,
        backer_threshold=(
            state.backer_threshold if backer_threshold is None else backer_threshold
        ),
        backers_added=add,
        backers_removed=remove,
        algorithm=algorithm,
    )
