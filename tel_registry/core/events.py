"""
TEL Event Definitions

This module defines the immutable event record of a Transaction Event Log
and its canonical encoding.

Event Types:
    - INCEPTION: Opens a member's log at sequence 0 (no state change)
    - ISSUANCE: Member becomes Issued
    - REVOCATION: Member becomes Revoked

Canonical encoding (version 1, integers big-endian, no padding):

    magic            b"TEL1"
    u8               event type code
    u64              sequence_number
    u32 + bytes      member_id (utf-8)
    u32 + bytes      registry_id (ascii, empty outside a registry)
    u32 + bytes      prior_digest (ascii, empty for inception)
    u32 + bytes      payload

The signature is computed over exactly those bytes. The event's
``self_digest`` is the digest of the signing bytes followed by the
length-prefixed signature, so it commits to the signature as well.
A stored record is the signing bytes, the length-prefixed signature and
the length-prefixed self_digest.
"""

import base64
import json
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from tel_registry.core.digest import DEFAULT_ALGORITHM, digest, split_digest
from tel_registry.core.errors import CryptoError, MalformedEvent
from tel_registry.core.signer import Ed25519Signer


MAGIC = b"TEL1"
MAX_SEQUENCE = 2 ** 64 - 1

_U8 = struct.Struct(">B")
_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")


class EventType(Enum):
    """Closed set of TEL event types."""

    INCEPTION = "INCEPTION"
    ISSUANCE = "ISSUANCE"
    REVOCATION = "REVOCATION"

    @property
    def code(self) -> int:
        return _TYPE_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> 'EventType':
        for event_type, value in _TYPE_CODES.items():
            if value == code:
                return event_type
        raise MalformedEvent(f"Unknown event type code: {code}")


_TYPE_CODES = {
    EventType.INCEPTION: 0,
    EventType.ISSUANCE: 1,
    EventType.REVOCATION: 2,
}


def _field(data: bytes) -> bytes:
    return _U32.pack(len(data)) + data


class _Reader:
    """Cursor over record bytes; every short read is a MalformedEvent."""

    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0

    def take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise MalformedEvent("Record truncated")
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> int:
        return fmt.unpack(self.take(fmt.size))[0]

    def field(self) -> bytes:
        return self.take(self.unpack(_U32))

    @property
    def offset(self) -> int:
        return self._offset

    def at_end(self) -> bool:
        return self._offset == len(self._data)


@dataclass(frozen=True)
class TelEvent:
    """
    One state transition of a registry member.

    Attributes:
        member_id: Identifier of the registry member
        event_type: INCEPTION, ISSUANCE or REVOCATION
        sequence_number: Position in the member's log, 0 for inception
        prior_digest: self_digest of the preceding event ("" for inception)
        payload: Opaque reference (e.g. credential digest), never interpreted
        signature: Ed25519 signature over the signing bytes
        self_digest: Digest of signing bytes + signature
        registry_id: Identifier of the registry the member belongs to, or ""
    """

    member_id: str
    event_type: EventType
    sequence_number: int
    prior_digest: str
    payload: bytes
    signature: bytes
    self_digest: str
    registry_id: str = ""

    def __post_init__(self):
        if not isinstance(self.event_type, EventType):
            raise MalformedEvent(f"Invalid event type: {self.event_type!r}")
        if not isinstance(self.sequence_number, int) or isinstance(self.sequence_number, bool):
            raise MalformedEvent("sequence_number must be an integer")
        if not 0 <= self.sequence_number <= MAX_SEQUENCE:
            raise MalformedEvent(f"sequence_number out of range: {self.sequence_number}")
        if not isinstance(self.payload, bytes) or not isinstance(self.signature, bytes):
            raise MalformedEvent("payload and signature must be bytes")
        if not self.member_id:
            raise MalformedEvent("member_id is required")
        if self.event_type is not EventType.INCEPTION:
            if self.sequence_number == 0:
                raise MalformedEvent(
                    f"{self.event_type.value} cannot be sequence 0", self.member_id
                )
            try:
                split_digest(self.prior_digest)
            except CryptoError as e:
                raise MalformedEvent(
                    f"{self.event_type.value} needs the digest of its predecessor, "
                    f"got {self.prior_digest!r}",
                    self.member_id
                ) from e
        if self.registry_id:
            try:
                split_digest(self.registry_id)
            except CryptoError as e:
                raise MalformedEvent(
                    f"registry_id is not a digest: {self.registry_id!r}", self.member_id
                ) from e

    @property
    def digest_algorithm(self) -> str:
        return self.self_digest.partition(":")[0] or DEFAULT_ALGORITHM

    def signing_bytes(self) -> bytes:
        return encode_unsigned(
            self.member_id,
            self.event_type,
            self.sequence_number,
            self.prior_digest,
            self.payload,
            self.registry_id
        )

    def compute_digest(self, algorithm: Optional[str] = None) -> str:
        """
        Recompute the self_digest from the other fields.

        Args:
            algorithm: Override; defaults to the algorithm named in self_digest

        Returns:
            str: The digest this event should carry
        """
        return digest(
            self.signing_bytes() + _field(self.signature),
            algorithm or self.digest_algorithm
        )

    def has_valid_digest(self) -> bool:
        try:
            split_digest(self.self_digest)
        except CryptoError:
            return False
        return self.compute_digest() == self.self_digest

    def to_record(self) -> bytes:
        """Serialize to the canonical record bytes used for storage and transport."""
        return (
            self.signing_bytes()
            + _field(self.signature)
            + _field(self.self_digest.encode('ascii'))
        )

    @classmethod
    def from_record(cls, data: bytes) -> 'TelEvent':
        """
        Decode canonical record bytes.

        The stored self_digest is taken as-is; checking it against the
        content is the validator's and the replay engine's job.

        Raises:
            MalformedEvent: If the bytes are not a well-formed record
        """
        reader = _Reader(data)
        if reader.take(len(MAGIC)) != MAGIC:
            raise MalformedEvent("Bad record magic")
        event_type = EventType.from_code(reader.unpack(_U8))
        sequence_number = reader.unpack(_U64)
        try:
            member_id = reader.field().decode('utf-8')
            registry_id = reader.field().decode('ascii')
            prior_digest = reader.field().decode('ascii')
            payload = reader.field()
            signature = reader.field()
            self_digest = reader.field().decode('ascii')
        except UnicodeDecodeError as e:
            raise MalformedEvent(f"Record text field is not valid: {e}") from e
        if not reader.at_end():
            raise MalformedEvent(f"Trailing bytes after record at offset {reader.offset}")
        return cls(
            member_id=member_id,
            event_type=event_type,
            sequence_number=sequence_number,
            prior_digest=prior_digest,
            payload=payload,
            signature=signature,
            self_digest=self_digest,
            registry_id=registry_id
        )

    def to_dict(self) -> dict:
        """Convert event to dictionary for serialization."""
        return {
            "member_id": self.member_id,
            "event_type": self.event_type.value,
            "sequence_number": self.sequence_number,
            "prior_digest": self.prior_digest,
            "payload": base64.b64encode(self.payload).decode('ascii'),
            "signature": base64.b64encode(self.signature).decode('ascii'),
            "self_digest": self.self_digest,
            "registry_id": self.registry_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def short(self) -> str:
        return f"{self.event_type.value}#{self.sequence_number} {self.self_digest[:23]}"


def encode_unsigned(
    member_id: str,
    event_type: EventType,
    sequence_number: int,
    prior_digest: str,
    payload: bytes,
    registry_id: str = ""
) -> bytes:
    """Canonical encoding of every field except signature and self_digest."""
    try:
        prior = prior_digest.encode('ascii')
        registry = registry_id.encode('ascii')
    except UnicodeEncodeError as e:
        raise MalformedEvent(f"Digest fields must be ascii: {e}") from e
    return b"".join((
        MAGIC,
        _U8.pack(event_type.code),
        _U64.pack(sequence_number),
        _field(member_id.encode('utf-8')),
        _field(registry),
        _field(prior),
        _field(payload),
    ))


def event_from_dict(data: dict) -> TelEvent:
    """
    Build an event from its dictionary form.

    Raises:
        MalformedEvent: If a field is missing or has the wrong shape
    """
    try:
        return TelEvent(
            member_id=data["member_id"],
            event_type=EventType(data["event_type"]),
            sequence_number=data["sequence_number"],
            prior_digest=data.get("prior_digest") or "",
            payload=base64.b64decode(data.get("payload") or "", validate=True),
            signature=base64.b64decode(data["signature"], validate=True),
            self_digest=data["self_digest"],
            registry_id=data.get("registry_id") or "",
        )
    except KeyError as e:
        raise MalformedEvent(f"Missing event field: {e.args[0]}") from e
    except ValueError as e:
        raise MalformedEvent(f"Invalid event field: {e}") from e


def sign_event(
    member_id: str,
    event_type: EventType,
    sequence_number: int,
    prior_digest: str,
    payload: bytes,
    signer: Ed25519Signer,
    algorithm: str = DEFAULT_ALGORITHM,
    registry_id: str = ""
) -> TelEvent:
    """
    Sign the canonical bytes and seal the event with its self_digest.

    This is the only place where a self_digest is produced for a new event.
    """
    signing_bytes = encode_unsigned(
        member_id, event_type, sequence_number, prior_digest, payload, registry_id
    )
    signature = signer.sign(signing_bytes).signature
    return TelEvent(
        member_id=member_id,
        event_type=event_type,
        sequence_number=sequence_number,
        prior_digest=prior_digest,
        payload=payload,
        signature=signature,
        self_digest=digest(signing_bytes + _field(signature), algorithm),
        registry_id=registry_id,
    )


def make_inception_event(
    member_id: str,
    signer: Ed25519Signer,
    payload: bytes = b"",
    algorithm: str = DEFAULT_ALGORITHM,
    registry_id: str = ""
) -> TelEvent:
    """Build the sequence-0 event that opens a member's log."""
    return sign_event(
        member_id, EventType.INCEPTION, 0, "", payload, signer, algorithm, registry_id
    )


def _require_head(prior_digest: str, sequence_number: int) -> None:
    if not prior_digest:
        raise ValueError("Non-inception events must reference the current head digest")
    if sequence_number < 1:
        raise ValueError("Non-inception events must have sequence_number >= 1")


def make_issuance_event(
    member_id: str,
    sequence_number: int,
    prior_digest: str,
    signer: Ed25519Signer,
    payload: bytes = b"",
    algorithm: str = DEFAULT_ALGORITHM,
    registry_id: str = ""
) -> TelEvent:
    """
    Build an issuance event on top of the given head.

    Raises:
        ValueError: If no prior_digest is supplied
    """
    _require_head(prior_digest, sequence_number)
    return sign_event(
        member_id, EventType.ISSUANCE, sequence_number, prior_digest,
        payload, signer, algorithm, registry_id
    )


def make_revocation_event(
    member_id: str,
    sequence_number: int,
    prior_digest: str,
    signer: Ed25519Signer,
    payload: bytes = b"",
    algorithm: str = DEFAULT_ALGORITHM,
    registry_id: str = ""
) -> TelEvent:
    """
    Build a revocation event on top of the given head.

    Raises:
        ValueError: If no prior_digest is supplied
    """
    _require_head(prior_digest, sequence_number)
    return sign_event(
        member_id, EventType.REVOCATION, sequence_number, prior_digest,
        payload, signer, algorithm, registry_id
    )


def make_next_event(
    event_type: EventType,
    head: Tuple[int, str],
    member_id: str,
    signer: Ed25519Signer,
    payload: bytes = b"",
    algorithm: str = DEFAULT_ALGORITHM,
    registry_id: str = ""
) -> TelEvent:
    """
    Build the event following ``head`` (a ``(length, head_digest)`` pair).
    """
    length, head_digest = head
    if event_type is EventType.ISSUANCE:
        return make_issuance_event(
            member_id, length, head_digest, signer, payload, algorithm, registry_id
        )
    if event_type is EventType.REVOCATION:
        return make_revocation_event(
            member_id, length, head_digest, signer, payload, algorithm, registry_id
        )
    raise ValueError("Inception does not follow a head")
