"""
TEL Error Taxonomy

Every rejection the registry can produce is a subclass of ``TelError``.

    CryptoError           malformed key or signature material
    InvalidSignature      signature does not verify against the member key
    StaleOrForkedEvent    prior_digest points at a non-head event (equivocation)
      DuplicateEvent      the exact event is already in the log
    IllegalTransition     the event violates the state machine
    UnknownMember         non-inception event for a member with no log
    RegistryMismatch      the event names a different registry than this one
    MalformedEvent        record bytes or JSON cannot be decoded
    CorruptLogInvariant   a stored log fails replay; the member is halted
    EscrowExpired         an escrowed event was dropped (age or count bound)
    StorageError          the persistence backend refused a read or write

"Escrowed" is a pending outcome, not an error
(see ``tel_registry.core.validator.Outcome``).
"""

from typing import Optional


class TelError(Exception):
    """
    Base class for all TEL errors.

    Attributes:
        member_id: Member the failing event belongs to (if known)
        event_digest: self_digest of the offending event (if known)
    """

    def __init__(
        self,
        message: str,
        member_id: Optional[str] = None,
        event_digest: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.member_id = member_id
        self.event_digest = event_digest

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "member_id": self.member_id,
            "event_digest": self.event_digest,
        }


class CryptoError(TelError):
    """Malformed key or signature; the event is rejected and never retried."""


class InvalidSignature(TelError):
    """Signature does not verify against the authoritative signing key."""


class StaleOrForkedEvent(TelError):
    """
    Event links to a known event that is no longer the head.

    Two distinct events claiming the same predecessor is equivocation;
    the first valid one wins and every later one lands here.
    """


class DuplicateEvent(StaleOrForkedEvent):
    """The event (same self_digest) is already part of the log."""


class IllegalTransition(TelError):
    """The event is not allowed from the member's current state."""


class UnknownMember(TelError):
    """Only an inception event may reference a member without a log."""


class RegistryMismatch(TelError):
    """The event is scoped to a registry other than the one it was sent to."""


class MalformedEvent(TelError):
    """Serialized event could not be decoded."""


class CorruptLogInvariant(TelError):
    """
    A stored log failed replay.

    This means the log was tampered with after it was written or the
    validator let a bad event through. Appends for the member stop until
    manual recovery.
    """


class EscrowExpired(TelError):
    """An escrowed event was dropped before its predecessor arrived."""


class StorageError(TelError):
    """The persistence backend refused a read or write."""
