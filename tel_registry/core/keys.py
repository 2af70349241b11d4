"""
Member key state.

Holds the public key history of each member. Key rotation policy belongs to
the external key management collaborator; this table only records what it
has been told, and the most recent key is the authoritative one.
"""

import threading
from typing import Dict, List, Optional

from tel_registry.core.errors import CryptoError
from tel_registry.core.signer import PUBLIC_KEY_SIZE


class KeyRegistry:
    """Append-only public key history per member."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: Dict[str, List[bytes]] = {}

    def bind(self, member_id: str, public_key: bytes) -> bool:
        """
        Record a new authoritative key for a member.

        Binding the current key again is a no-op.

        Returns:
            bool: True if the key was appended to the history

        Raises:
            CryptoError: If the key is not a 32-byte Ed25519 key
        """
        if len(public_key) != PUBLIC_KEY_SIZE:
            raise CryptoError(
                f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}",
                member_id=member_id
            )
        with self._lock:
            history = self._keys.setdefault(member_id, [])
            if history and history[-1] == public_key:
                return False
            history.append(bytes(public_key))
            return True

    def unbind(self, member_id: str, public_key: bytes) -> None:
        """Withdraw ``public_key`` if it is still the member's latest key."""
        with self._lock:
            history = self._keys.get(member_id)
            if history and history[-1] == public_key:
                history.pop()
            if not history:
                self._keys.pop(member_id, None)

    def current(self, member_id: str) -> Optional[bytes]:
        with self._lock:
            history = self._keys.get(member_id)
            return history[-1] if history else None

    def history(self, member_id: str) -> List[bytes]:
        with self._lock:
            return list(self._keys.get(member_id, []))

    def __contains__(self, member_id: str) -> bool:
        with self._lock:
            return member_id in self._keys
