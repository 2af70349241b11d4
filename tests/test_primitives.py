"""
Tests for TEL digest, signer and key primitives

Tests cover:
- Self-addressing digests
- Ed25519 signing and verification
- Malformed key and signature handling
- Member key history
"""

import hashlib

import pytest

from tel_registry.core.digest import (
    SUPPORTED_ALGORITHMS,
    derive_member_id,
    digest,
    split_digest,
    verify_digest,
)
from tel_registry.core.errors import CryptoError
from tel_registry.core.keys import KeyRegistry
from tel_registry.core.signer import Ed25519Signer, generate_key_pair, verify


class TestDigest:
    """Test self-addressing digests."""

    def test_sha256_matches_hashlib(self):
        expected = hashlib.sha256(b"hello").hexdigest()
        assert digest(b"hello") == f"sha256:{expected}"

    def test_deterministic(self):
        assert digest(b"same bytes") == digest(b"same bytes")
        assert digest(b"same bytes") != digest(b"other bytes")

    @pytest.mark.parametrize("algorithm", SUPPORTED_ALGORITHMS)
    def test_all_algorithms_produce_32_bytes(self, algorithm):
        value = digest(b"data", algorithm)
        name, hex_part = split_digest(value)
        assert name == algorithm
        assert len(bytes.fromhex(hex_part)) == 32

    def test_unknown_algorithm_raises(self):
        with pytest.raises(CryptoError):
            digest(b"data", "md5")

    @pytest.mark.parametrize("value", [
        "no-separator",
        "md5:abcd",
        "sha256:zz",
        "sha256:abcd",
    ])
    def test_split_rejects_malformed(self, value):
        with pytest.raises(CryptoError):
            split_digest(value)

    def test_verify_digest(self):
        value = digest(b"payload", "blake2b-256")
        assert verify_digest(b"payload", value)
        assert not verify_digest(b"payload!", value)

    def test_derive_member_id_is_content_address(self):
        credential = b'{"name": "Alice"}'
        assert derive_member_id(credential) == digest(credential)


class TestEd25519Signer:
    """Test the signing capability."""

    def test_generates_key_pair(self):
        signer = Ed25519Signer()
        assert len(signer.public_key) == 32
        assert len(signer.private_key) == 32

    def test_from_private_key_is_deterministic(self):
        private_key, public_key = generate_key_pair()
        signer = Ed25519Signer(private_key)
        assert signer.public_key == public_key
        assert signer.sign(b"data").signature == Ed25519Signer(private_key).sign(b"data").signature

    def test_from_private_key_b64(self):
        signer = Ed25519Signer()
        restored = Ed25519Signer.from_private_key_b64(signer.private_key_b64)
        assert restored.public_key == signer.public_key

    def test_rejects_short_private_key(self):
        with pytest.raises(CryptoError):
            Ed25519Signer(b"short")

    def test_sign_returns_64_byte_signature(self):
        result = Ed25519Signer().sign(b"data")
        assert len(result.signature) == 64
        assert result.public_key_b64


class TestVerify:
    """Test signature verification."""

    def test_valid_signature(self):
        signer = Ed25519Signer()
        signature = signer.sign(b"message").signature
        assert verify(signature, b"message", signer.public_key) is True

    def test_wrong_message(self):
        signer = Ed25519Signer()
        signature = signer.sign(b"message").signature
        assert verify(signature, b"other", signer.public_key) is False

    def test_wrong_key(self):
        signature = Ed25519Signer().sign(b"message").signature
        assert verify(signature, b"message", Ed25519Signer().public_key) is False

    def test_malformed_key_raises_crypto_error(self):
        signature = Ed25519Signer().sign(b"message").signature
        with pytest.raises(CryptoError):
            verify(signature, b"message", b"\x00" * 31)

    def test_malformed_signature_raises_crypto_error(self):
        signer = Ed25519Signer()
        with pytest.raises(CryptoError):
            verify(b"\x00" * 10, b"message", signer.public_key)


class TestKeyRegistry:
    """Test member key history."""

    def test_unknown_member_has_no_key(self):
        keys = KeyRegistry()
        assert keys.current("m") is None
        assert "m" not in keys

    def test_latest_key_is_authoritative(self):
        keys = KeyRegistry()
        first, second = Ed25519Signer(), Ed25519Signer()
        keys.bind("m", first.public_key)
        keys.bind("m", second.public_key)
        assert keys.current("m") == second.public_key
        assert keys.history("m") == [first.public_key, second.public_key]

    def test_rebinding_current_key_is_noop(self):
        keys = KeyRegistry()
        signer = Ed25519Signer()
        assert keys.bind("m", signer.public_key)
        assert not keys.bind("m", signer.public_key)
        assert len(keys.history("m")) == 1

    def test_unbind_withdraws_latest_key(self):
        keys = KeyRegistry()
        first, second = Ed25519Signer(), Ed25519Signer()
        keys.bind("m", first.public_key)
        keys.bind("m", second.public_key)

        keys.unbind("m", first.public_key)
        assert keys.current("m") == second.public_key

        keys.unbind("m", second.public_key)
        assert keys.history("m") == [first.public_key]
        keys.unbind("m", first.public_key)
        assert "m" not in keys

    def test_rejects_malformed_key(self):
        with pytest.raises(CryptoError):
            KeyRegistry().bind("m", b"abc")
