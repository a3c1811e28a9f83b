"""Tests for the wallet signer."""

import base64
import json

import pytest

from telemetry_anchor.core import WalletKeyError, WalletSigner

SEED = bytes(range(32))


@pytest.fixture
def signer():
    return WalletSigner.from_seed(SEED)


class TestKeyFormats:
    """Every supported secret encoding loads the same wallet."""

    def test_base58_keypair(self, signer):
        loaded = WalletSigner.from_secret(signer.secret_base58())
        assert loaded.address == signer.address

    def test_json_keypair(self, signer):
        loaded = WalletSigner.from_secret(signer.secret_json())
        assert loaded.address == signer.address
        assert len(json.loads(signer.secret_json())) == 64

    def test_json_seed(self, signer):
        loaded = WalletSigner.from_secret(json.dumps(list(SEED)))
        assert loaded.address == signer.address

    def test_base64_seed_and_keypair(self, signer):
        keypair = SEED + signer.public_key_bytes
        assert WalletSigner.from_secret(base64.b64encode(SEED).decode()).address == signer.address
        assert WalletSigner.from_secret(base64.b64encode(keypair).decode()).address == signer.address

    def test_surrounding_whitespace_ignored(self, signer):
        assert WalletSigner.from_secret(f"  {signer.secret_base58()}\n").address == signer.address

    def test_mismatched_public_half_rejected(self, signer):
        """A keypair whose public half belongs to another key is refused."""
        other = WalletSigner.generate()
        forged = list(SEED + other.public_key_bytes)
        with pytest.raises(WalletKeyError, match="does not match"):
            WalletSigner.from_secret(json.dumps(forged))

    def test_wrong_length_rejected(self):
        with pytest.raises(WalletKeyError, match="32 or 64 bytes"):
            WalletSigner.from_secret(json.dumps([1] * 16))

    def test_garbage_rejected(self):
        with pytest.raises(WalletKeyError):
            WalletSigner.from_secret("not a key!")
        with pytest.raises(WalletKeyError, match="empty"):
            WalletSigner.from_secret("   ")
        with pytest.raises(WalletKeyError):
            WalletSigner.from_secret("[1, 2,")

    def test_invalid_base58_keypair_rejected(self):
        """Keypair-length base58 that does not decode to a keypair."""
        for secret in ("1" * 87, "1" * 88, "z" * 88):
            with pytest.raises(WalletKeyError):
                WalletSigner.from_secret(secret)

    def test_seed_length_checked(self):
        with pytest.raises(WalletKeyError):
            WalletSigner.from_seed(b"short")


class TestSigning:

    def test_address_is_base58_public_key(self, signer):
        assert 32 <= len(signer.address) <= 44
        assert bytes(signer.pubkey) == signer.public_key_bytes

    def test_sign_and_verify(self, signer):
        signature = signer.sign(b"batch")
        assert len(signature) == 64
        assert WalletSigner.verify(b"batch", signature, signer.public_key_bytes)

    def test_verify_rejects_other_message(self, signer):
        signature = signer.sign(b"batch")
        assert not WalletSigner.verify(b"tampered", signature, signer.public_key_bytes)

    def test_verify_rejects_other_key(self, signer):
        signature = signer.sign(b"batch")
        other = WalletSigner.generate()
        assert not WalletSigner.verify(b"batch", signature, other.public_key_bytes)

    def test_deterministic_from_seed(self, signer):
        assert WalletSigner.from_seed(SEED).address == signer.address
        assert WalletSigner.generate().address != signer.address
