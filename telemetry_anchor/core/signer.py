"""
Wallet Signing Service

Ed25519 keys for the anchoring wallet. Transactions are signed with PyNaCl;
solders handles the Solana encodings (base58 keypairs and addresses).

Accepted secret formats (SOLANA_PRIVATE_KEY):
- base58 64-byte keypair, as exported by browser wallets
- JSON byte array, as written by `solana-keygen new` (64 or 32 bytes)
- base64 of the 64-byte keypair or the 32-byte seed
"""

import base64
import binascii
import json

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey
from solders.keypair import Keypair
from solders.pubkey import Pubkey

_BASE58_ALPHABET = frozenset("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


class WalletKeyError(ValueError):
    """Raised when a wallet secret cannot be parsed."""
    pass


class WalletSigner:
    """
    Ed25519 signer for the anchoring wallet.

    Holds the 32-byte seed; the public key doubles as the Solana address.
    """

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._verify_key = signing_key.verify_key

    @classmethod
    def generate(cls) -> "WalletSigner":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "WalletSigner":
        if len(seed) != 32:
            raise WalletKeyError(f"Ed25519 seed must be 32 bytes, got {len(seed)}")
        return cls(SigningKey(seed))

    @classmethod
    def from_secret(cls, secret: str) -> "WalletSigner":
        """
        Load a signer from any supported secret encoding.

        Raises:
            WalletKeyError: The secret is in none of the supported formats
        """
        secret = secret.strip()
        if not secret:
            raise WalletKeyError("Wallet secret is empty")

        if secret.startswith("["):
            try:
                raw = bytes(json.loads(secret))
            except (ValueError, TypeError) as e:
                raise WalletKeyError(f"Invalid JSON byte array: {e}") from e
            return cls._from_raw(raw)

        # A 64-byte keypair is 87 or 88 base58 characters
        if len(secret) in (87, 88) and set(secret) <= _BASE58_ALPHABET:
            try:
                keypair = Keypair.from_base58_string(secret)
            except ValueError as e:
                raise WalletKeyError(f"Invalid base58 keypair: {e}") from e
            return cls._from_raw(bytes(keypair))

        try:
            raw = base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError) as e:
            raise WalletKeyError("Wallet secret is not base58, a JSON byte array or base64") from e
        return cls._from_raw(raw)

    @classmethod
    def _from_raw(cls, raw: bytes) -> "WalletSigner":
        if len(raw) == 64:
            signer = cls.from_seed(raw[:32])
            if signer.public_key_bytes != raw[32:]:
                raise WalletKeyError("Keypair public half does not match its secret half")
            return signer
        if len(raw) == 32:
            return cls.from_seed(raw)
        raise WalletKeyError(f"Wallet secret must be 32 or 64 bytes, got {len(raw)}")

    @property
    def public_key_bytes(self) -> bytes:
        return bytes(self._verify_key)

    @property
    def pubkey(self) -> Pubkey:
        return Pubkey(self.public_key_bytes)

    @property
    def address(self) -> str:
        """Base58 wallet address."""
        return str(self.pubkey)

    def secret_base58(self) -> str:
        """The 64-byte keypair in base58, the format SOLANA_PRIVATE_KEY expects."""
        return str(Keypair.from_seed(bytes(self._signing_key)))

    def secret_json(self) -> str:
        """The 64-byte keypair as a JSON byte array."""
        return json.dumps(list(bytes(self._signing_key) + self.public_key_bytes))

    def sign(self, message: bytes) -> bytes:
        """Raw 64-byte Ed25519 signature over message."""
        return self._signing_key.sign(message).signature

    @staticmethod
    def verify(message: bytes, signature: bytes, public_key: bytes) -> bool:
        try:
            VerifyKey(public_key).verify(message, signature)
            return True
        except (BadSignatureError, ValueError):
            return False
