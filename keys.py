# archaeologist/keys.py
"""
Deterministic per-obligation signing keys.

Every obligation the archaeologist accepts is bound to one position in a
key sequence derived from a single master seed. The same seed and index
always produce the same Ed25519 keypair, so the service can rebuild every
binding from ledger history without storing private keys.
"""

import hashlib
import unicodedata
from dataclasses import dataclass

from nacl.encoding import RawEncoder
from nacl.hash import blake2b
from nacl.signing import SigningKey

from errors import KeyDerivationError

# BIP-39 seed stretching parameters
MNEMONIC_ROUNDS = 2048
SEED_PERSONALIZATION = b"sarco-arch-v1"


@dataclass(frozen=True)
class DerivedKey:
    index: int
    signing_key: SigningKey

    @property
    def private_key_bytes(self) -> bytes:
        return self.signing_key.encode()

    @property
    def public_key(self) -> str:
        """Hex public identifier counterparties encrypt payloads to."""
        return self.signing_key.verify_key.encode().hex()


def seed_from_mnemonic(mnemonic: str, passphrase: str = "") -> bytes:
    """BIP-39 seed: PBKDF2-HMAC-SHA512 over the normalized mnemonic."""
    words = " ".join(unicodedata.normalize("NFKD", mnemonic).split())
    if not words:
        raise KeyDerivationError("Mnemonic is empty")
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase)
    return hashlib.pbkdf2_hmac("sha512", words.encode(), salt.encode(), MNEMONIC_ROUNDS)


class KeyDeriver:
    """Maps a non-negative index to a signing key. Stateless and side-effect free."""

    def __init__(self, master_seed: bytes):
        if not 16 <= len(master_seed) <= 64:
            raise KeyDerivationError(
                "Master seed must be between 16 and 64 bytes",
                metadata={"seed_length": len(master_seed)}
            )
        self._master_seed = bytes(master_seed)

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "") -> "KeyDeriver":
        return cls(seed_from_mnemonic(mnemonic, passphrase))

    def derive(self, index: int) -> DerivedKey:
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise ValueError(f"Key index must be a non-negative integer, got {index!r}")

        seed = blake2b(
            index.to_bytes(8, "big"),
            digest_size=32,
            key=self._master_seed,
            person=SEED_PERSONALIZATION,
            encoder=RawEncoder,
        )
        return DerivedKey(index=index, signing_key=SigningKey(seed))

    def public_key(self, index: int) -> str:
        return self.derive(index).public_key
