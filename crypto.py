# archaeologist/crypto.py
"""
Payload encryption layer for sarcophagus unwraps.

The embalmer seals the (already recipient-encrypted) payload to the
archaeologist's per-obligation public key. Unwrapping strips that outer
layer and proves it by submitting the hash of the inner payload.
"""

import hashlib

from nacl.exceptions import CryptoError as NaClCryptoError
from nacl.public import SealedBox
from nacl.signing import SigningKey, VerifyKey

from errors import DecryptionError, EncryptionError


def seal_payload(public_key_hex: str, inner_payload: bytes) -> bytes:
    """Encrypt an inner payload to an archaeologist public identifier."""
    try:
        verify_key = VerifyKey(bytes.fromhex(public_key_hex))
        box = SealedBox(verify_key.to_curve25519_public_key())
        return box.encrypt(inner_payload)
    except (ValueError, NaClCryptoError) as e:
        raise EncryptionError("Failed to seal payload", cause=e) from e


def open_payload(signing_key: SigningKey, sealed_payload: bytes) -> bytes:
    """Strip the archaeologist's layer; raises DecryptionError on a wrong key."""
    box = SealedBox(signing_key.to_curve25519_private_key())
    try:
        return box.decrypt(sealed_payload)
    except NaClCryptoError as e:
        raise DecryptionError(
            "Payload could not be opened with the bound key",
            cause=e
        ) from e


def single_hash(inner_payload: bytes) -> bytes:
    """Hash submitted with the unwrap as proof the outer layer was removed."""
    return hashlib.sha256(inner_payload).digest()


def unwrap_material(signing_key: SigningKey, sealed_payload: bytes) -> bytes:
    return single_hash(open_payload(signing_key, sealed_payload))
