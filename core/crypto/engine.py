import os
import hmac
import struct
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# The only suite this codec writes: AES-256-GCM, 12-byte IV, 16-byte tag,
# HKDF-SHA512 key derivation and a key commitment stored in the header.
SUITE_ID = 0x0478
SUITE_NAME = "AES256_GCM_IV12_TAG16_HKDF_SHA512_COMMIT_KEY"

DATA_KEY_LEN = 32
MESSAGE_ID_LEN = 32
COMMITMENT_LEN = 32
IV_LEN = 12
TAG_LEN = 16

_DERIVE_KEY_LABEL = b"DERIVEKEY"
_COMMIT_KEY_LABEL = b"COMMITKEY"


class CryptoEngine:
    """Primitives of the fixed algorithm suite used by the stream codec."""

    suite_id = SUITE_ID
    suite_name = SUITE_NAME

    def new_message_id(self) -> bytes:
        """Random per-message identifier, also the HKDF salt."""
        return os.urandom(MESSAGE_ID_LEN)

    def derive_keys(self, data_key: bytes, message_id: bytes) -> tuple[bytes, bytes]:
        """Return (encryption_key, commitment) for one message.

        Both come from the same data key and message id, so a ciphertext can
        only be opened with the data key it was committed to.
        """
        if len(data_key) != DATA_KEY_LEN:
            raise ValueError(f"Data key must be exactly {DATA_KEY_LEN} bytes, got {len(data_key)} bytes")
        encryption_key = HKDF(
            algorithm=hashes.SHA512(),
            length=DATA_KEY_LEN,
            salt=message_id,
            info=struct.pack('>H', self.suite_id) + _DERIVE_KEY_LABEL,
        ).derive(data_key)
        commitment = HKDF(
            algorithm=hashes.SHA512(),
            length=COMMITMENT_LEN,
            salt=message_id,
            info=_COMMIT_KEY_LABEL,
        ).derive(data_key)
        return encryption_key, commitment

    def verify_commitment(self, expected: bytes, actual: bytes) -> bool:
        return hmac.compare_digest(expected, actual)

    def frame_iv(self, sequence_number: int) -> bytes:
        """IV for a body frame: the sequence number, big-endian, padded to 12 bytes."""
        return sequence_number.to_bytes(IV_LEN, byteorder='big')

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
        """Encrypt with AES-GCM; returns ciphertext followed by the 16-byte tag."""
        return AESGCM(key).encrypt(nonce, plaintext, aad)

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes | None = None) -> bytes:
        """Decrypt with AES-GCM. Raises cryptography's InvalidTag on failure."""
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
