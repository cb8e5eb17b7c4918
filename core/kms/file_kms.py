import os
import json
from typing import Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.kms.provider import KMSError, KMSProvider


class FileKMS(KMSProvider):
    """Simple file-backed KMS for local testing only.

    Stores a single master key in a file (protected via file perms) and
    performs envelope encryption of data keys using AESGCM. The key id and
    the encryption context are bound to every wrapped key as AAD.
    """

    provider_id = "file-kms"

    def __init__(self, key_path: str):
        self.key_path = key_path
        if not os.path.exists(key_path):
            mk = AESGCM.generate_key(bit_length=256)
            with open(key_path, 'wb') as f:
                f.write(mk)
            os.chmod(key_path, 0o600)

    def _load_master(self) -> bytes:
        with open(self.key_path, 'rb') as f:
            return f.read()

    @staticmethod
    def _aad(key_id: str, encryption_context: Mapping[str, str]) -> bytes:
        return json.dumps([key_id, dict(encryption_context)], sort_keys=True).encode()

    def generate_data_key(self, key_id: str, encryption_context: Mapping[str, str]) -> tuple[bytes, bytes]:
        if not key_id:
            raise KMSError("FileKMS generate_data_key failed: empty key id")
        aesgcm = AESGCM(self._load_master())
        dek = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(12)
        enc = aesgcm.encrypt(nonce, dek, self._aad(key_id, encryption_context))
        # Return plaintext dek and ciphertext blob (nonce + enc)
        return dek, nonce + enc

    def decrypt_data_key(self, encrypted_dek: bytes, key_id: str, encryption_context: Mapping[str, str]) -> bytes:
        nonce = encrypted_dek[:12]
        enc = encrypted_dek[12:]
        aesgcm = AESGCM(self._load_master())
        try:
            return aesgcm.decrypt(nonce, enc, self._aad(key_id, encryption_context))
        except InvalidTag as e:
            raise KMSError("FileKMS decrypt_data_key failed: access denied for this key or context") from e
