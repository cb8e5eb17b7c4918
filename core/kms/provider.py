from abc import ABC, abstractmethod
from typing import Mapping


class KMSError(RuntimeError):
    """Raised when the key service refuses or fails a data key request."""


class KMSProvider(ABC):
    """Abstract KMS provider interface for envelope encryption."""

    # Recorded next to the wrapped key in every message header.
    provider_id = ""

    @abstractmethod
    def generate_data_key(self, key_id: str, encryption_context: Mapping[str, str]) -> tuple[bytes, bytes]:
        """Return (plaintext_dek, encrypted_dek) for one object.
        encrypted_dek is the ciphertext that must be stored alongside data.
        """

    @abstractmethod
    def decrypt_data_key(self, encrypted_dek: bytes, key_id: str, encryption_context: Mapping[str, str]) -> bytes:
        """Return plaintext DEK for use in data decryption.
        `encryption_context` must be the one supplied at generation time.
        """
