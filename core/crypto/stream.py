import struct
import logging
from typing import Iterable, Iterator, Mapping

from cryptography.exceptions import InvalidTag

from core.crypto.engine import CryptoEngine, IV_LEN, TAG_LEN
from core.crypto.header import (
    ByteReader,
    DecryptionError,
    EncryptedDataKey,
    HeaderError,
    MessageHeader,
    read_header,
)
from core.kms.provider import KMSError, KMSProvider

logger = logging.getLogger(__name__)

# Format:
# HEADER (see core/crypto/header.py), authenticated by a 16-byte tag
# REGULAR FRAMES
#   SeqNum (4 bytes), IV (12 bytes), Ciphertext (frame_length bytes), Tag (16 bytes)
# FINAL FRAME (exactly one, always last, may be empty)
#   0xFFFFFFFF (4 bytes), SeqNum (4 bytes), IV (12 bytes),
#   ContentLength (4 bytes), Ciphertext (ContentLength bytes), Tag (16 bytes)

FRAME_LENGTH = 4096
FINAL_FRAME_MARKER = 0xFFFFFFFF
MAX_SEQUENCE_NUMBER = 0xFFFFFFFE
MAX_FRAME_LENGTH = 2 ** 31 - 1
HEADER_IV = b'\x00' * IV_LEN

_FRAME_LABEL = b'AWSKMSEncryptionClient Frame'
_FINAL_LABEL = b'AWSKMSEncryptionClient Final Frame'

__all__ = ["StreamEngine", "DecryptionError", "FRAME_LENGTH", "MAX_FRAME_LENGTH"]


def _frame_aad(message_id: bytes, label: bytes, sequence_number: int, length: int) -> bytes:
    return message_id + label + struct.pack('>IQ', sequence_number, length)


class StreamEngine:
    """Streaming envelope encryption over iterables of bytes.

    Both directions are generators: nothing is read from the input until the
    caller asks for output, and at most one frame is buffered, so the caller
    controls the pace of the whole pipeline.
    """

    def __init__(self, kms: KMSProvider, frame_length: int = FRAME_LENGTH):
        if not 0 < frame_length <= MAX_FRAME_LENGTH:
            raise ValueError(f"frame_length must be between 1 and {MAX_FRAME_LENGTH}")
        self.kms = kms
        self.frame_length = frame_length
        self.crypto = CryptoEngine()

    def encrypt_stream(self, chunks: Iterable[bytes], key_id: str,
                       encryption_context: Mapping[str, str]) -> Iterator[bytes]:
        """
        Encrypt a plaintext byte stream, yielding the ciphertext message piece by piece.
        One data key is generated per call; only its wrapped form is written.
        """
        context = dict(encryption_context)
        data_key, wrapped_key = self.kms.generate_data_key(key_id, context)

        message_id = self.crypto.new_message_id()
        key, commitment = self.crypto.derive_keys(data_key, message_id)
        del data_key

        header = MessageHeader(
            suite_id=self.crypto.suite_id,
            message_id=message_id,
            encryption_context=context,
            encrypted_data_keys=(EncryptedDataKey(self.kms.provider_id, key_id, wrapped_key),),
            frame_length=self.frame_length,
            commitment=commitment,
        )
        header_bytes = header.to_bytes()
        header_tag = self.crypto.aead_encrypt(key, HEADER_IV, b'', header_bytes)
        yield header_bytes + header_tag

        buffer = bytearray()
        sequence_number = 1
        for chunk in chunks:
            buffer += chunk
            offset = 0
            # Strictly greater: the last frame is always the final frame.
            while len(buffer) - offset > self.frame_length:
                if sequence_number > MAX_SEQUENCE_NUMBER:
                    raise ValueError("Frame sequence number exhausted")
                content = bytes(buffer[offset:offset + self.frame_length])
                offset += self.frame_length
                iv = self.crypto.frame_iv(sequence_number)
                aad = _frame_aad(message_id, _FRAME_LABEL, sequence_number, len(content))
                sealed = self.crypto.aead_encrypt(key, iv, content, aad)
                yield struct.pack('>I', sequence_number) + iv + sealed
                sequence_number += 1
            del buffer[:offset]

        if sequence_number > MAX_SEQUENCE_NUMBER:
            raise ValueError("Frame sequence number exhausted")
        content = bytes(buffer)
        iv = self.crypto.frame_iv(sequence_number)
        aad = _frame_aad(message_id, _FINAL_LABEL, sequence_number, len(content))
        sealed = self.crypto.aead_encrypt(key, iv, content, aad)
        yield struct.pack('>II', FINAL_FRAME_MARKER, sequence_number) + iv + struct.pack('>I', len(content)) + sealed

    def decrypt_stream(self, chunks: Iterable[bytes],
                       encryption_context: Mapping[str, str] | None = None) -> Iterator[bytes]:
        """
        Decrypt a message produced by encrypt_stream.
        When `encryption_context` is given it must equal the one in the header.
        Each frame's plaintext is yielded only after its tag verified.
        """
        reader = ByteReader(chunks)
        header, header_bytes, header_tag = read_header(reader)

        if header.suite_id != self.crypto.suite_id:
            raise HeaderError(f"Unsupported algorithm suite: {header.suite_id:#06x}")
        if encryption_context is not None and dict(encryption_context) != dict(header.encryption_context):
            raise DecryptionError("Encryption context mismatch")

        data_key = self._unwrap(header)
        key, commitment = self.crypto.derive_keys(data_key, header.message_id)
        del data_key
        if not self.crypto.verify_commitment(header.commitment, commitment):
            raise DecryptionError("Key commitment mismatch")
        try:
            self.crypto.aead_decrypt(key, HEADER_IV, header_tag, header_bytes)
        except InvalidTag as err:
            raise DecryptionError("Header authentication failed") from err

        expected_sequence = 1
        while True:
            (marker,) = reader.unpack('>I', "frame sequence number")
            final = marker == FINAL_FRAME_MARKER
            if final:
                (sequence_number,) = reader.unpack('>I', "final frame sequence number")
            else:
                sequence_number = marker
            if sequence_number != expected_sequence:
                raise DecryptionError(
                    f"Out of order frame: expected {expected_sequence}, got {sequence_number}")

            iv = reader.read_exact(IV_LEN, "frame IV")
            if final:
                (length,) = reader.unpack('>I', "final frame length")
                if length > header.frame_length:
                    raise DecryptionError("Final frame longer than frame length")
                label = _FINAL_LABEL
            else:
                length = header.frame_length
                label = _FRAME_LABEL
            sealed = reader.read_exact(length + TAG_LEN, "frame body")

            aad = _frame_aad(header.message_id, label, sequence_number, length)
            try:
                plaintext = self.crypto.aead_decrypt(key, iv, sealed, aad)
            except InvalidTag as err:
                raise DecryptionError(
                    f"Decryption failed - invalid key or corrupted frame {sequence_number}") from err
            yield plaintext

            if final:
                break
            expected_sequence += 1

        if not reader.at_eof():
            raise DecryptionError("Trailing bytes after final frame")

    def _unwrap(self, header: MessageHeader) -> bytes:
        errors = []
        for edk in header.encrypted_data_keys:
            if edk.provider_id != self.kms.provider_id:
                continue
            try:
                return self.kms.decrypt_data_key(edk.wrapped_key, edk.key_id, header.encryption_context)
            except KMSError as err:
                logger.debug("Data key unwrap failed for key %s: %s", edk.key_id, err)
                errors.append(err)
        if errors:
            raise DecryptionError(f"Unable to unwrap data key: {errors[-1]}") from errors[-1]
        raise DecryptionError(f"No data key for provider {self.kms.provider_id!r}")
