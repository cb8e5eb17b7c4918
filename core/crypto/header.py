"""
Ciphertext message header.

Layout (big-endian):

    version(1) | suite_id(2) | message_id(32)
    | context_len(2) | context
    | edk_count(2) | edk...
    | content_type(1) | frame_length(4) | commitment(32)
    | header_tag(16)

The encryption context is serialized as count(2) followed by entries sorted
by key, each klen(2) key vlen(2) value (UTF-8). An empty context has a zero
length and no body. Each encrypted data key (edk) is
provider_id_len(2) provider_id key_id_len(2) key_id wrapped_len(2) wrapped.
Everything before the tag is authenticated by it.
"""

import struct
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping

from core.crypto.engine import COMMITMENT_LEN, MESSAGE_ID_LEN, TAG_LEN

VERSION = 0x02
CONTENT_TYPE_FRAMED = 0x02
MAX_FIELD_LEN = 0xFFFF


class DecryptionError(ValueError):
    """Ciphertext could not be authenticated or parsed."""


class HeaderError(DecryptionError):
    """Malformed or unsupported message header."""


@dataclass(frozen=True)
class EncryptedDataKey:
    provider_id: str
    key_id: str
    wrapped_key: bytes = field(repr=False)


@dataclass(frozen=True)
class MessageHeader:
    suite_id: int
    message_id: bytes
    encryption_context: Mapping[str, str]
    encrypted_data_keys: tuple[EncryptedDataKey, ...]
    frame_length: int
    commitment: bytes = field(repr=False)
    version: int = VERSION
    content_type: int = CONTENT_TYPE_FRAMED

    def to_bytes(self) -> bytes:
        """Serialized header without the authentication tag."""
        if len(self.message_id) != MESSAGE_ID_LEN:
            raise ValueError("message_id must be 32 bytes")
        if len(self.commitment) != COMMITMENT_LEN:
            raise ValueError("commitment must be 32 bytes")
        if not self.encrypted_data_keys:
            raise ValueError("at least one encrypted data key is required")

        context = serialize_encryption_context(self.encryption_context)
        parts = [
            struct.pack('>BH', self.version, self.suite_id),
            self.message_id,
            struct.pack('>H', len(context)),
            context,
            struct.pack('>H', len(self.encrypted_data_keys)),
        ]
        for edk in self.encrypted_data_keys:
            parts.append(_pack_field(edk.provider_id.encode('utf-8')))
            parts.append(_pack_field(edk.key_id.encode('utf-8')))
            parts.append(_pack_field(edk.wrapped_key))
        parts.append(struct.pack('>BI', self.content_type, self.frame_length))
        parts.append(self.commitment)
        return b''.join(parts)


def _pack_field(value: bytes) -> bytes:
    if len(value) > MAX_FIELD_LEN:
        raise ValueError(f"Header field too long ({len(value)} bytes)")
    return struct.pack('>H', len(value)) + value


def serialize_encryption_context(context: Mapping[str, str]) -> bytes:
    if not context:
        return b''
    entries = []
    for key, value in context.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValueError("Encryption context keys and values must be strings")
        entries.append((key.encode('utf-8'), value.encode('utf-8')))
    entries.sort()

    parts = [struct.pack('>H', len(entries))]
    for key, value in entries:
        parts.append(_pack_field(key))
        parts.append(_pack_field(value))
    data = b''.join(parts)
    if len(data) > MAX_FIELD_LEN:
        raise ValueError("Encryption context too large")
    return data


def parse_encryption_context(data: bytes) -> dict[str, str]:
    if not data:
        return {}
    reader = ByteReader([data])
    (count,) = reader.unpack('>H', "encryption context")
    context: dict[str, str] = {}
    for _ in range(count):
        key = reader.read_field("encryption context key").decode('utf-8')
        value = reader.read_field("encryption context value").decode('utf-8')
        if key in context:
            raise HeaderError(f"Duplicate encryption context key: {key!r}")
        context[key] = value
    if not reader.at_eof():
        raise HeaderError("Trailing bytes in encryption context")
    return context


class ByteReader:
    """Exact-length reads over an iterator of byte chunks.

    Holds at most one source chunk plus the bytes requested, so reading a
    message never buffers more than one frame.
    """

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks: Iterator[bytes] = iter(chunks)
        self._buffer = bytearray()
        self._pos = 0
        self._exhausted = False

    def _available(self) -> int:
        return len(self._buffer) - self._pos

    def _fill(self, size: int) -> None:
        while self._available() < size and not self._exhausted:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._exhausted = True
                break
            # Drop consumed bytes only when new ones arrive
            del self._buffer[:self._pos]
            self._pos = 0
            self._buffer += chunk

    def read_exact(self, size: int, what: str = "data") -> bytes:
        self._fill(size)
        if self._available() < size:
            raise DecryptionError(f"Truncated ciphertext while reading {what}")
        data = bytes(self._buffer[self._pos:self._pos + size])
        self._pos += size
        return data

    def unpack(self, fmt: str, what: str = "data") -> tuple:
        return struct.unpack(fmt, self.read_exact(struct.calcsize(fmt), what))

    def read_field(self, what: str = "field") -> bytes:
        (length,) = self.unpack('>H', what)
        return self.read_exact(length, what)

    def at_eof(self) -> bool:
        self._fill(1)
        return self._available() == 0


def read_header(reader: ByteReader) -> tuple[MessageHeader, bytes, bytes]:
    """Parse a header. Returns (header, authenticated_bytes, header_tag)."""
    raw = bytearray()

    def take(size: int, what: str) -> bytes:
        data = reader.read_exact(size, what)
        raw.extend(data)
        return data

    version, suite_id = struct.unpack('>BH', take(3, "header version"))
    if version != VERSION:
        raise HeaderError(f"Unsupported message version: {version:#04x}")

    message_id = take(MESSAGE_ID_LEN, "message id")
    (context_len,) = struct.unpack('>H', take(2, "encryption context length"))
    context = parse_encryption_context(take(context_len, "encryption context"))

    (edk_count,) = struct.unpack('>H', take(2, "data key count"))
    if edk_count == 0:
        raise HeaderError("Header carries no encrypted data key")
    edks = []
    for _ in range(edk_count):
        fields = []
        for what in ("provider id", "key id", "wrapped key"):
            (length,) = struct.unpack('>H', take(2, what))
            fields.append(take(length, what))
        edks.append(EncryptedDataKey(
            provider_id=fields[0].decode('utf-8'),
            key_id=fields[1].decode('utf-8'),
            wrapped_key=fields[2],
        ))

    content_type, frame_length = struct.unpack('>BI', take(5, "content type"))
    if content_type != CONTENT_TYPE_FRAMED:
        raise HeaderError(f"Unsupported content type: {content_type:#04x}")
    if frame_length <= 0:
        raise HeaderError("Invalid frame length")
    commitment = take(COMMITMENT_LEN, "commitment")
    tag = reader.read_exact(TAG_LEN, "header tag")

    header = MessageHeader(
        suite_id=suite_id,
        message_id=message_id,
        encryption_context=context,
        encrypted_data_keys=tuple(edks),
        frame_length=frame_length,
        commitment=commitment,
        version=version,
        content_type=content_type,
    )
    return header, bytes(raw), tag
