import os
import struct

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.crypto.engine import SUITE_ID, TAG_LEN, CryptoEngine
from core.crypto.header import ByteReader, read_header
from core.crypto.stream import DecryptionError, FINAL_FRAME_MARKER, StreamEngine
from core.kms.provider import KMSProvider

CONTEXT = {"key": "reports/q1.csv.encrypted"}


class CountingKMS(KMSProvider):
    """Deterministic in-memory key provider that counts its calls."""

    provider_id = "test-kms"

    def __init__(self):
        self.generated = 0
        self.keys = {}

    def generate_data_key(self, key_id, encryption_context):
        self.generated += 1
        dek = os.urandom(32)
        wrapped = b"wrapped-%d" % self.generated
        self.keys[wrapped] = (dek, key_id, dict(encryption_context))
        return dek, wrapped

    def decrypt_data_key(self, encrypted_dek, key_id, encryption_context):
        dek, expected_key_id, expected_context = self.keys[encrypted_dek]
        assert (key_id, dict(encryption_context)) == (expected_key_id, expected_context)
        return dek


def encrypt(engine, data, chunk=1000):
    pieces = [data[i:i + chunk] for i in range(0, len(data), chunk)]
    return b"".join(engine.encrypt_stream(pieces, "master-key", CONTEXT))


def header_size(message):
    _, raw, _ = read_header(ByteReader([message]))
    return len(raw) + TAG_LEN


def test_stream_encrypt_decrypt():
    kms = CountingKMS()
    se = StreamEngine(kms, frame_length=4096)
    data = os.urandom(200_000)

    message = encrypt(se, data)
    assert kms.generated == 1

    chunks = [message[i:i + 777] for i in range(0, len(message), 777)]
    assert b"".join(se.decrypt_stream(chunks, CONTEXT)) == data


@pytest.mark.parametrize("size", [0, 4096])
def test_boundary_sizes_end_with_final_frame(size):
    se = StreamEngine(CountingKMS(), frame_length=4096)
    data = os.urandom(size)

    message = encrypt(se, data)
    body = message[header_size(message):]
    # Everything fits in the final frame: marker, seq 1, iv, length, content, tag
    marker, seq = struct.unpack(">II", body[:8])
    assert (marker, seq) == (FINAL_FRAME_MARKER, 1)
    assert struct.unpack(">I", body[20:24])[0] == size
    assert len(body) == 24 + size + TAG_LEN

    assert b"".join(se.decrypt_stream([message], CONTEXT)) == data


def test_header_is_self_describing():
    se = StreamEngine(CountingKMS(), frame_length=1024)
    message = encrypt(se, b"x" * 5000)

    header, _, _ = read_header(ByteReader([message]))
    assert header.suite_id == SUITE_ID
    assert header.encryption_context == CONTEXT
    assert header.frame_length == 1024
    [edk] = header.encrypted_data_keys
    assert (edk.provider_id, edk.key_id, edk.wrapped_key) == ("test-kms", "master-key", b"wrapped-1")


def test_encrypt_is_incremental():
    se = StreamEngine(CountingKMS(), frame_length=4096)
    consumed = []

    def source():
        for i in range(100):
            consumed.append(i)
            yield bytes([i]) * 4096

    stream = se.encrypt_stream(source(), "master-key", CONTEXT)
    next(stream)  # header
    assert consumed == []
    next(stream)  # first frame needs only a little more than one frame of input
    assert len(consumed) == 2
    stream.close()


def test_context_mismatch_is_rejected():
    se = StreamEngine(CountingKMS())
    message = encrypt(se, b"Sensitive data")

    with pytest.raises(DecryptionError, match="context mismatch"):
        b"".join(se.decrypt_stream([message], {"key": "elsewhere.encrypted"}))


def test_tampered_frame_fails_authentication():
    se = StreamEngine(CountingKMS(), frame_length=4096)
    message = bytearray(encrypt(se, os.urandom(10_000)))
    message[header_size(bytes(message)) + 30] ^= 0x01

    with pytest.raises(DecryptionError, match="frame 1"):
        b"".join(se.decrypt_stream([bytes(message)], CONTEXT))


def test_tampered_header_fails_authentication():
    se = StreamEngine(CountingKMS(), frame_length=4096)
    message = encrypt(se, b"Sensitive data")
    size = header_size(message)
    # Flip a bit of the frame length field, just before the 32-byte commitment and tag
    offset = size - TAG_LEN - 32 - 1
    tampered = message[:offset] + bytes([message[offset] ^ 0x01]) + message[offset + 1:]

    with pytest.raises(DecryptionError):
        b"".join(se.decrypt_stream([tampered], CONTEXT))


def test_commitment_mismatch_is_rejected():
    se = StreamEngine(CountingKMS())
    message = encrypt(se, b"Sensitive data")
    offset = header_size(message) - TAG_LEN - 1
    tampered = message[:offset] + bytes([message[offset] ^ 0xFF]) + message[offset + 1:]

    with pytest.raises(DecryptionError, match="commitment"):
        b"".join(se.decrypt_stream([tampered], CONTEXT))


def test_stream_integrity_failure():
    se = StreamEngine(CountingKMS(), frame_length=4096)
    message = encrypt(se, b"Sensitive data that should not be truncated." * 200)

    # Truncate to header only
    with pytest.raises(DecryptionError, match="Truncated"):
        b"".join(se.decrypt_stream([message[:header_size(message)]], CONTEXT))

    with pytest.raises(DecryptionError, match="Trailing"):
        b"".join(se.decrypt_stream([message + b"\x00"], CONTEXT))


def test_frames_use_encryption_sdk_body_aad():
    kms = CountingKMS()
    se = StreamEngine(kms, frame_length=1024)
    data = os.urandom(1500)
    message = encrypt(se, data)

    header, _, _ = read_header(ByteReader([message]))
    [edk] = header.encrypted_data_keys
    data_key = kms.keys[edk.wrapped_key][0]
    key, _ = CryptoEngine().derive_keys(data_key, header.message_id)
    aesgcm = AESGCM(key)
    body = message[header_size(message):]

    # Regular frame: seq(4) iv(12) ciphertext(1024) tag(16)
    iv, sealed = body[4:16], body[16:16 + 1024 + TAG_LEN]
    aad = header.message_id + b"AWSKMSEncryptionClient Frame" + struct.pack(">IQ", 1, 1024)
    assert aesgcm.decrypt(iv, sealed, aad) == data[:1024]

    # Final frame: marker(4) seq(4) iv(12) length(4) ciphertext tag(16)
    final = body[16 + 1024 + TAG_LEN:]
    iv, sealed = final[8:20], final[24:]
    aad = header.message_id + b"AWSKMSEncryptionClient Final Frame" + struct.pack(">IQ", 2, 476)
    assert aesgcm.decrypt(iv, sealed, aad) == data[1024:]


@pytest.mark.parametrize("frame_length", [0, 2 ** 32])
def test_frame_length_out_of_range(frame_length):
    with pytest.raises(ValueError, match="frame_length"):
        StreamEngine(CountingKMS(), frame_length=frame_length)
