"""
S3 access for the encrypt-and-replace pipeline.

Reads are exposed as lazy chunk generators over the object body and writes go
through a multipart upload handle that keeps at most one part in memory, so
the size of the object never decides how much is buffered.
"""

import logging
from typing import Callable, Iterable, Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.pipeline.errors import BodyTypeError, DeleteError, SinkWriteError, SourceReadError
from core.storage.objects import ObjectRef

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024  # 64KB reads from the object body
MIN_PART_SIZE = 5 * 1024 * 1024  # S3 minimum for all but the last part
DEFAULT_PART_SIZE = 8 * 1024 * 1024

ProgressCallback = Callable[[int, int], None]


class MultipartUpload:
    """Resumable upload of a stream of unknown length to one object.

    Parts are sent as soon as `part_size` bytes are buffered. When the whole
    stream fits in a single part no multipart upload is created at all and
    `complete()` falls back to one put_object call.
    """

    def __init__(self, client, ref: ObjectRef, part_size: int = DEFAULT_PART_SIZE,
                 content_type: str = "application/octet-stream"):
        if part_size < MIN_PART_SIZE:
            raise ValueError(f"part_size must be at least {MIN_PART_SIZE} bytes")
        self.client = client
        self.ref = ref
        self.part_size = part_size
        self.content_type = content_type
        self.upload_id: Optional[str] = None
        self.parts: list[dict] = []
        self.bytes_written = 0
        self.completed = False
        self.aborted = False
        self._buffer = bytearray()
        self._progress: Optional[ProgressCallback] = None

    @property
    def started(self) -> bool:
        return self.upload_id is not None

    def write(self, chunks: Iterable[bytes], progress_callback: Optional[ProgressCallback] = None) -> None:
        """Consume `chunks`, uploading full parts as they fill up."""
        if self.completed or self.aborted:
            raise SinkWriteError(f"Upload to {self.ref} is already closed")
        self._progress = progress_callback
        for chunk in chunks:
            self._buffer += chunk
            while len(self._buffer) >= self.part_size:
                part = bytes(self._buffer[:self.part_size])
                del self._buffer[:self.part_size]
                self._upload_part(part)

    def complete(self) -> None:
        """Make the object visible. Nothing is visible before this returns."""
        if self.aborted:
            raise SinkWriteError(f"Upload to {self.ref} was aborted")
        if self.completed:
            return
        try:
            if self.upload_id is None:
                body = bytes(self._buffer)
                self.client.put_object(
                    Bucket=self.ref.bucket,
                    Key=self.ref.key,
                    Body=body,
                    ContentType=self.content_type,
                )
                self.bytes_written += len(body)
            else:
                if self._buffer:
                    self._upload_part(bytes(self._buffer))
                self.client.complete_multipart_upload(
                    Bucket=self.ref.bucket,
                    Key=self.ref.key,
                    UploadId=self.upload_id,
                    MultipartUpload={"Parts": self.parts},
                )
        except (BotoCoreError, ClientError) as e:
            raise SinkWriteError(f"Completing upload to {self.ref} failed: {e}") from e
        self._buffer.clear()
        self.completed = True

    def abort(self) -> bool:
        """Discard everything uploaded so far. Returns False if S3 refused."""
        self._buffer.clear()
        if self.completed or self.aborted:
            return not self.completed
        self.aborted = True
        if self.upload_id is None:
            return True
        try:
            self.client.abort_multipart_upload(
                Bucket=self.ref.bucket,
                Key=self.ref.key,
                UploadId=self.upload_id,
            )
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error("Aborting multipart upload failed",
                         extra={"bucket": self.ref.bucket, "key": self.ref.key,
                                "upload_id": self.upload_id, "error": str(e)})
            return False

    def _upload_part(self, data: bytes) -> None:
        try:
            if self.upload_id is None:
                response = self.client.create_multipart_upload(
                    Bucket=self.ref.bucket,
                    Key=self.ref.key,
                    ContentType=self.content_type,
                )
                self.upload_id = response["UploadId"]
            part_number = len(self.parts) + 1
            response = self.client.upload_part(
                Bucket=self.ref.bucket,
                Key=self.ref.key,
                UploadId=self.upload_id,
                PartNumber=part_number,
                Body=data,
            )
        except (BotoCoreError, ClientError) as e:
            raise SinkWriteError(f"Uploading part to {self.ref} failed: {e}") from e
        self.parts.append({"PartNumber": part_number, "ETag": response["ETag"]})
        self.bytes_written += len(data)
        if self._progress:
            self._progress(self.bytes_written, part_number)


class S3ObjectStore:
    """Object source, sink and delete primitives on top of a boto3 S3 client."""

    def __init__(self, client=None, region_name: str | None = None,
                 part_size: int = DEFAULT_PART_SIZE, read_chunk_size: int = READ_CHUNK_SIZE):
        self.client = client or boto3.client('s3', region_name=region_name)
        self.part_size = part_size
        self.read_chunk_size = read_chunk_size

    def open_object(self, ref: ObjectRef):
        """Return the body of `ref` as a readable, single-pass stream."""
        try:
            response = self.client.get_object(Bucket=ref.bucket, Key=ref.key)
        except (BotoCoreError, ClientError) as e:
            raise SourceReadError(f"get_object failed for {ref}: {e}") from e

        body = response.get("Body")
        if body is None or not callable(getattr(body, "read", None)):
            raise BodyTypeError(f"get_object returned a non-readable body for {ref}")
        return body

    def iter_body(self, body, ref: ObjectRef) -> Iterator[bytes]:
        """Read `body` lazily in fixed size chunks; closes it when done."""
        try:
            while True:
                chunk = body.read(self.read_chunk_size)
                if not chunk:
                    break
                if not isinstance(chunk, (bytes, bytearray)):
                    raise BodyTypeError(f"Body of {ref} yielded {type(chunk).__name__}, expected bytes")
                yield bytes(chunk)
        except (BotoCoreError, ClientError, OSError) as e:
            raise SourceReadError(f"Reading {ref} failed: {e}") from e
        finally:
            if hasattr(body, "close"):
                body.close()

    def read_chunks(self, ref: ObjectRef) -> Iterator[bytes]:
        return self.iter_body(self.open_object(ref), ref)

    def start_upload(self, ref: ObjectRef, content_type: str = "application/octet-stream") -> MultipartUpload:
        return MultipartUpload(self.client, ref, part_size=self.part_size, content_type=content_type)

    def delete_object(self, ref: ObjectRef) -> None:
        try:
            self.client.delete_object(Bucket=ref.bucket, Key=ref.key)
        except (BotoCoreError, ClientError) as e:
            raise DeleteError(f"delete_object failed for {ref}: {e}") from e
