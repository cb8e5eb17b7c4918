import logging
from dataclasses import asdict, dataclass
from typing import Iterator, Optional

from core.crypto.stream import FRAME_LENGTH, StreamEngine
from core.kms.provider import KMSError, KMSProvider
from core.pipeline.errors import ConfigurationError, PipelineError, TransformError
from core.storage.objects import ObjectRef
from core.storage.s3 import S3ObjectStore

logger = logging.getLogger(__name__)

STATUS_ENCRYPTED = "encrypted"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass
class TransferState:
    """Progress of one invocation. Lives only as long as the invocation."""

    read_started: bool = False
    upload_started: bool = False
    write_completed: bool = False
    delete_issued: bool = False
    source_deleted: bool = False
    bytes_read: int = 0
    bytes_written: int = 0


@dataclass
class PipelineResult:
    status: str
    source: ObjectRef
    destination: Optional[ObjectRef] = None
    stage: Optional[str] = None
    error: Optional[str] = None
    source_deleted: bool = False

    @property
    def success(self) -> bool:
        return self.status != STATUS_FAILED

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "bucket": self.source.bucket,
            "key": self.source.key,
            "encrypted_key": self.destination.key if self.destination else None,
            "stage": self.stage,
            "error": self.error,
            "source_deleted": self.source_deleted,
        }


class ObjectEncryptor:
    """Replaces a plaintext object with its envelope-encrypted copy.

    Source body, codec and multipart upload are chained as generators and
    driven by the upload, so a slow upload throttles the read. The original
    is deleted only after the upload completed; a failed delete leaves both
    objects in place rather than risk losing data.
    """

    def __init__(self, store: S3ObjectStore, kms: KMSProvider, kms_key_id: str | None,
                 frame_length: int = FRAME_LENGTH):
        self.store = store
        self.kms_key_id = kms_key_id
        self.stream_engine = StreamEngine(kms, frame_length=frame_length)

    @staticmethod
    def encryption_context(destination: ObjectRef) -> dict[str, str]:
        return {"key": destination.key}

    def encrypt_object(self, ref: ObjectRef) -> PipelineResult:
        """Encrypt `ref` to `<key>.encrypted` and delete it. Never raises."""
        log_ctx = {"bucket": ref.bucket, "key": ref.key}

        if ref.is_encrypted:
            logger.info("Object is already encrypted", extra=log_ctx)
            return PipelineResult(STATUS_SKIPPED, ref)

        destination = ref.encrypted()
        state = TransferState()
        try:
            if not self.kms_key_id:
                raise ConfigurationError("KMS_KEY is not set")
            self._encrypt_to(ref, destination, state)
        except PipelineError as e:
            logger.error("Encryption failed", exc_info=True,
                         extra={**log_ctx, "stage": e.stage, "error": str(e), "state": asdict(state)})
            return PipelineResult(STATUS_FAILED, ref, destination, stage=e.stage, error=str(e))
        except Exception as e:
            logger.exception("Encryption failed unexpectedly",
                             extra={**log_ctx, "stage": PipelineError.stage, "state": asdict(state)})
            return PipelineResult(STATUS_FAILED, ref, destination, stage=PipelineError.stage, error=str(e))

        state.delete_issued = True
        try:
            self.store.delete_object(ref)
        except Exception as e:
            logger.error("Encrypted copy written but deleting the original failed",
                         exc_info=True,
                         extra={**log_ctx, "stage": "delete", "encrypted_key": destination.key, "error": str(e)})
            return PipelineResult(STATUS_ENCRYPTED, ref, destination, stage="delete", error=str(e))
        state.source_deleted = True

        logger.info("Object encrypted", extra={
            **log_ctx,
            "encrypted_key": destination.key,
            "bytes_read": state.bytes_read,
            "bytes_written": state.bytes_written,
        })
        return PipelineResult(STATUS_ENCRYPTED, ref, destination, source_deleted=True)

    def _encrypt_to(self, source: ObjectRef, destination: ObjectRef, state: TransferState) -> None:
        body = self.store.open_object(source)
        state.read_started = True

        plaintext = self._count_read(self.store.iter_body(body, source), state)
        ciphertext = self._guard_transform(self.stream_engine.encrypt_stream(
            plaintext, self.kms_key_id, self.encryption_context(destination)))
        upload = self.store.start_upload(destination)

        def progress(written, part_number):
            logger.info("Upload progress", extra={
                "bucket": destination.bucket, "key": destination.key,
                "bytes_written": written, "part_number": part_number,
            })

        logger.info("Uploading...", extra={"bucket": destination.bucket, "key": destination.key})
        try:
            upload.write(ciphertext, progress_callback=progress)
            state.upload_started = upload.started
            upload.complete()
        except BaseException:
            state.upload_started = upload.started
            upload.abort()
            raise
        finally:
            ciphertext.close()
            plaintext.close()
            if hasattr(body, "close"):
                body.close()

        state.bytes_written = upload.bytes_written
        state.write_completed = True
        logger.info("Upload complete", extra={"bucket": destination.bucket, "key": destination.key})

    @staticmethod
    def _count_read(chunks: Iterator[bytes], state: TransferState) -> Iterator[bytes]:
        for chunk in chunks:
            state.bytes_read += len(chunk)
            yield chunk

    @staticmethod
    def _guard_transform(ciphertext: Iterator[bytes]) -> Iterator[bytes]:
        try:
            yield from ciphertext
        except KMSError as e:
            raise TransformError(f"Data key generation failed: {e}") from e
        except ValueError as e:
            raise TransformError(f"Encryption failed: {e}") from e
