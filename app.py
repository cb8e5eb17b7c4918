"""
Lambda entry point: encrypts the object named by an S3 ObjectCreated event.

The object is streamed through envelope encryption (KMS data key, AES-256-GCM
frames) to `<key>.encrypted` in the same bucket and the original is deleted
once the upload completed. Failures are logged and returned, never raised,
so the invoking service does not retry on its own.

Environment variables:
- KMS_KEY: The AWS KMS key id or ARN to use for encryption (required).
- AWS_REGION, FRAME_LENGTH, UPLOAD_PART_SIZE, LOG_LEVEL, SIEM_ENDPOINT: see config.py.
"""
import logging

import services
from config import load_settings
from core.logging.json_logger import configure_json_logging
from core.pipeline.errors import PipelineError
from core.pipeline.events import object_ref_from_event

logger = logging.getLogger(__name__)


def handler(event, context=None):
    request_id = getattr(context, "aws_request_id", "local")
    try:
        settings = load_settings()
        configure_json_logging(siem_endpoint=settings.siem_endpoint, level=settings.log_level)
        ref = object_ref_from_event(event)
    except (PipelineError, ValueError) as e:
        stage = getattr(e, "stage", "config")
        logger.error("Invocation rejected", extra={"request_id": request_id, "stage": stage, "error": str(e)})
        return {"status": "failed", "stage": stage, "error": str(e)}

    try:
        encryptor = services.build_encryptor(settings)
    except Exception as e:
        logger.exception("Could not initialise clients",
                         extra={"request_id": request_id, "bucket": ref.bucket, "key": ref.key})
        return {"status": "failed", "bucket": ref.bucket, "key": ref.key, "stage": "config", "error": str(e)}

    result = encryptor.encrypt_object(ref)
    return result.to_dict()
