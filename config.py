import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from core.crypto.stream import FRAME_LENGTH, MAX_FRAME_LENGTH
from core.storage.s3 import DEFAULT_PART_SIZE, MIN_PART_SIZE

load_dotenv()


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings, read from the environment (and a local .env file).

    Attributes:
        kms_key_id: KMS key id, alias or ARN wrapping every data key (KMS_KEY).
            Required; an invocation without it fails before touching storage.
        region_name: Region for the S3 and KMS clients (AWS_REGION).
        frame_length: Plaintext bytes per ciphertext frame (FRAME_LENGTH).
        part_size: Multipart upload part size in bytes (UPLOAD_PART_SIZE).
        log_level: Root log level (LOG_LEVEL).
        siem_endpoint: Optional host:port receiving JSON logs over HTTP (SIEM_ENDPOINT).
    """
    kms_key_id: Optional[str]
    region_name: Optional[str] = None
    frame_length: int = FRAME_LENGTH
    part_size: int = DEFAULT_PART_SIZE
    log_level: str = "INFO"
    siem_endpoint: Optional[str] = None


def _int_env(name: str, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be at most {maximum}, got {value}")
    return value


def load_settings() -> Settings:
    """Read settings on every call so each invocation sees the current environment."""
    return Settings(
        kms_key_id=os.getenv('KMS_KEY') or None,
        region_name=os.getenv('AWS_REGION') or None,
        frame_length=_int_env('FRAME_LENGTH', FRAME_LENGTH, 1, MAX_FRAME_LENGTH),
        part_size=_int_env('UPLOAD_PART_SIZE', DEFAULT_PART_SIZE, MIN_PART_SIZE),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        siem_endpoint=os.getenv('SIEM_ENDPOINT') or None,
    )
