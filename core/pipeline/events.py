import urllib.parse
from typing import Any, Mapping

from core.pipeline.errors import EventError
from core.storage.objects import ObjectRef


def object_ref_from_event(event: Mapping[str, Any]) -> ObjectRef:
    """Extract the object of the first record of an S3 ObjectCreated event.

    S3 URL-encodes keys in notifications with spaces as '+'.
    """
    try:
        record = event["Records"][0]
        bucket = record["s3"]["bucket"]["name"]
        raw_key = record["s3"]["object"]["key"]
    except (KeyError, IndexError, TypeError) as e:
        raise EventError(f"Not an S3 object notification: missing {e}") from e

    if not bucket or not raw_key:
        raise EventError("S3 notification without bucket or key")
    return ObjectRef(bucket, urllib.parse.unquote_plus(raw_key))
