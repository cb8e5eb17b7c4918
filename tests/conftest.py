import io

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody

from core.kms.file_kms import FileKMS
from core.pipeline.manager import ObjectEncryptor
from core.storage.s3 import MIN_PART_SIZE, S3ObjectStore

MUTATING_OPS = {
    "put_object",
    "create_multipart_upload",
    "upload_part",
    "complete_multipart_upload",
    "abort_multipart_upload",
    "delete_object",
}


def client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client calls the pipeline makes.

    `fail_on(op, exc, when=...)` injects a fault; `calls` records every call
    as (operation, key).
    """

    def __init__(self):
        self.objects = {}
        self.uploads = {}
        self.calls = []
        self._faults = {}
        self._next_upload = 1

    def fail_on(self, op, exc, when=None):
        self._faults[op] = (exc, when or (lambda kwargs: True))

    def _record(self, op, kwargs):
        self.calls.append((op, kwargs.get("Key")))
        if op in self._faults:
            exc, when = self._faults[op]
            if when(kwargs):
                raise exc

    def mutating_calls(self):
        return [c for c in self.calls if c[0] in MUTATING_OPS]

    def get_object(self, **kwargs):
        self._record("get_object", kwargs)
        data = self.objects.get((kwargs["Bucket"], kwargs["Key"]))
        if data is None:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": StreamingBody(io.BytesIO(data), len(data)), "ContentLength": len(data)}

    def put_object(self, **kwargs):
        self._record("put_object", kwargs)
        self.objects[(kwargs["Bucket"], kwargs["Key"])] = bytes(kwargs["Body"])
        return {"ETag": '"put"'}

    def create_multipart_upload(self, **kwargs):
        self._record("create_multipart_upload", kwargs)
        upload_id = f"upload-{self._next_upload}"
        self._next_upload += 1
        self.uploads[upload_id] = {"Bucket": kwargs["Bucket"], "Key": kwargs["Key"], "Parts": {}}
        return {"UploadId": upload_id}

    def upload_part(self, **kwargs):
        self._record("upload_part", kwargs)
        upload = self.uploads[kwargs["UploadId"]]
        upload["Parts"][kwargs["PartNumber"]] = bytes(kwargs["Body"])
        return {"ETag": f'"etag-{kwargs["PartNumber"]}"'}

    def complete_multipart_upload(self, **kwargs):
        self._record("complete_multipart_upload", kwargs)
        upload = self.uploads.pop(kwargs["UploadId"])
        numbers = [p["PartNumber"] for p in kwargs["MultipartUpload"]["Parts"]]
        assert numbers == sorted(upload["Parts"]), "parts listed out of order"
        data = b"".join(upload["Parts"][n] for n in numbers)
        self.objects[(upload["Bucket"], upload["Key"])] = data
        return {"ETag": '"complete"'}

    def abort_multipart_upload(self, **kwargs):
        self._record("abort_multipart_upload", kwargs)
        self.uploads.pop(kwargs["UploadId"], None)
        return {}

    def delete_object(self, **kwargs):
        self._record("delete_object", kwargs)
        self.objects.pop((kwargs["Bucket"], kwargs["Key"]), None)
        return {}


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def kms(tmp_path):
    return FileKMS(str(tmp_path / "kms.key"))


@pytest.fixture
def store(fake_s3):
    return S3ObjectStore(client=fake_s3, part_size=MIN_PART_SIZE)


@pytest.fixture
def encryptor(store, kms):
    return ObjectEncryptor(store, kms, "local/test-key")
