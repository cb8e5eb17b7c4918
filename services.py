import boto3

from config import Settings
from core.kms.aws_kms import AWSKMSProvider
from core.pipeline.manager import ObjectEncryptor
from core.storage.s3 import S3ObjectStore

# boto3 clients are reused across warm invocations, one pair per region.
_clients = {}


def get_clients(region_name=None):
    if region_name not in _clients:
        _clients[region_name] = (
            boto3.client('s3', region_name=region_name),
            boto3.client('kms', region_name=region_name),
        )
    return _clients[region_name]


def build_encryptor(settings: Settings) -> ObjectEncryptor:
    s3_client, kms_client = get_clients(settings.region_name)
    store = S3ObjectStore(client=s3_client, part_size=settings.part_size)
    kms = AWSKMSProvider(client=kms_client)
    return ObjectEncryptor(store, kms, settings.kms_key_id, frame_length=settings.frame_length)
