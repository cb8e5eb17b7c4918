from typing import Mapping, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .provider import KMSError, KMSProvider


class AWSKMSProvider(KMSProvider):
    """AWS KMS provider using GenerateDataKey/Decrypt APIs.

    Expects AWS credentials available in environment or execution role.
    The encryption context is passed to KMS, so a wrapped key only unwraps
    under the exact context it was generated with.
    """

    provider_id = "aws-kms"

    def __init__(self, region_name: str | None = None, client=None):
        self.client = client or boto3.client('kms', region_name=region_name)

    def generate_data_key(self, key_id: str, encryption_context: Mapping[str, str]) -> Tuple[bytes, bytes]:
        try:
            resp = self.client.generate_data_key(
                KeyId=key_id,
                KeySpec='AES_256',
                EncryptionContext=dict(encryption_context),
            )
            return resp['Plaintext'], resp['CiphertextBlob']
        except (BotoCoreError, ClientError) as e:
            raise KMSError(f"KMS generate_data_key failed: {e}") from e

    def decrypt_data_key(self, encrypted_dek: bytes, key_id: str, encryption_context: Mapping[str, str]) -> bytes:
        try:
            resp = self.client.decrypt(
                CiphertextBlob=encrypted_dek,
                KeyId=key_id,
                EncryptionContext=dict(encryption_context),
            )
            return resp['Plaintext']
        except (BotoCoreError, ClientError) as e:
            raise KMSError(f"KMS decrypt_data_key failed: {e}") from e
