#!/usr/bin/env python3
"""Download an encrypted object from S3 and decrypt it to a local file."""
import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.crypto.stream import StreamEngine
from core.kms.aws_kms import AWSKMSProvider
from core.kms.file_kms import FileKMS
from core.storage.objects import ObjectRef
from core.storage.s3 import S3ObjectStore


def decrypt_object(store, engine, ref, out_path):
    """Stream `ref` through the decoder into `out_path`. Returns bytes written."""
    written = 0
    try:
        with open(out_path, 'wb') as f:
            for chunk in engine.decrypt_stream(store.read_chunks(ref), encryption_context={"key": ref.key}):
                f.write(chunk)
                written += len(chunk)
    except Exception:
        # Never leave a partially decrypted file behind
        if os.path.exists(out_path):
            os.remove(out_path)
        raise
    return written


def main(argv=None):
    p = argparse.ArgumentParser(description=__doc__)
    p.add_argument('--bucket', required=True)
    p.add_argument('--key', required=True, help='Key of the encrypted object (ends with .encrypted)')
    p.add_argument('--out', required=True, help='Plaintext output file')
    p.add_argument('--region', default=os.getenv('AWS_REGION'))
    p.add_argument('--kms-file', help='Use a local FileKMS master key instead of AWS KMS')
    args = p.parse_args(argv)

    kms = FileKMS(args.kms_file) if args.kms_file else AWSKMSProvider(region_name=args.region)
    store = S3ObjectStore(region_name=args.region)
    engine = StreamEngine(kms)

    written = decrypt_object(store, engine, ObjectRef(args.bucket, args.key), args.out)
    print(f"Decrypted s3://{args.bucket}/{args.key} -> {args.out} ({written} bytes)")


if __name__ == '__main__':
    main()
