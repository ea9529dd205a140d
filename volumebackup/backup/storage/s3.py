"""
S3 compatible object storage backend.

Archives are stored at {remote_path}/{filename} inside the configured
bucket. Files larger than the part size are sent as multipart uploads.
"""

import os
import posixpath
import tempfile
from datetime import datetime
from operator import itemgetter

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError
from cryptography.hazmat.primitives.serialization import Encoding

from volumebackup.config import S3Config
from volumebackup.errors import BackendError
from volumebackup.backup.retention import PruneStats, select_expired
from . import Backend, LogLevel


DEFAULT_PART_SIZE_MB = 16
MIN_PART_SIZE_MB = 5


class S3Backend(Backend):
    """
    Backend uploading archives to an S3 compatible bucket.
    """

    name = 'S3'

    def __init__(self, config: S3Config, log_func=None):
        """
        Initialize S3 backend.

        Args:
            config: S3 settings of the job
            log_func: Shared log callback
        """
        super().__init__(log_func)
        self.config = config
        self.bucket_name = config.bucket_name
        self.remote_path = config.remote_path.strip('/')
        self._ca_bundle = None

        part_size = config.part_size or DEFAULT_PART_SIZE_MB
        self.part_size = max(part_size, MIN_PART_SIZE_MB) * 1024 * 1024

        verify = True
        if config.endpoint_insecure:
            verify = False
        elif config.endpoint_ca_cert is not None:
            verify = self._write_ca_bundle(config.endpoint_ca_cert)

        client_kwargs = {
            'endpoint_url': f"{config.endpoint_proto}://{config.endpoint}",
            'region_name': config.region,
            'verify': verify,
            'config': BotoConfig(signature_version='s3v4'),
        }
        # Without static keys boto3 falls back to its credential chain (IAM role, profile, ...)
        if config.access_key_id and config.secret_access_key:
            client_kwargs['aws_access_key_id'] = config.access_key_id
            client_kwargs['aws_secret_access_key'] = config.secret_access_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise BackendError(self.name, f"failed to initialize S3 client: {e}") from e

    def _write_ca_bundle(self, certificate) -> str:
        fd, path = tempfile.mkstemp(prefix='volumebackup-ca-', suffix='.pem')
        with os.fdopen(fd, 'wb') as f:
            f.write(certificate.public_bytes(Encoding.PEM))
        self._ca_bundle = path
        return path

    def _key(self, name: str) -> str:
        return posixpath.join(self.remote_path, name) if self.remote_path else name

    def store(self, archive_path: str) -> str:
        if not os.path.exists(archive_path):
            raise BackendError(self.name, f"local file not found: {archive_path}")

        name = os.path.basename(archive_path)
        key = self._key(name)

        try:
            if os.path.getsize(archive_path) > self.part_size:
                self._multipart_upload(archive_path, key)
            else:
                self._simple_upload(archive_path, key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise BackendError(self.name, f"upload failed ({error_code}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise BackendError(self.name, f"upload failed: {e}") from e

        self.log(LogLevel.INFO, "Uploaded a copy of backup `%s` to bucket `%s`.", archive_path, self.bucket_name)
        return f"s3://{self.bucket_name}/{key}"

    def _extra_args(self) -> dict:
        if self.config.storage_class:
            return {'StorageClass': self.config.storage_class}
        return {}

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f,
                **self._extra_args()
            )

    def _multipart_upload(self, local_path: str, key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            **self._extra_args()
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.part_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except (ClientError, BotoCoreError, OSError):
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id
            )
            raise

    def list_objects(self, prefix: str) -> list:
        """
        List objects with the given key prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys
        """
        objects = []
        paginator = self.s3_client.get_paginator('list_objects_v2')

        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for obj in page.get('Contents', []):
                if obj['Key'].endswith('/'):
                    continue
                objects.append({
                    'Key': obj['Key'],
                    'LastModified': obj['LastModified'],
                    'Size': obj['Size']
                })

        return objects

    def prune(self, deadline: datetime, prefix: str) -> PruneStats:
        try:
            candidates = self.list_objects(self._key(prefix))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise BackendError(self.name, f"listing objects failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise BackendError(self.name, f"listing objects failed: {e}") from e

        matches = select_expired(candidates, itemgetter('LastModified'), deadline)

        def remove():
            # delete_objects accepts at most 1000 keys per call
            for start in range(0, len(matches), 1000):
                batch = matches[start:start + 1000]
                try:
                    response = self.s3_client.delete_objects(
                        Bucket=self.bucket_name,
                        Delete={'Objects': [{'Key': obj['Key']} for obj in batch], 'Quiet': True}
                    )
                except (ClientError, BotoCoreError) as e:
                    raise BackendError(self.name, f"removing objects failed: {e}") from e
                errors = response.get('Errors', [])
                if errors:
                    keys = ', '.join(error['Key'] for error in errors)
                    raise BackendError(self.name, f"failed to remove objects: {keys}")

        return self.do_prune(len(matches), len(candidates), 'remote backup(s)', remove, deadline)

    def close(self):
        if self._ca_bundle and os.path.exists(self._ca_bundle):
            os.remove(self._ca_bundle)
            self._ca_bundle = None
