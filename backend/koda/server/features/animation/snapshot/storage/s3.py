"""S3-compatible blob store (AWS S3, Cloudflare R2, MinIO).

Credentials come from the standard boto3 chain (AWS_ACCESS_KEY_ID /
AWS_SECRET_ACCESS_KEY, profile, or instance role). Set
SNAPSHOT_S3_ENDPOINT_URL for R2 or MinIO.
"""

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError

from koda.server.features.animation.configs import SNAPSHOT_S3_BUCKET
from koda.server.features.animation.configs import SNAPSHOT_S3_ENDPOINT_URL
from koda.server.features.animation.configs import SNAPSHOT_S3_REGION
from koda.server.features.animation.snapshot.storage.base import BlobNotFoundError
from koda.server.features.animation.snapshot.storage.base import BlobStore
from koda.server.features.animation.snapshot.storage.base import BlobStoreError
from koda.utils.logger import setup_logger

logger = setup_logger()

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class S3BlobStore(BlobStore):
    def __init__(
        self,
        bucket_name: str = SNAPSHOT_S3_BUCKET,
        s3_client: BaseClient | None = None,
    ) -> None:
        self.bucket_name = bucket_name
        if s3_client is None:
            session = boto3.Session()
            s3_client = session.client(
                "s3",
                endpoint_url=SNAPSHOT_S3_ENDPOINT_URL,
                region_name=SNAPSHOT_S3_REGION,
            )
        self._client = s3_client

    def put(self, key: str, data: bytes) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType="application/gzip",
            )
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to upload {key}: {e}") from e

        logger.debug(f"Uploaded s3://{self.bucket_name}/{key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        try:
            obj = self._client.get_object(Bucket=self.bucket_name, Key=key)
            return obj["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                raise BlobNotFoundError(key) from e
            raise BlobStoreError(f"Failed to download {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to download {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to delete {key}: {e}") from e

    def list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"])
        except (ClientError, BotoCoreError) as e:
            raise BlobStoreError(f"Failed to list {prefix}: {e}") from e
        return keys
