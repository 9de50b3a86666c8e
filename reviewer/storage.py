import logging
from pathlib import Path
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import ServiceError, UploadFailure


logger = logging.getLogger(__name__)


class S3ObjectStore:
    """Puts and deletes analysis archives in an S3 bucket."""

    def __init__(self, client, expected_owner: Optional[str] = None):
        self.client = client
        self.expected_owner = expected_owner

    def _owner_args(self) -> dict:
        return {"ExpectedBucketOwner": self.expected_owner} if self.expected_owner else {}

    def put(self, bucket: str, key: str, local_path: Path) -> None:
        extra = {"ExpectedBucketOwner": self.expected_owner} if self.expected_owner else None
        try:
            self.client.upload_file(str(local_path), bucket, key, ExtraArgs=extra)
        except (BotoCoreError, ClientError) as e:
            raise UploadFailure(f"could not upload {local_path} to s3://{bucket}/{key}: {e}") from e
        logger.debug("Uploaded %s to s3://%s/%s", local_path, bucket, key)

    def delete(self, bucket: str, key: Optional[str]) -> None:
        if not key:
            return
        try:
            self.client.delete_object(Bucket=bucket, Key=key, **self._owner_args())
        except (BotoCoreError, ClientError):
            logger.warning("Failed to delete %s from %s. Please delete the object by hand.", key, bucket)

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket, **self._owner_args())
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchBucket", "NotFound"):
                return False
            raise ServiceError(f"cannot access bucket {bucket}: {e}") from e
        except BotoCoreError as e:
            raise ServiceError(f"cannot access bucket {bucket}: {e}") from e

    def create_bucket(self, bucket: str, region: str) -> None:
        params = {"Bucket": bucket}
        if region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self.client.create_bucket(**params)
        except (BotoCoreError, ClientError) as e:
            raise ServiceError(f"could not create bucket {bucket}: {e}") from e
