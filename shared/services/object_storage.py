"""
AWS S3 storage for uploaded images.

Uploaded images are referenced from messages by their object key.
"""
import logging
import uuid
from typing import Optional

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from config import get_settings
from tutor.exceptions import ConfigurationError, ObjectStorageError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


class ObjectStorage:
    """
    S3 client for image uploads.

    Credentials are auto-detected from the environment, ~/.aws/credentials
    or the instance role.
    """

    def __init__(self, bucket_name: Optional[str] = None, region: Optional[str] = None):
        settings = get_settings()
        self.bucket_name = bucket_name or settings.aws_s3_bucket
        self.region = region or settings.aws_region

        try:
            self.s3_client = boto3.client("s3", region_name=self.region)
            logger.info(f"S3 client initialized for bucket: {self.bucket_name}, region: {self.region}")
        except NoCredentialsError as e:
            logger.error("AWS credentials not found")
            raise ConfigurationError("aws_credentials", "AWS credentials not found") from e

    def upload_image(self, conversation_id: str, data: bytes, content_type: str) -> str:
        """
        Upload image bytes.

        Returns:
            Object key usable as a message image reference
        """
        ext = IMAGE_EXTENSIONS.get(content_type, "bin")
        key = f"uploads/{conversation_id}/{uuid.uuid4()}.{ext}"
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            logger.error(f"Failed to upload image to S3: {e}")
            raise ObjectStorageError("upload") from e
        logger.info(f"Uploaded image to s3://{self.bucket_name}/{key}")
        return key

    def download(self, key: str) -> tuple[bytes, str]:
        """
        Download an object.

        Returns:
            (bytes, content type)
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            logger.error(f"Failed to download {key} from S3: {e}")
            raise ObjectStorageError("download", key) from e
        return response["Body"].read(), response.get("ContentType", "application/octet-stream")
