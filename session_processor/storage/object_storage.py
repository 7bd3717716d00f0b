"""S3-compatible object storage client.

Holds recording audio, foreground multipart uploads and podcast output.
Uses boto3 against any S3-compatible endpoint. Transient socket errors are
not retried by the client; callers surface them as failures.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from session_processor.utils.errors import AudioFetchError, StorageError

logger = logging.getLogger(__name__)

# Large uploads need a long socket timeout (tens of minutes).
TRANSFER_TIMEOUT_SECONDS = 30 * 60
PRESIGNED_URL_EXPIRY_SECONDS = 7 * 24 * 3600


@dataclass
class UploadedPart:
    """A part already stored for a multipart upload."""

    part_number: int
    etag: str
    size: int


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


class ObjectStorage:
    """S3-compatible client for recording and podcast objects.

    Reads configuration from environment variables:
        STORAGE_ENDPOINT, STORAGE_BUCKET, STORAGE_ACCESS_KEY_ID,
        STORAGE_SECRET_ACCESS_KEY
    """

    def __init__(
        self,
        endpoint_url: str | None = None,
        bucket: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        timeout: int = TRANSFER_TIMEOUT_SECONDS,
    ) -> None:
        self.endpoint_url = endpoint_url or os.environ.get("STORAGE_ENDPOINT", "")
        self.bucket = bucket or os.environ.get("STORAGE_BUCKET", "")
        self.access_key_id = access_key_id or os.environ.get(
            "STORAGE_ACCESS_KEY_ID", ""
        )
        self.secret_access_key = secret_access_key or os.environ.get(
            "STORAGE_SECRET_ACCESS_KEY", ""
        )

        if not self.endpoint_url:
            raise StorageError("STORAGE_ENDPOINT is required", operation="init")
        if not self.bucket:
            raise StorageError("STORAGE_BUCKET is required", operation="init")

        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            region_name="auto",
            config=Config(
                connect_timeout=60,
                read_timeout=timeout,
                retries={"total_max_attempts": 1},
            ),
        )

    def download_file(self, key: str, destination: str) -> None:
        """Stream an object to a local file.

        Args:
            key: Object key.
            destination: Local path to write.

        Raises:
            AudioFetchError: If the download fails.
        """
        try:
            self._client.download_file(self.bucket, key, destination)
        except ClientError as exc:
            raise AudioFetchError(
                f"Failed to download object '{key}': {_error_code(exc)}",
                key=key,
            ) from exc
        except BotoCoreError as exc:
            raise AudioFetchError(
                f"Failed to download object '{key}': {exc}", key=key
            ) from exc

    def upload_file(self, path: str, key: str, content_type: str = "") -> None:
        """Upload a local file.

        Raises:
            StorageError: If the upload fails.
        """
        extra_args = {"ContentType": content_type} if content_type else None
        try:
            self._client.upload_file(path, self.bucket, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(
                f"Failed to upload '{path}' to '{key}': {exc}",
                operation="upload_file",
            ) from exc

    def head_object(self, key: str) -> int | None:
        """Return the stored size of an object, or None if it does not exist.

        Raises:
            StorageError: On any error other than a missing object.
        """
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageError(
                f"Failed to stat object '{key}': {_error_code(exc)}",
                operation="head_object",
            ) from exc
        return int(response.get("ContentLength", 0))

    def presigned_get_url(
        self, key: str, expires_in: int = PRESIGNED_URL_EXPIRY_SECONDS
    ) -> str:
        """Create a time-limited download URL for an object."""
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def storage_url(self, key: str) -> str:
        """Return the canonical ``s3://`` URL for a key."""
        return f"s3://{self.bucket}/{key}"

    # Multipart operations used by the resumable foreground upload.

    def create_multipart_upload(self, key: str, content_type: str = "") -> str:
        """Start a multipart upload and return its upload id."""
        kwargs: dict = {"Bucket": self.bucket, "Key": key}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            response = self._client.create_multipart_upload(**kwargs)
        except ClientError as exc:
            raise StorageError(
                f"Failed to start multipart upload for '{key}': {_error_code(exc)}",
                operation="create_multipart_upload",
            ) from exc
        return response["UploadId"]

    def upload_part(
        self, key: str, upload_id: str, part_number: int, data: bytes
    ) -> str:
        """Upload one part and return its ETag."""
        try:
            response = self._client.upload_part(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
            )
        except ClientError as exc:
            raise StorageError(
                f"Failed to upload part {part_number} of '{key}': {_error_code(exc)}",
                operation="upload_part",
            ) from exc
        return response["ETag"]

    def list_parts(self, key: str, upload_id: str) -> list[UploadedPart]:
        """List the parts already stored for an upload, in part order."""
        parts: list[UploadedPart] = []
        marker = 0
        try:
            while True:
                response = self._client.list_parts(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumberMarker=marker,
                )
                for part in response.get("Parts", []):
                    parts.append(
                        UploadedPart(
                            part_number=part["PartNumber"],
                            etag=part["ETag"],
                            size=part["Size"],
                        )
                    )
                if not response.get("IsTruncated"):
                    break
                marker = response["NextPartNumberMarker"]
        except ClientError as exc:
            raise StorageError(
                f"Failed to list parts of '{key}': {_error_code(exc)}",
                operation="list_parts",
            ) from exc
        return sorted(parts, key=lambda p: p.part_number)

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[UploadedPart]
    ) -> None:
        """Assemble the uploaded parts into the final object."""
        try:
            self._client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": p.part_number, "ETag": p.etag} for p in parts
                    ]
                },
            )
        except ClientError as exc:
            raise StorageError(
                f"Failed to complete multipart upload for '{key}': "
                f"{_error_code(exc)}",
                operation="complete_multipart_upload",
            ) from exc


    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Discard an unfinished upload and the parts stored for it."""
        try:
            self._client.abort_multipart_upload(
                Bucket=self.bucket, Key=key, UploadId=upload_id
            )
        except ClientError as exc:
            raise StorageError(
                f"Failed to abort multipart upload for '{key}': {_error_code(exc)}",
                operation="abort_multipart_upload",
            ) from exc
