"""
S3-compatible object storage backend built on boto3.

Features:
- Paged listings with continuation tokens
- HEAD with CRC32 checksum retrieval
- Single-shot and multipart uploads, ranged reads, server-side copies
- Presigned URLs and bucket management
- Translation of botocore ClientError into bucketsync errors
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError

from ..errors import ConfigurationError, ObjectNotFoundError, StorageServiceError
from ..storage import BucketSummary, ObjectListing, ObjectMeta, ObjectStorage, ObjectSummary

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})

STREAM_CHUNK_SIZE = 1024 * 1024  # 1 MB


def _translate(error: ClientError, context: str) -> StorageServiceError:
    """Wrap a botocore ClientError into a StorageServiceError."""
    err = error.response.get("Error", {})
    code = str(err.get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    message = f"{context}: {code} {err.get('Message', '')}".strip()
    if code in NOT_FOUND_CODES:
        return ObjectNotFoundError(message, code=code, status_code=status or 404)
    return StorageServiceError(message, code=code, status_code=status)


def _epoch(value: Any) -> int:
    return int(value.timestamp()) if value is not None else 0


class S3ObjectStorage(ObjectStorage):
    """S3 implementation of ObjectStorage."""

    def __init__(
        self,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
        max_pool_connections: int = 50,
        max_attempts: int = 3,
    ):
        """
        Initialize S3 storage backend.

        Args:
            region: AWS region
            endpoint_url: Custom endpoint for S3-compatible services
            aws_access_key_id: Access key (uses the default chain if not provided)
            aws_secret_access_key: Secret key (uses the default chain if not provided)
            aws_session_token: Optional session token
            max_pool_connections: HTTP connection pool size, shared by all workers
            max_attempts: botocore retry attempts per request
        """
        self.region = region
        self.endpoint_url = endpoint_url
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key
        self.aws_session_token = aws_session_token
        self.max_pool_connections = max_pool_connections
        self.max_attempts = max_attempts
        self._session = None
        self._client = None

    def connect(self) -> None:
        """Create the boto3 session and client."""
        try:
            if self.aws_access_key_id and self.aws_secret_access_key:
                self._session = boto3.Session(
                    aws_access_key_id=self.aws_access_key_id,
                    aws_secret_access_key=self.aws_secret_access_key,
                    aws_session_token=self.aws_session_token,
                    region_name=self.region,
                )
            else:
                self._session = boto3.Session(region_name=self.region)

            config = Config(
                retries={'max_attempts': self.max_attempts, 'mode': 'adaptive'},
                max_pool_connections=self.max_pool_connections,
            )
            self._client = self._session.client("s3", endpoint_url=self.endpoint_url, config=config)
            logger.info(f"Connected to S3 (region={self.region}, endpoint={self.endpoint_url or 'default'})")
        except NoCredentialsError:
            raise ConfigurationError("AWS credentials not found. Configure via config file or environment.")

    def disconnect(self) -> None:
        """Close connection to S3."""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("Disconnected from S3")

    @property
    def client(self):
        if not self._client:
            raise RuntimeError("Not connected to S3. Call connect() first.")
        return self._client

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: str = "",
        continuation_token: Optional[str] = None,
        max_keys: int = 1000,
    ) -> ObjectListing:
        params: Dict[str, Any] = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if delimiter:
            params["Delimiter"] = delimiter
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        try:
            response = self.client.list_objects_v2(**params)
        except ClientError as e:
            raise _translate(e, f"list s3://{bucket}/{prefix}")

        contents = [
            ObjectSummary(
                key=obj["Key"],
                size=obj.get("Size", 0),
                modified_time=_epoch(obj.get("LastModified")),
                etag=obj.get("ETag", "").strip('"') or None,
                storage_class=obj.get("StorageClass", "STANDARD"),
            )
            for obj in response.get("Contents", [])
        ]
        prefixes = [p["Prefix"] for p in response.get("CommonPrefixes", [])]
        listing = ObjectListing(
            contents=contents,
            common_prefixes=prefixes,
            is_truncated=bool(response.get("IsTruncated")),
            next_token=response.get("NextContinuationToken"),
        )
        logger.debug(
            f"Listed {len(contents)} objects in s3://{bucket}/{prefix} "
            f"(truncated={listing.is_truncated})"
        )
        return listing

    def head_object(self, bucket: str, key: str) -> ObjectMeta:
        try:
            response = self.client.head_object(Bucket=bucket, Key=key, ChecksumMode="ENABLED")
        except ClientError as e:
            raise _translate(e, f"head s3://{bucket}/{key}")

        return ObjectMeta(
            key=key,
            size=response["ContentLength"],
            modified_time=_epoch(response.get("LastModified")),
            etag=response.get("ETag", "").strip('"') or None,
            storage_class=response.get("StorageClass", "STANDARD"),
            crc32=response.get("ChecksumCRC32"),
        )

    def put_object_from_file(
        self,
        bucket: str,
        key: str,
        local_path: Path,
        storage_class: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key, "ChecksumAlgorithm": "CRC32"}
        if storage_class:
            params["StorageClass"] = storage_class

        try:
            with open(local_path, "rb") as f:
                response = self.client.put_object(Body=f, **params)
        except ClientError as e:
            raise _translate(e, f"put s3://{bucket}/{key}")

        etag = response["ETag"].strip('"')
        logger.debug(f"Uploaded {local_path} to s3://{bucket}/{key} (ETag: {etag})")
        return etag

    def get_object_to_file(self, bucket: str, key: str, local_path: Path) -> int:
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            bytes_downloaded = 0
            with response["Body"] as body:
                with open(local_path, "wb") as local_file:
                    while True:
                        chunk = body.read(STREAM_CHUNK_SIZE)
                        if not chunk:
                            break
                        local_file.write(chunk)
                        bytes_downloaded += len(chunk)
        except ClientError as e:
            raise _translate(e, f"get s3://{bucket}/{key}")

        logger.debug(f"Downloaded s3://{bucket}/{key} to {local_path} ({bytes_downloaded} bytes)")
        return bytes_downloaded

    def get_object_range(self, bucket: str, key: str, start: int, end: int) -> bytes:
        try:
            response = self.client.get_object(Bucket=bucket, Key=key, Range=f"bytes={start}-{end}")
            with response["Body"] as body:
                return body.read()
        except ClientError as e:
            raise _translate(e, f"get s3://{bucket}/{key} bytes={start}-{end}")

    def copy_object(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        storage_class: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {
            "Bucket": dst_bucket,
            "Key": dst_key,
            "CopySource": {"Bucket": src_bucket, "Key": src_key},
        }
        if storage_class:
            params["StorageClass"] = storage_class

        try:
            response = self.client.copy_object(**params)
        except ClientError as e:
            raise _translate(e, f"copy s3://{src_bucket}/{src_key} to s3://{dst_bucket}/{dst_key}")
        return response.get("CopyObjectResult", {}).get("ETag", "").strip('"')

    def delete_object(self, bucket: str, key: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise _translate(e, f"delete s3://{bucket}/{key}")
        logger.debug(f"Deleted s3://{bucket}/{key}")

    def delete_objects(self, bucket: str, keys: List[str]) -> List[str]:
        failed: List[str] = []
        # DeleteObjects accepts at most 1000 keys per request
        for i in range(0, len(keys), 1000):
            batch = keys[i:i + 1000]
            try:
                response = self.client.delete_objects(
                    Bucket=bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except ClientError as e:
                raise _translate(e, f"delete {len(batch)} objects in s3://{bucket}")
            for err in response.get("Errors", []):
                logger.error(f"Failed to delete s3://{bucket}/{err.get('Key')}: {err.get('Message')}")
                failed.append(err.get("Key"))
        return failed

    # ------------------------------------------------------------------
    # Multipart
    # ------------------------------------------------------------------

    def initiate_multipart_upload(
        self,
        bucket: str,
        key: str,
        storage_class: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key}
        if storage_class:
            params["StorageClass"] = storage_class
        try:
            response = self.client.create_multipart_upload(**params)
        except ClientError as e:
            raise _translate(e, f"initiate multipart upload s3://{bucket}/{key}")
        upload_id = response["UploadId"]
        logger.debug(f"Started multipart upload {upload_id} for s3://{bucket}/{key}")
        return upload_id

    def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        body: bytes,
    ) -> str:
        try:
            response = self.client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        except ClientError as e:
            raise _translate(e, f"upload part {part_number} of s3://{bucket}/{key}")
        return response["ETag"].strip('"')

    def upload_part_copy(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        src_bucket: str,
        src_key: str,
        start: int,
        end: int,
    ) -> str:
        try:
            response = self.client.upload_part_copy(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                CopySource={"Bucket": src_bucket, "Key": src_key},
                CopySourceRange=f"bytes={start}-{end}",
            )
        except ClientError as e:
            raise _translate(e, f"copy part {part_number} of s3://{bucket}/{key}")
        return response["CopyPartResult"]["ETag"].strip('"')

    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: List[Dict[str, Any]],
    ) -> str:
        try:
            response = self.client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except ClientError as e:
            raise _translate(e, f"complete multipart upload s3://{bucket}/{key}")
        etag = response.get("ETag", "").strip('"')
        logger.info(f"Completed multipart upload {upload_id} (ETag: {etag})")
        return etag

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except ClientError as e:
            raise _translate(e, f"abort multipart upload s3://{bucket}/{key}")

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def list_buckets(self) -> List[BucketSummary]:
        try:
            response = self.client.list_buckets()
        except ClientError as e:
            raise _translate(e, "list buckets")
        return [
            BucketSummary(name=b["Name"], created=_epoch(b.get("CreationDate")))
            for b in response.get("Buckets", [])
        ]

    def create_bucket(self, bucket: str, region: Optional[str] = None) -> None:
        region = region or self.region
        try:
            if region == "us-east-1":
                self.client.create_bucket(Bucket=bucket)
            else:
                self.client.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={'LocationConstraint': region},
                )
        except ClientError as e:
            raise _translate(e, f"create bucket {bucket}")
        logger.info(f"Created bucket {bucket} in {region}")

    def delete_bucket(self, bucket: str) -> None:
        try:
            self.client.delete_bucket(Bucket=bucket)
        except ClientError as e:
            raise _translate(e, f"delete bucket {bucket}")
        logger.info(f"Deleted bucket {bucket}")

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchBucket'):
                return False
            raise _translate(e, f"head bucket {bucket}")

    def generate_presigned_url(self, bucket: str, key: str, expires_in: int = 1800) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise _translate(e, f"sign s3://{bucket}/{key}")
