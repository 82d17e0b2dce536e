"""
Tests for the boto3-backed S3ObjectStorage with a mocked client.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, NoCredentialsError

from src.bucketsync.errors import ConfigurationError, ObjectNotFoundError, StorageServiceError
from src.bucketsync.providers.s3 import S3ObjectStorage, _translate


def client_error(code, status, operation="HeadObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": "message"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@pytest.fixture
def s3():
    storage = S3ObjectStorage(region="us-east-1")
    storage._client = MagicMock()
    return storage


MODIFIED = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestTranslate:
    """Tests for ClientError translation."""

    def test_not_found(self):
        """Test that 404-style codes become ObjectNotFoundError."""
        for code in ("404", "NoSuchKey", "NotFound"):
            error = _translate(client_error(code, 404), "head")
            assert isinstance(error, ObjectNotFoundError)

    def test_other_codes_keep_code_and_status(self):
        """Test that other errors carry code and HTTP status."""
        error = _translate(client_error("NoSuchUpload", 404, "UploadPart"), "upload")

        assert type(error) is StorageServiceError
        assert error.code == "NoSuchUpload"
        assert error.status_code == 404


class TestConnection:
    """Tests for connect and the client property."""

    def test_client_requires_connect(self):
        """Test that using the client before connect fails."""
        with pytest.raises(RuntimeError):
            S3ObjectStorage().client

    @patch("src.bucketsync.providers.s3.boto3.Session")
    def test_connect_with_explicit_credentials(self, mock_session):
        """Test that explicit keys are passed to the session."""
        storage = S3ObjectStorage(
            region="eu-west-1",
            endpoint_url="http://localhost:9000",
            aws_access_key_id="key",
            aws_secret_access_key="secret",
        )

        storage.connect()

        mock_session.assert_called_once_with(
            aws_access_key_id="key",
            aws_secret_access_key="secret",
            aws_session_token=None,
            region_name="eu-west-1",
        )
        _, kwargs = mock_session.return_value.client.call_args
        assert kwargs["endpoint_url"] == "http://localhost:9000"
        assert storage.client is mock_session.return_value.client.return_value

    @patch("src.bucketsync.providers.s3.boto3.Session", side_effect=NoCredentialsError())
    def test_missing_credentials(self, mock_session):
        """Test that missing credentials raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            S3ObjectStorage().connect()


class TestObjects:
    """Tests for object operations."""

    def test_list_objects_page(self, s3):
        """Test listing with continuation token and delimiter."""
        s3.client.list_objects_v2.return_value = {
            "Contents": [{"Key": "data/a", "Size": 3, "LastModified": MODIFIED, "ETag": '"e"'}],
            "CommonPrefixes": [{"Prefix": "data/sub/"}],
            "IsTruncated": True,
            "NextContinuationToken": "token-2",
        }

        listing = s3.list_objects("bucket", "data/", delimiter="/", continuation_token="token-1", max_keys=10)

        s3.client.list_objects_v2.assert_called_once_with(
            Bucket="bucket", Prefix="data/", MaxKeys=10, Delimiter="/", ContinuationToken="token-1",
        )
        assert listing.contents[0].key == "data/a"
        assert listing.contents[0].modified_time == int(MODIFIED.timestamp())
        assert listing.contents[0].etag == "e"
        assert listing.common_prefixes == ["data/sub/"]
        assert listing.is_truncated is True
        assert listing.next_token == "token-2"

    def test_list_failure_translated(self, s3):
        """Test that listing errors become StorageServiceError."""
        s3.client.list_objects_v2.side_effect = client_error("NoSuchBucket", 404, "ListObjectsV2")

        with pytest.raises(StorageServiceError) as exc_info:
            s3.list_objects("bucket")

        assert exc_info.value.code == "NoSuchBucket"

    def test_head_object_reads_crc32(self, s3):
        """Test that HEAD requests the checksum."""
        s3.client.head_object.return_value = {
            "ContentLength": 11,
            "LastModified": MODIFIED,
            "ETag": '"abc"',
            "ChecksumCRC32": "DUoRhQ==",
        }

        meta = s3.head_object("bucket", "key")

        s3.client.head_object.assert_called_once_with(Bucket="bucket", Key="key", ChecksumMode="ENABLED")
        assert meta.size == 11
        assert meta.crc32 == "DUoRhQ=="

    def test_head_missing_object(self, s3):
        """Test that a 404 HEAD raises ObjectNotFoundError."""
        s3.client.head_object.side_effect = client_error("404", 404)

        with pytest.raises(ObjectNotFoundError):
            s3.head_object("bucket", "missing")

    def test_put_object_with_checksum(self, s3, temp_dir):
        """Test that uploads ask for a CRC32 checksum."""
        path = temp_dir / "f"
        path.write_bytes(b"x")
        s3.client.put_object.return_value = {"ETag": '"etag"'}

        assert s3.put_object_from_file("bucket", "key", path, storage_class="STANDARD_IA") == "etag"

        _, kwargs = s3.client.put_object.call_args
        assert kwargs["ChecksumAlgorithm"] == "CRC32"
        assert kwargs["StorageClass"] == "STANDARD_IA"

    def test_get_object_range(self, s3):
        """Test ranged reads."""
        body = MagicMock()
        body.__enter__.return_value = body
        body.read.return_value = b"abc"
        s3.client.get_object.return_value = {"Body": body}

        assert s3.get_object_range("bucket", "key", 0, 2) == b"abc"
        s3.client.get_object.assert_called_once_with(Bucket="bucket", Key="key", Range="bytes=0-2")

    def test_delete_objects_batches(self, s3):
        """Test that bulk deletes are split into batches of 1000."""
        s3.client.delete_objects.return_value = {"Errors": [{"Key": "k0", "Message": "denied"}]}

        failed = s3.delete_objects("bucket", [f"k{i}" for i in range(1500)])

        assert s3.client.delete_objects.call_count == 2
        assert failed == ["k0", "k0"]


class TestMultipart:
    """Tests for multipart calls."""

    def test_upload_part_copy_range(self, s3):
        """Test that copy parts carry an inclusive byte range."""
        s3.client.upload_part_copy.return_value = {"CopyPartResult": {"ETag": '"p1"'}}

        etag = s3.upload_part_copy("dst", "k", "up", 1, "src", "s", 0, 99)

        assert etag == "p1"
        _, kwargs = s3.client.upload_part_copy.call_args
        assert kwargs["CopySourceRange"] == "bytes=0-99"

    def test_complete_multipart_upload(self, s3):
        """Test that completion sends the sorted part list."""
        s3.client.complete_multipart_upload.return_value = {"ETag": '"final-2"'}
        parts = [{"PartNumber": 1, "ETag": "a"}, {"PartNumber": 2, "ETag": "b"}]

        assert s3.complete_multipart_upload("bucket", "key", "up", parts) == "final-2"
        s3.client.complete_multipart_upload.assert_called_once_with(
            Bucket="bucket", Key="key", UploadId="up", MultipartUpload={"Parts": parts},
        )

    def test_forgotten_upload(self, s3):
        """Test that NoSuchUpload keeps its code."""
        s3.client.upload_part.side_effect = client_error("NoSuchUpload", 404, "UploadPart")

        with pytest.raises(StorageServiceError) as exc_info:
            s3.upload_part("bucket", "key", "up", 1, b"x")

        assert exc_info.value.code == "NoSuchUpload"


class TestBuckets:
    """Tests for bucket operations."""

    def test_create_bucket_outside_us_east_1(self, s3):
        """Test that other regions send a location constraint."""
        s3.create_bucket("b", region="eu-west-1")

        s3.client.create_bucket.assert_called_once_with(
            Bucket="b", CreateBucketConfiguration={"LocationConstraint": "eu-west-1"},
        )

    def test_bucket_exists(self, s3):
        """Test head_bucket based existence checks."""
        assert s3.bucket_exists("b") is True

        s3.client.head_bucket.side_effect = client_error("404", 404, "HeadBucket")
        assert s3.bucket_exists("b") is False

    def test_presigned_url(self, s3):
        """Test presigned GET URLs."""
        s3.client.generate_presigned_url.return_value = "https://signed"

        assert s3.generate_presigned_url("b", "k", expires_in=60) == "https://signed"
        s3.client.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "b", "Key": "k"}, ExpiresIn=60,
        )
