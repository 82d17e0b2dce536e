"""Object storage backend implementations."""

from .s3 import S3ObjectStorage

__all__ = [
    "S3ObjectStorage",
]
