"""
bucketsync: synchronize local directories and S3-compatible object storage.

Provides:
- Key-ordered entry listers for local trees and bucket prefixes
- Merge-join comparison with pluggable equivalence strategies
- Bounded concurrent execution of sync decisions
- Resumable multipart uploads, downloads and copies
- Configuration management and CLI utilities
"""

from .models import (
    Entry,
    ListingResult,
    Location,
    LocationKind,
    OutputOptions,
    ResultKind,
    SyncArgs,
    SyncDecision,
    SyncKind,
    SyncOperation,
    SyncResult,
    SyncType,
)
from .errors import (
    BucketSyncError,
    ComparisonError,
    ConfigurationError,
    InvalidPartError,
    ListingError,
    ObjectNotFoundError,
    StorageServiceError,
    SyncInterruptedError,
    TransferError,
    ValidationError,
)
from .filters import SyncFilter, build_filter
from .listers import EntryLister, LocalEntryLister, RemoteEntryLister
from .strategies import ContentPolicy, DeletePolicy, always_sync
from .comparator import Comparator
from .executor import SyncExecutor
from .multipart import (
    BreakPointRecord,
    CompletePartInfo,
    MultiTaskContent,
    TransferRegistry,
    compute_part_info,
)
from .storage import ObjectStorage
from .transfer import TransferHandler, TransferSettings
from .config import ConfigManager, ServerConfig, StorageClientFactory, StorageConfig
from .commands import BucketSyncCli, parse_location
from .providers.s3 import S3ObjectStorage

__all__ = [
    # Data model
    "Entry",
    "ListingResult",
    "Location",
    "LocationKind",
    "OutputOptions",
    "ResultKind",
    "SyncArgs",
    "SyncDecision",
    "SyncKind",
    "SyncOperation",
    "SyncResult",
    "SyncType",
    # Errors
    "BucketSyncError",
    "ComparisonError",
    "ConfigurationError",
    "InvalidPartError",
    "ListingError",
    "ObjectNotFoundError",
    "StorageServiceError",
    "SyncInterruptedError",
    "TransferError",
    "ValidationError",
    # Sync engine
    "SyncFilter",
    "build_filter",
    "EntryLister",
    "LocalEntryLister",
    "RemoteEntryLister",
    "ContentPolicy",
    "DeletePolicy",
    "always_sync",
    "Comparator",
    "SyncExecutor",
    # Resumable transfers
    "BreakPointRecord",
    "CompletePartInfo",
    "MultiTaskContent",
    "TransferRegistry",
    "compute_part_info",
    "TransferHandler",
    "TransferSettings",
    # Storage and configuration
    "ObjectStorage",
    "S3ObjectStorage",
    "ConfigManager",
    "ServerConfig",
    "StorageClientFactory",
    "StorageConfig",
    # Commands
    "BucketSyncCli",
    "parse_location",
]
