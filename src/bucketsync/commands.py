"""
User-facing commands.

Provides:
- parse_location: ``s3://bucket/key`` or a local path into a Location
- BucketSyncCli: list, make_bucket, remove_bucket, remove_object, copy,
  sync and gen_signed_url, each validating its arguments before any I/O
"""

import logging
import os
from functools import partial
from typing import Iterable, Iterator, List, Optional, Sequence

from .comparator import Comparator, TRANSFER_OPERATIONS
from .config import ServerConfig
from .errors import SyncInterruptedError, ValidationError
from .executor import SyncExecutor
from .filters import build_filter
from .listers import EntryLister, LocalEntryLister, RemoteEntryLister
from .models import (
    REMOTE_PATH_PREFIX,
    REMOTE_SEPARATOR,
    Entry,
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
from .multipart import TransferRegistry
from .storage import ObjectStorage
from .strategies import ContentPolicy, DeletePolicy, crc32_reader
from .transfer import TransferHandler, TransferSettings

logger = logging.getLogger(__name__)


def is_remote_path(path: str) -> bool:
    return path.startswith(REMOTE_PATH_PREFIX)


def parse_location(path: str, as_directory: bool = False) -> Location:
    """
    Parse a command-line path.

    Args:
        path: ``s3://bucket[/key]`` or a local path
        as_directory: Make the path end with a separator

    Raises:
        ValidationError: If a remote path has no bucket
    """
    if is_remote_path(path):
        bucket, _, key = path[len(REMOTE_PATH_PREFIX):].partition(REMOTE_SEPARATOR)
        if not bucket:
            raise ValidationError(f"no bucket in path '{path}'")
        if as_directory and key and not key.endswith(REMOTE_SEPARATOR):
            key += REMOTE_SEPARATOR
        return Location(
            kind=LocationKind.REMOTE,
            path=f"{REMOTE_PATH_PREFIX}{bucket}/{key}",
            bucket=bucket,
            key=key,
        )

    if not path:
        raise ValidationError("local path must not be empty")
    local = os.path.abspath(os.path.expanduser(path))
    if as_directory and not local.endswith(os.sep):
        local += os.sep
    return Location(kind=LocationKind.LOCAL, path=local)


def sync_kind_of(source: Location, destination: Location) -> SyncKind:
    if source.is_local and destination.is_local:
        raise ValidationError("source and destination cannot both be local paths")
    if source.is_local:
        return SyncKind.LOCAL_TO_REMOTE
    if destination.is_local:
        return SyncKind.REMOTE_TO_LOCAL
    return SyncKind.REMOTE_TO_REMOTE


class BucketSyncCli:
    """One method per command; printing goes through ``output``."""

    def __init__(
        self,
        config: ServerConfig,
        storage: ObjectStorage,
        output: Optional[OutputOptions] = None,
        registry: Optional[TransferRegistry] = None,
    ):
        self.config = config
        self.storage = storage
        self.output = output or OutputOptions()
        self.registry = registry if registry is not None else TransferRegistry()

    def _handler(self, **overrides) -> TransferHandler:
        settings = TransferSettings.from_config(self.config, **overrides)
        return TransferHandler(self.storage, settings, self.registry, self.output)

    def _lister(
        self,
        location: Location,
        sync_filter=None,
        follow_symlinks: bool = True,
    ) -> EntryLister:
        if location.is_local:
            return LocalEntryLister(location.path, sync_filter, follow_symlinks=follow_symlinks)
        return RemoteEntryLister(self.storage, location.bucket, location.key, sync_filter)

    # ------------------------------------------------------------------
    # sync
    # ------------------------------------------------------------------

    def build_sync_args(
        self,
        src: str,
        dst: str,
        delete: bool = False,
        dry_run: bool = False,
        concurrency: int = 0,
        multipart_threads: int = 0,
        sync_type: str = SyncType.TIME_SIZE.value,
        storage_class: Optional[str] = None,
        restart: bool = False,
        download_tmp_dir: Optional[str] = None,
        exclude: Sequence[str] = (),
        include: Sequence[str] = (),
        exclude_time: Sequence[str] = (),
        include_time: Sequence[str] = (),
        exclude_delete: Sequence[str] = (),
        follow_symlinks: bool = True,
        yes: bool = False,
    ) -> SyncArgs:
        """
        Validate sync arguments into a SyncArgs.

        Raises:
            ValidationError: On any invalid combination, before any I/O
        """
        if exclude and include:
            raise ValidationError("--exclude and --include cannot be used together")
        if exclude_time and include_time:
            raise ValidationError("--exclude-time and --include-time cannot be used together")
        if exclude_delete and not delete:
            raise ValidationError("--exclude-delete requires --delete")

        source = parse_location(src, as_directory=True)
        destination = parse_location(dst, as_directory=True)
        kind = sync_kind_of(source, destination)

        if source.is_local and not os.path.isdir(source.path):
            if os.path.exists(source.path.rstrip(os.sep)):
                raise ValidationError(f"local source {src} is not a directory")
            raise ValidationError(f"local source {src} does not exist")
        if destination.is_local and os.path.exists(destination.path.rstrip(os.sep)) \
                and not os.path.isdir(destination.path):
            raise ValidationError(f"local destination {dst} is not a directory")
        if download_tmp_dir and os.path.exists(download_tmp_dir) and not os.path.isdir(download_tmp_dir):
            raise ValidationError(f"download temp dir {download_tmp_dir} is not a directory")

        if concurrency < 0:
            raise ValidationError(f"concurrency must not be negative, got {concurrency}")
        if multipart_threads < 0:
            raise ValidationError(f"multipart thread number must not be negative, got {multipart_threads}")

        try:
            parsed_type = SyncType(sync_type or SyncType.TIME_SIZE.value)
        except ValueError:
            raise ValidationError(f"Unknown sync type: {sync_type}")

        if delete and not dry_run and not yes:
            raise ValidationError("deleting destination files must be confirmed")

        # Surface malformed time ranges now rather than mid-listing
        build_filter(exclude_time=exclude_time, include_time=include_time)

        return SyncArgs(
            source=source,
            destination=destination,
            sync_kind=kind,
            concurrency=concurrency or self.config.sync_processing_num,
            multipart_threads=multipart_threads or self.config.multi_upload_thread_num,
            delete=delete,
            dry_run=dry_run,
            sync_type=parsed_type,
            storage_class=storage_class or self.config.storage_class,
            restart=restart,
            download_tmp_dir=download_tmp_dir,
            exclude=tuple(exclude),
            include=tuple(include),
            exclude_time=tuple(exclude_time),
            include_time=tuple(include_time),
            exclude_delete=tuple(exclude_delete),
            follow_symlinks=follow_symlinks,
        )

    def build_comparator(self, args: SyncArgs) -> Comparator:
        """Wire listers and policies for ``args``."""
        src_filter = build_filter(
            exclude=args.exclude,
            include=args.include,
            exclude_time=args.exclude_time,
            include_time=args.include_time,
            local_root=args.source.path if args.source.is_local else None,
        )
        src_lister = self._lister(args.source, src_filter, args.follow_symlinks)
        dst_lister = self._lister(args.destination, None, args.follow_symlinks)

        if args.sync_type == SyncType.TIME_SIZE:
            content_policy = ContentPolicy(args.sync_type)
        else:
            content_policy = ContentPolicy(
                args.sync_type,
                src_crc32=crc32_reader(args.source, self.storage),
                dst_crc32=crc32_reader(args.destination, self.storage),
            )

        delete_filter = build_filter(
            exclude=args.exclude_delete,
            local_root=args.destination.path if args.destination.is_local else None,
        )
        delete_policy = DeletePolicy(args.delete, args.destination, delete_filter)
        return Comparator(args, src_lister, dst_lister, content_policy, delete_policy)

    def run_sync(self, args: SyncArgs) -> SyncResult:
        """Execute a validated sync."""
        if args.delete and args.has_filters:
            logger.warning(
                "Filters only apply to the source: destination files outside the "
                "filtered set will be deleted unless covered by --exclude-delete"
            )

        handler = self._handler(
            multipart_threads=args.multipart_threads,
            download_tmp_dir=args.download_tmp_dir,
        )
        executor = SyncExecutor(
            partial(handler.perform_decision, args),
            concurrency=args.concurrency,
            dry_run=args.dry_run,
            args=args,
            output=self.output,
        )
        logger.info(
            f"Syncing {args.source.path} to {args.destination.path} "
            f"({args.sync_type.value}, concurrency={args.concurrency}, delete={args.delete})"
        )
        result = executor.run(self.build_comparator(args))

        self.output.echo(
            f"Sync done: {args.source.path} to {args.destination.path}, "
            f"[{result.succeeded}] success, [{result.failed}] failure"
        )
        if result.error is not None:
            raise SyncInterruptedError(f"sync interrupted: {result.error}", result)
        return result

    def sync(self, src: str, dst: str, **options) -> SyncResult:
        """
        Make ``dst`` mirror ``src``.

        Keyword options are those of :meth:`build_sync_args`.

        Raises:
            ValidationError: On invalid arguments
            SyncInterruptedError: When listing or comparison fails mid-way
        """
        return self.run_sync(self.build_sync_args(src, dst, **options))

    # ------------------------------------------------------------------
    # copy
    # ------------------------------------------------------------------

    def _copy_decisions(self, args: SyncArgs, lister: EntryLister) -> Iterator[SyncDecision]:
        operation = TRANSFER_OPERATIONS[args.sync_kind]
        for result in lister:
            if result.kind == ResultKind.DIRECTORY_MARKER:
                continue
            if result.kind == ResultKind.ERROR:
                entry = result.entry
                yield SyncDecision(
                    SyncOperation.ERROR,
                    src_key=entry.key if entry else None,
                    src_path=entry.path if entry else None,
                    source_entry=entry,
                    error=result.error,
                )
                continue
            entry = result.entry
            yield SyncDecision(
                operation,
                src_key=entry.key,
                dst_key=entry.key,
                src_path=entry.path,
                dst_path=args.destination.child_path(entry.key),
                source_entry=entry,
            )

    def copy(
        self,
        src: str,
        dst: str,
        recursive: bool = False,
        restart: bool = False,
        storage_class: Optional[str] = None,
        concurrency: int = 0,
        download_tmp_dir: Optional[str] = None,
        exclude: Sequence[str] = (),
        include: Sequence[str] = (),
    ) -> SyncResult:
        """
        Copy one file/object, or a whole tree with ``recursive``.

        Raises:
            ValidationError: On invalid arguments
            SyncInterruptedError: When a recursive listing fails mid-way
        """
        if exclude and include:
            raise ValidationError("--exclude and --include cannot be used together")
        if (exclude or include) and not recursive:
            raise ValidationError("--exclude/--include require --recursive")
        if concurrency < 0:
            raise ValidationError(f"concurrency must not be negative, got {concurrency}")

        if recursive:
            source = parse_location(src, as_directory=True)
            destination = parse_location(dst, as_directory=True)
            kind = sync_kind_of(source, destination)
            if source.is_local and not os.path.isdir(source.path):
                raise ValidationError(f"local source {src} is not a directory")
            args = SyncArgs(
                source=source,
                destination=destination,
                sync_kind=kind,
                concurrency=concurrency or self.config.sync_processing_num,
                multipart_threads=self.config.multi_upload_thread_num,
                storage_class=storage_class or self.config.storage_class,
                restart=restart,
                download_tmp_dir=download_tmp_dir,
                exclude=tuple(exclude),
                include=tuple(include),
            )
            src_filter = build_filter(
                exclude=exclude, include=include,
                local_root=source.path if source.is_local else None,
            )
            handler = self._handler(download_tmp_dir=download_tmp_dir)
            executor = SyncExecutor(
                partial(handler.perform_decision, args),
                concurrency=args.concurrency,
                args=args,
                output=self.output,
            )
            result = executor.run(self._copy_decisions(args, self._lister(source, src_filter)))
            self.output.echo(
                f"Copy done: {source.path} to {destination.path}, "
                f"[{result.succeeded}] success, [{result.failed}] failure"
            )
            if result.error is not None:
                raise SyncInterruptedError(f"copy interrupted: {result.error}", result)
            return result

        return self._copy_single(src, dst, restart, storage_class or self.config.storage_class, download_tmp_dir)

    def _copy_single(
        self,
        src: str,
        dst: str,
        restart: bool,
        storage_class: Optional[str],
        download_tmp_dir: Optional[str],
    ) -> SyncResult:
        source = parse_location(src)
        destination = parse_location(dst)
        kind = sync_kind_of(source, destination)
        handler = self._handler(download_tmp_dir=download_tmp_dir)
        result = SyncResult()

        if kind == SyncKind.LOCAL_TO_REMOTE:
            if not os.path.isfile(source.path):
                raise ValidationError(f"local source {src} is not a file (use --recursive for directories)")
            key = destination.key
            if not key or key.endswith(REMOTE_SEPARATOR):
                key += os.path.basename(source.path)
            handler.upload_file(source.path, destination.bucket, key, restart=restart, storage_class=storage_class)
            self.output.echo(f"Upload: {source.path} to {destination.display(key)}")

        elif kind == SyncKind.REMOTE_TO_LOCAL:
            if not source.key or source.key.endswith(REMOTE_SEPARATOR):
                raise ValidationError(f"source {src} is not an object (use --recursive for prefixes)")
            target = destination.path
            if os.path.isdir(target) or dst.endswith(("/", os.sep)):
                target = os.path.join(target, os.path.basename(source.key))
            handler.download_object(source.bucket, source.key, target, restart=restart)
            self.output.echo(f"Download: {source.path} to {target}")

        else:
            if not source.key or source.key.endswith(REMOTE_SEPARATOR):
                raise ValidationError(f"source {src} is not an object (use --recursive for prefixes)")
            key = destination.key
            if not key or key.endswith(REMOTE_SEPARATOR):
                key += os.path.basename(source.key)
            handler.copy_object(
                source.bucket, source.key, destination.bucket, key,
                restart=restart, storage_class=storage_class,
            )
            self.output.echo(f"Copy: {source.path} to {destination.display(key)}")

        result.succeeded = 1
        return result

    # ------------------------------------------------------------------
    # list / buckets / objects
    # ------------------------------------------------------------------

    def list(self, path: str = "", recursive: bool = False, all_pages: bool = False) -> List[Entry]:
        """
        List buckets (no path) or the objects under ``s3://bucket/prefix``.

        Without ``all_pages`` only the first page of 1000 keys is listed.
        """
        if not path or path.rstrip("/") in (REMOTE_PATH_PREFIX.rstrip("/"), "s3:"):
            buckets = self.storage.list_buckets()
            for bucket in buckets:
                self.output.echo(f"  {bucket.name}")
            return [Entry(key=b.name, path=b.name, modified_time=b.created or 0) for b in buckets]

        location = parse_location(path)
        if location.is_local:
            raise ValidationError("list only accepts s3:// paths")

        lister = RemoteEntryLister(
            self.storage, location.bucket, location.key,
            recursive=recursive, single_page=not all_pages,
        )
        entries: List[Entry] = []
        for result in lister:
            if result.kind == ResultKind.ERROR:
                raise result.error
            entry = result.entry
            entries.append(entry)
            if entry.is_dir_marker:
                self.output.echo(f"  {'PRE':>38} {entry.path}")
            else:
                self.output.echo(
                    f"  {entry.modified_time:>12} {entry.size:>14} "
                    f"{entry.storage_class or '':<10} {entry.path}"
                )
        if lister.is_truncated and not all_pages:
            self.output.echo("  ... more objects, use --all to list everything")
        return entries

    def make_bucket(self, path: str, region: Optional[str] = None) -> None:
        location = parse_location(path)
        if location.is_local or location.key:
            raise ValidationError(f"'{path}' is not a bucket path (s3://bucket)")
        self.storage.create_bucket(location.bucket, region)
        self.output.echo(f"Make bucket: {location.bucket}")

    def _all_keys(self, bucket: str, prefix: str) -> Iterable[str]:
        for result in RemoteEntryLister(self.storage, bucket, prefix):
            if result.kind == ResultKind.ERROR:
                raise result.error
            yield result.entry.path

    def remove_bucket(self, path: str, force: bool = False, yes: bool = False) -> None:
        """Delete a bucket; with ``force`` its objects are deleted first."""
        location = parse_location(path)
        if location.is_local or location.key:
            raise ValidationError(f"'{path}' is not a bucket path (s3://bucket)")
        if not yes:
            raise ValidationError(f"removing bucket {location.bucket} must be confirmed")
        if force:
            keys = list(self._all_keys(location.bucket, ""))
            failed = self.storage.delete_objects(location.bucket, keys) if keys else []
            if failed:
                raise ValidationError(f"{len(failed)} objects could not be deleted, bucket kept")
        self.storage.delete_bucket(location.bucket)
        self.output.echo(f"Remove bucket: {location.bucket}")

    def remove_object(self, path: str, recursive: bool = False, yes: bool = False) -> int:
        """Delete one object, or every object under a prefix. Returns the count."""
        location = parse_location(path)
        if location.is_local:
            raise ValidationError("remove only accepts s3:// paths")

        if not recursive:
            if not location.key or location.key.endswith(REMOTE_SEPARATOR):
                raise ValidationError(f"'{path}' is not an object (use --recursive for prefixes)")
            self.storage.delete_object(location.bucket, location.key)
            self.output.echo(f"Delete: {location.path}")
            return 1

        if not yes:
            raise ValidationError(f"removing everything under {location.path} must be confirmed")
        keys = list(self._all_keys(location.bucket, location.key))
        failed = self.storage.delete_objects(location.bucket, keys) if keys else []
        deleted = len(keys) - len(failed)
        self.output.echo(f"Delete done: {location.path}, [{deleted}] success, [{len(failed)}] failure")
        return deleted

    def gen_signed_url(self, path: str, expires: int = 1800) -> str:
        location = parse_location(path)
        if location.is_local or not location.key:
            raise ValidationError(f"'{path}' is not an object path (s3://bucket/key)")
        if expires <= 0:
            raise ValidationError(f"expiration must be positive, got {expires}")
        url = self.storage.generate_presigned_url(location.bucket, location.key, expires)
        self.output.echo(url)
        return url
