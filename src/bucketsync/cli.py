"""
Command-line interface for bucketsync.

Usage:
    bucketsync ls s3://my-bucket/raw/ --recursive
    bucketsync cp data/report.csv s3://my-bucket/reports/
    bucketsync cp s3://my-bucket/raw/ data/raw/ --recursive
    bucketsync sync data/ s3://my-bucket/data/ --delete --yes
    bucketsync sync s3://my-bucket/data/ s3://backup-bucket/data/ --sync-type time-size-crc32
    bucketsync gen-signed-url s3://my-bucket/reports/q3.pdf --expires 3600
"""

import argparse
import atexit
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .commands import BucketSyncCli
from .config import ConfigManager, StorageClientFactory
from .errors import BucketSyncError, SyncInterruptedError
from .models import OutputOptions, SyncType
from .multipart import TransferRegistry

logger = logging.getLogger(__name__)


def confirm(prompt: str) -> bool:
    """Ask a yes/no question on the terminal; non-interactive sessions answer no."""
    if not sys.stdin.isatty():
        return False
    answer = input(f"{prompt} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def build_cli(args) -> BucketSyncCli:
    config = ConfigManager.from_config_file(args.config)
    storage = StorageClientFactory.create(config.storage)
    registry = TransferRegistry()
    # Interrupted multipart transfers keep their progress for the next run
    atexit.register(registry.flush_all)
    output = OutputOptions(quiet=args.quiet, disable_bar=args.disable_bar)
    return BucketSyncCli(config, storage, output=output, registry=registry)


def list_command(args) -> int:
    """Execute list command."""
    cli = build_cli(args)
    cli.list(args.path or "", recursive=args.recursive, all_pages=args.all)
    return 0


def make_bucket_command(args) -> int:
    """Execute make-bucket command."""
    cli = build_cli(args)
    cli.make_bucket(args.path, region=args.region)
    return 0


def remove_bucket_command(args) -> int:
    """Execute remove-bucket command."""
    yes = args.yes or confirm(f"Delete bucket {args.path}{' and all its objects' if args.force else ''}?")
    if not yes:
        print("Aborted.")
        return 1
    cli = build_cli(args)
    cli.remove_bucket(args.path, force=args.force, yes=True)
    return 0


def remove_object_command(args) -> int:
    """Execute remove command."""
    yes = args.yes or not args.recursive or confirm(f"Delete all objects under {args.path}?")
    if not yes:
        print("Aborted.")
        return 1
    cli = build_cli(args)
    cli.remove_object(args.path, recursive=args.recursive, yes=True)
    return 0


def copy_command(args) -> int:
    """Execute copy command."""
    cli = build_cli(args)
    result = cli.copy(
        args.src,
        args.dst,
        recursive=args.recursive,
        restart=args.restart,
        storage_class=args.storage_class,
        concurrency=args.concurrency,
        download_tmp_dir=args.tmp_dir,
        exclude=args.exclude or (),
        include=args.include or (),
    )
    return 0 if result.failed == 0 else 1


def sync_command(args) -> int:
    """Execute sync command."""
    yes = args.yes
    if args.delete and not args.dry_run and not yes:
        if args.exclude or args.include or args.exclude_time or args.include_time:
            prompt = (
                f"Filters only select source files; files in {args.dst} that are not in "
                f"the filtered source will be deleted. Continue?"
            )
        else:
            prompt = f"Files in {args.dst} that are not in {args.src} will be deleted. Continue?"
        yes = confirm(prompt)
        if not yes:
            print("Aborted.")
            return 1

    cli = build_cli(args)
    result = cli.sync(
        args.src,
        args.dst,
        delete=args.delete,
        dry_run=args.dry_run,
        concurrency=args.concurrency,
        multipart_threads=args.multipart_threads,
        sync_type=args.sync_type,
        storage_class=args.storage_class,
        restart=args.restart,
        download_tmp_dir=args.tmp_dir,
        exclude=args.exclude or (),
        include=args.include or (),
        exclude_time=args.exclude_time or (),
        include_time=args.include_time or (),
        exclude_delete=args.exclude_delete or (),
        follow_symlinks=not args.no_follow_symlinks,
        yes=yes,
    )
    return 0 if result.failed == 0 else 1


def gen_signed_url_command(args) -> int:
    """Execute gen-signed-url command."""
    cli = build_cli(args)
    cli.gen_signed_url(args.path, expires=args.expires)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bucketsync",
        description="Synchronize local directories and S3-compatible object storage",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: ~/.bucketsync/config.yaml, then environment)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print errors")
    parser.add_argument("--disable-bar", action="store_true", help="Hide progress bars")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # List command
    ls = subparsers.add_parser("ls", help="List buckets or objects")
    ls.add_argument("path", nargs="?", help="s3://bucket[/prefix]; omit to list buckets")
    ls.add_argument("--recursive", "-r", action="store_true", help="List all keys under the prefix")
    ls.add_argument("--all", "-a", action="store_true", help="List every page, not only the first 1000 keys")
    ls.set_defaults(func=list_command)

    # Bucket commands
    mb = subparsers.add_parser("mb", help="Make a bucket")
    mb.add_argument("path", help="s3://bucket")
    mb.add_argument("--region", help="Region of the new bucket")
    mb.set_defaults(func=make_bucket_command)

    rb = subparsers.add_parser("rb", help="Remove a bucket")
    rb.add_argument("path", help="s3://bucket")
    rb.add_argument("--force", action="store_true", help="Delete all objects first")
    rb.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    rb.set_defaults(func=remove_bucket_command)

    # Remove command
    rm = subparsers.add_parser("rm", help="Remove objects")
    rm.add_argument("path", help="s3://bucket/key or s3://bucket/prefix with --recursive")
    rm.add_argument("--recursive", "-r", action="store_true", help="Remove every object under the prefix")
    rm.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    rm.set_defaults(func=remove_object_command)

    # Copy command
    cp = subparsers.add_parser("cp", help="Copy files or objects")
    cp.add_argument("src", help="Local path or s3://bucket/key")
    cp.add_argument("dst", help="Local path or s3://bucket/key")
    cp.add_argument("--recursive", "-r", action="store_true", help="Copy a whole directory or prefix")
    cp.add_argument("--restart", action="store_true", help="Ignore breakpoint records of earlier attempts")
    cp.add_argument("--storage-class", help="Storage class of new objects")
    cp.add_argument("--concurrency", type=int, default=0, help="Files in flight (0 = config default)")
    cp.add_argument("--tmp-dir", help="Directory for partial downloads")
    cp.add_argument("--exclude", nargs="+", help="Patterns to exclude")
    cp.add_argument("--include", nargs="+", help="Patterns to include")
    cp.set_defaults(func=copy_command)

    # Sync command
    sync = subparsers.add_parser("sync", help="Make a destination mirror a source")
    sync.add_argument("src", help="Local directory or s3://bucket/prefix")
    sync.add_argument("dst", help="Local directory or s3://bucket/prefix")
    sync.add_argument("--delete", action="store_true", help="Delete destination files absent at the source")
    sync.add_argument("--yes", "-y", action="store_true", help="Do not ask before deleting")
    sync.add_argument("--dry-run", action="store_true", help="Print actions without performing them")
    sync.add_argument("--concurrency", type=int, default=0, help="Files in flight (0 = config default)")
    sync.add_argument("--multipart-threads", type=int, default=0, help="Parts in flight per file (0 = config default)")
    sync.add_argument(
        "--sync-type",
        choices=[t.value for t in SyncType],
        default=SyncType.TIME_SIZE.value,
        help="How files present on both sides are compared",
    )
    sync.add_argument("--storage-class", help="Storage class of new objects")
    sync.add_argument("--restart", action="store_true", help="Ignore breakpoint records of earlier attempts")
    sync.add_argument("--tmp-dir", help="Directory for partial downloads")
    sync.add_argument("--exclude", nargs="+", help="Patterns to exclude")
    sync.add_argument("--include", nargs="+", help="Patterns to include")
    sync.add_argument("--exclude-time", nargs="+", help="'start,end' mtime ranges to exclude")
    sync.add_argument("--include-time", nargs="+", help="'start,end' mtime ranges to include")
    sync.add_argument("--exclude-delete", nargs="+", help="Destination patterns never deleted")
    sync.add_argument("--no-follow-symlinks", action="store_true", help="Skip symlinks in local sources")
    sync.set_defaults(func=sync_command)

    # Signed URL command
    url = subparsers.add_parser("gen-signed-url", help="Generate a presigned GET URL")
    url.add_argument("path", help="s3://bucket/key")
    url.add_argument("--expires", type=int, default=1800, help="Seconds the URL stays valid")
    url.set_defaults(func=gen_signed_url_command)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except SyncInterruptedError as e:
        logger.error(f"{e}")
        return 1
    except BucketSyncError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
