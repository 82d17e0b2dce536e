"""
Entry listers: lazily advancing, key-ordered views of one side of a sync.

Provides:
- EntryLister: the ``next() -> ListingResult`` contract (also iterable)
- LocalEntryLister: depth-first walk of a directory tree in key order
- RemoteEntryLister: paged listing of a bucket prefix

Both listers emit keys in non-decreasing lexicographic order so that two of
them can be merge-joined. Once ``END`` has been returned every further call
returns ``END`` again.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Iterator, Optional, Set

from .errors import ListingError, is_not_exist
from .filters import SyncFilter
from .models import Entry, ListingResult, REMOTE_SEPARATOR, ResultKind, TEMP_FILE_PREFIX
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000


class EntryLister(ABC):
    """Base class for entry listers."""

    def __init__(self):
        self._results: Optional[Iterator[ListingResult]] = None
        self._ended = False
        self._last: Optional[ListingResult] = None

    @abstractmethod
    def _generate(self) -> Iterator[ListingResult]:
        """Yield results; END is appended by ``next``."""
        pass

    def next(self) -> ListingResult:
        """Advance by one entry; returns END forever once exhausted."""
        if self._ended:
            return self._last
        if self._results is None:
            self._results = self._generate()

        result = next(self._results, None)
        if result is None:
            result = ListingResult.end()
        if result.kind == ResultKind.END:
            self._ended = True
            self._last = result
        elif result.kind == ResultKind.ERROR and not is_not_exist(result.error):
            # Fatal listing errors end the iteration after being reported
            self._ended = True
            self._last = ListingResult.end()
        return result

    def __iter__(self) -> Iterator[ListingResult]:
        while True:
            result = self.next()
            if result.kind == ResultKind.END:
                return
            yield result


# ============================================================================
# Local Filesystem
# ============================================================================

class LocalEntryLister(EntryLister):
    """
    Walk a local directory tree in global key order.

    Directory names sort as ``name + "/"`` so that the files of ``a/`` come
    after ``a.txt`` exactly as the object keys ``a.txt`` and ``a/x`` would.
    Directory markers are never emitted.
    """

    def __init__(
        self,
        root: str,
        sync_filter: Optional[SyncFilter] = None,
        follow_symlinks: bool = True,
    ):
        """
        Args:
            root: Directory to walk
            sync_filter: Optional include/exclude filter
            follow_symlinks: Follow symlinked files and directories
        """
        super().__init__()
        self.root = os.path.abspath(root)
        self.sync_filter = sync_filter
        self.follow_symlinks = follow_symlinks
        # realpaths of the directories on the current descent path
        self._ancestors: Set[str] = set()

    def _generate(self) -> Iterator[ListingResult]:
        if not os.path.isdir(self.root):
            logger.debug(f"Local root {self.root} does not exist, nothing to list")
            return
        yield from self._descend(self.root, "")

    def _sorted_children(self, directory: str):
        children = []
        with os.scandir(directory) as it:
            for dirent in it:
                if dirent.name.startswith(TEMP_FILE_PREFIX):
                    continue
                is_link = dirent.is_symlink()
                if is_link and not self.follow_symlinks:
                    logger.debug(f"Skipping symlink {dirent.path}")
                    continue
                try:
                    is_dir = dirent.is_dir(follow_symlinks=True)
                except OSError:
                    is_dir = False
                sort_name = dirent.name + "/" if is_dir else dirent.name
                children.append((sort_name, dirent.name, is_dir, is_link))
        children.sort()
        return children

    def _descend(self, directory: str, key_prefix: str) -> Iterator[ListingResult]:
        """Walk ``directory`` unless it is one of its own ancestors."""
        real = os.path.realpath(directory)
        if real in self._ancestors:
            logger.warning(f"Skipping symlink loop at {directory}")
            return
        self._ancestors.add(real)
        try:
            yield from self._walk(directory, key_prefix)
        finally:
            self._ancestors.discard(real)

    def _walk(self, directory: str, key_prefix: str) -> Iterator[ListingResult]:
        try:
            children = self._sorted_children(directory)
        except FileNotFoundError as e:
            logger.warning(f"Directory vanished while listing: {directory}")
            yield ListingResult.failure(e)
            return
        except OSError as e:
            yield ListingResult.failure(ListingError(f"failed to read directory {directory}: {e}"))
            return

        for _, name, is_dir, is_link in children:
            path = os.path.join(directory, name)
            key = key_prefix + name

            if is_dir:
                if self.sync_filter and self.sync_filter.directory_filtered(path + os.sep):
                    logger.debug(f"Excluded directory {path}")
                    continue
                yield from self._descend(path, key + REMOTE_SEPARATOR)
                continue

            try:
                stat = os.stat(path)
            except FileNotFoundError as e:
                logger.warning(f"File vanished while listing: {path}")
                yield ListingResult.failure(e, Entry(key=key, path=path))
                continue
            except OSError as e:
                yield ListingResult.failure(ListingError(f"failed to stat {path}: {e}"))
                return

            modified_time = int(stat.st_mtime)
            if self.sync_filter and self.sync_filter.filtered(path, modified_time):
                continue

            yield ListingResult.of_entry(Entry(
                key=key,
                path=path,
                size=stat.st_size,
                modified_time=modified_time,
                real_path=os.path.realpath(path) if is_link else path,
            ))


# ============================================================================
# Remote Bucket
# ============================================================================

class RemoteEntryLister(EntryLister):
    """
    Page through ``bucket/prefix`` with page size 1000.

    Keys are reported relative to the directory part of the prefix (the text
    after its last ``/``). The prefix object itself is skipped and keys
    ending in ``/`` come back as DIRECTORY_MARKER.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        bucket: str,
        prefix: str = "",
        sync_filter: Optional[SyncFilter] = None,
        recursive: bool = True,
        single_page: bool = False,
        page_size: int = LIST_PAGE_SIZE,
    ):
        super().__init__()
        self.storage = storage
        self.bucket = bucket
        self.prefix = prefix
        self.sync_filter = sync_filter
        self.recursive = recursive
        self.single_page = single_page
        self.page_size = page_size
        self.trim_pos = prefix.rfind(REMOTE_SEPARATOR) + 1
        self.is_truncated = False
        self.next_token: Optional[str] = None
        self.pages_fetched = 0

    def _entries_of_page(self, listing):
        entries = [
            Entry(
                key=obj.key[self.trim_pos:],
                path=obj.key,
                size=obj.size,
                modified_time=obj.modified_time,
                is_dir_marker=obj.key.endswith(REMOTE_SEPARATOR),
                storage_class=obj.storage_class,
            )
            for obj in listing.contents
        ]
        entries.extend(
            Entry(key=p[self.trim_pos:], path=p, is_dir_marker=True)
            for p in listing.common_prefixes
        )
        if listing.common_prefixes:
            entries.sort(key=lambda e: e.key)
        return entries

    def _generate(self) -> Iterator[ListingResult]:
        token = None
        while True:
            try:
                listing = self.storage.list_objects(
                    self.bucket,
                    prefix=self.prefix,
                    delimiter="" if self.recursive else REMOTE_SEPARATOR,
                    continuation_token=token,
                    max_keys=self.page_size,
                )
            except Exception as e:
                logger.error(f"Failed to list s3://{self.bucket}/{self.prefix}: {e}")
                yield ListingResult.failure(
                    ListingError(f"failed to list s3://{self.bucket}/{self.prefix}: {e}")
                )
                return

            self.pages_fetched += 1
            self.is_truncated = listing.is_truncated
            self.next_token = listing.next_token

            for entry in self._entries_of_page(listing):
                if not entry.key:
                    continue
                if entry.is_dir_marker:
                    yield ListingResult.of_entry(entry)
                    continue
                if self.sync_filter and self.sync_filter.filtered(
                    f"{self.bucket}/{entry.path}", entry.modified_time
                ):
                    continue
                yield ListingResult.of_entry(entry)

            if not listing.is_truncated or not listing.next_token or self.single_page:
                break
            token = listing.next_token

        yield ListingResult.end(is_truncated=self.is_truncated, next_token=self.next_token)
