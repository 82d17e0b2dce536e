"""
Tests for the merge-join comparator.

Tests cover:
- One decision per distinct key across both listers
- Transfer, delete and no-op classification
- Directory markers, vanished entries and fatal listing errors
"""

import pytest

from src.bucketsync.comparator import Comparator
from src.bucketsync.errors import ComparisonError, ListingError, ObjectNotFoundError
from src.bucketsync.listers import EntryLister, LocalEntryLister, RemoteEntryLister
from src.bucketsync.models import (
    Entry,
    ListingResult,
    Location,
    LocationKind,
    SyncArgs,
    SyncKind,
    SyncOperation,
    SyncType,
)
from src.bucketsync.strategies import ContentPolicy, DeletePolicy


class StaticLister(EntryLister):
    """Lister replaying a fixed list of results."""

    def __init__(self, results):
        super().__init__()
        self.results = results

    def _generate(self):
        yield from self.results


def entries(*specs):
    return [
        ListingResult.of_entry(Entry(key=key, path=f"data/{key}", size=size, modified_time=mtime))
        for key, size, mtime in specs
    ]


@pytest.fixture
def upload_args():
    return SyncArgs(
        source=Location(LocationKind.LOCAL, "/src/"),
        destination=Location(LocationKind.REMOTE, "s3://bucket/data/", "bucket", "data/"),
        sync_kind=SyncKind.LOCAL_TO_REMOTE,
        delete=True,
    )


def by_key(decisions):
    return {d.key: d.operation for d in decisions}


# ============================================================================
# Tests: Classification
# ============================================================================

class TestComparatorDecisions:
    """Tests for decision classification."""

    def test_mixed_listing(self, upload_args):
        src = StaticLister(entries(("a.txt", 10, 100), ("b.txt", 20, 200)))
        dst = StaticLister(entries(("a.txt", 10, 100), ("c.txt", 5, 300)))
        comparator = Comparator(upload_args, src, dst, delete_policy=DeletePolicy(enabled=True))

        decisions = list(comparator)

        assert by_key(decisions) == {
            "a.txt": SyncOperation.NO_OP,
            "b.txt": SyncOperation.UPLOAD,
            "c.txt": SyncOperation.REMOVE_REMOTE,
        }

    def test_every_key_decided_exactly_once(self, upload_args):
        src_keys = ["a", "b", "d", "f", "g"]
        dst_keys = ["b", "c", "d", "e", "h", "i"]
        src = StaticLister(entries(*[(k, 1, 1) for k in src_keys]))
        dst = StaticLister(entries(*[(k, 1, 1) for k in dst_keys]))

        decisions = list(Comparator(upload_args, src, dst))
        keys = [d.key for d in decisions]

        assert keys == sorted(set(src_keys) | set(dst_keys))

    def test_source_only_destination_path(self, upload_args):
        src = StaticLister(entries(("sub/f.bin", 1, 1)))
        dst = StaticLister([])

        [decision] = list(Comparator(upload_args, src, dst))

        assert decision.operation == SyncOperation.UPLOAD
        assert decision.dst_path == "data/sub/f.bin"

    def test_destination_only_without_delete_is_noop(self, upload_args):
        src = StaticLister([])
        dst = StaticLister(entries(("old", 1, 1)))

        [decision] = list(Comparator(upload_args, src, dst))

        assert decision.operation == SyncOperation.NO_OP

    def test_local_destination_removes_local(self, temp_dir):
        args = SyncArgs(
            source=Location(LocationKind.REMOTE, "s3://bucket/data/", "bucket", "data/"),
            destination=Location(LocationKind.LOCAL, str(temp_dir) + "/"),
            sync_kind=SyncKind.REMOTE_TO_LOCAL,
        )
        src = StaticLister(entries(("new", 1, 1)))
        dst = StaticLister(entries(("stale", 1, 1)))
        comparator = Comparator(args, src, dst, delete_policy=DeletePolicy(enabled=True))

        assert by_key(comparator) == {
            "new": SyncOperation.DOWNLOAD,
            "stale": SyncOperation.REMOVE_LOCAL,
        }

    def test_remote_to_remote_copies(self):
        args = SyncArgs(
            source=Location(LocationKind.REMOTE, "s3://a/x/", "a", "x/"),
            destination=Location(LocationKind.REMOTE, "s3://b/y/", "b", "y/"),
            sync_kind=SyncKind.REMOTE_TO_REMOTE,
        )
        src = StaticLister(entries(("k", 1, 200)))
        dst = StaticLister(entries(("k", 1, 100)))

        assert by_key(Comparator(args, src, dst)) == {"k": SyncOperation.COPY}

    def test_directory_markers_skipped(self, upload_args):
        marker = ListingResult.of_entry(Entry(key="sub/", path="data/sub/", is_dir_marker=True))
        src = StaticLister([marker] + entries(("sub/f", 1, 1)))
        dst = StaticLister([marker])

        assert by_key(Comparator(upload_args, src, dst)) == {"sub/f": SyncOperation.UPLOAD}

    def test_real_listers_agree_on_order(self, temp_dir, make_file, storage):
        for rel in ["a.txt", "a/x", "ab"]:
            make_file(temp_dir / rel, b"x", mtime=100)
            storage.put_bytes("bucket", f"data/{rel}", b"x", modified_time=100)
        args = SyncArgs(
            source=Location(LocationKind.LOCAL, str(temp_dir) + "/"),
            destination=Location(LocationKind.REMOTE, "s3://bucket/data/", "bucket", "data/"),
            sync_kind=SyncKind.LOCAL_TO_REMOTE,
        )
        comparator = Comparator(
            args,
            LocalEntryLister(str(temp_dir)),
            RemoteEntryLister(storage, "bucket", "data/"),
        )

        assert by_key(comparator) == {
            "a.txt": SyncOperation.NO_OP,
            "a/x": SyncOperation.NO_OP,
            "ab": SyncOperation.NO_OP,
        }


# ============================================================================
# Tests: Errors
# ============================================================================

class TestComparatorErrors:
    """Tests for vanished entries and fatal failures."""

    def test_vanished_source_entry_becomes_error_decision(self, upload_args):
        gone = ListingResult.failure(FileNotFoundError("b"), Entry(key="b", path="/src/b"))
        src = StaticLister(entries(("a", 1, 1)) + [gone] + entries(("c", 1, 1)))
        dst = StaticLister([])

        decisions = list(Comparator(upload_args, src, dst))

        assert [d.operation for d in decisions].count(SyncOperation.ERROR) == 1
        assert [d.key for d in decisions if d.operation == SyncOperation.UPLOAD] == ["a", "c"]
        error = next(d for d in decisions if d.operation == SyncOperation.ERROR)
        assert error.src_path == "/src/b"

    def test_checksum_of_vanished_object_becomes_error_decision(self, upload_args):
        def gone(e):
            raise ObjectNotFoundError(e.path)

        policy = ContentPolicy(SyncType.ONLY_CRC32, gone, gone)
        src = StaticLister(entries(("a", 1, 1)))
        dst = StaticLister(entries(("a", 1, 1)))

        [decision] = list(Comparator(upload_args, src, dst, content_policy=policy))

        assert decision.operation == SyncOperation.ERROR
        assert isinstance(decision.error, ObjectNotFoundError)

    def test_fatal_listing_error_raises(self, upload_args):
        src = StaticLister(entries(("a", 1, 1)) + [ListingResult.failure(ListingError("boom"))])
        dst = StaticLister([])
        decisions = Comparator(upload_args, src, dst).decisions()

        assert next(decisions).key == "a"
        with pytest.raises(ComparisonError):
            next(decisions)

    def test_fatal_policy_error_raises(self, upload_args):
        def broken(e):
            raise PermissionError(e.path)

        policy = ContentPolicy(SyncType.ONLY_CRC32, broken, broken)
        src = StaticLister(entries(("a", 1, 1)))
        dst = StaticLister(entries(("a", 1, 1)))

        with pytest.raises(ComparisonError):
            list(Comparator(upload_args, src, dst, content_policy=policy))
