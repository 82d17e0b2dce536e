"""
Merge-join of a source and a destination listing into sync decisions.
"""

import logging
from collections import deque
from typing import Deque, Iterator, Optional

from .errors import ComparisonError, is_not_exist
from .listers import EntryLister
from .models import (
    Entry,
    ListingResult,
    ResultKind,
    SyncArgs,
    SyncDecision,
    SyncKind,
    SyncOperation,
)
from .strategies import ContentPolicy, DeletePolicy, always_sync

logger = logging.getLogger(__name__)

TRANSFER_OPERATIONS = {
    SyncKind.LOCAL_TO_REMOTE: SyncOperation.UPLOAD,
    SyncKind.REMOTE_TO_LOCAL: SyncOperation.DOWNLOAD,
    SyncKind.REMOTE_TO_REMOTE: SyncOperation.COPY,
}


class Comparator:
    """
    Walk two key-ordered listers in lockstep and classify every key.

    Each distinct key produces exactly one decision:

    - key on both sides: the content policy decides transfer or no-op
    - key only at the source: always transferred
    - key only at the destination: removed when the delete policy says so

    Directory markers are skipped. Vanished entries become ``error``
    decisions and the merge continues; any other failure raises
    ComparisonError out of :meth:`decisions`.
    """

    def __init__(
        self,
        args: SyncArgs,
        src_lister: EntryLister,
        dst_lister: EntryLister,
        content_policy: Optional[ContentPolicy] = None,
        delete_policy: Optional[DeletePolicy] = None,
    ):
        self.args = args
        self.src_lister = src_lister
        self.dst_lister = dst_lister
        self.content_policy = content_policy or ContentPolicy(args.sync_type)
        self.delete_policy = delete_policy or DeletePolicy(enabled=False)
        self.transfer_operation = TRANSFER_OPERATIONS[args.sync_kind]
        self.delete_operation = (
            SyncOperation.REMOVE_LOCAL if args.destination.is_local else SyncOperation.REMOVE_REMOTE
        )
        self._pending: Deque[SyncDecision] = deque()

    def __iter__(self) -> Iterator[SyncDecision]:
        return self.decisions()

    def _pull(self, lister: EntryLister, side: str) -> ListingResult:
        while True:
            result = lister.next()
            if result.kind == ResultKind.DIRECTORY_MARKER:
                continue
            if result.kind == ResultKind.ERROR:
                if is_not_exist(result.error):
                    self._pending.append(self._vanished(result.entry, result.error, side))
                    continue
                raise ComparisonError(f"listing {side} failed: {result.error}") from result.error
            return result

    def _vanished(self, entry: Optional[Entry], error: BaseException, side: str) -> SyncDecision:
        key = entry.key if entry else None
        path = entry.path if entry else None
        if side == "source":
            return SyncDecision(SyncOperation.ERROR, src_key=key, src_path=path, source_entry=entry, error=error)
        return SyncDecision(SyncOperation.ERROR, dst_key=key, dst_path=path, dest_entry=entry, error=error)

    def _both_sides(self, src: Entry, dst: Entry) -> SyncDecision:
        try:
            transfer = self.content_policy.should_transfer(src, dst)
        except Exception as e:
            if is_not_exist(e):
                return SyncDecision(
                    SyncOperation.ERROR,
                    src_key=src.key, dst_key=dst.key,
                    src_path=src.path, dst_path=dst.path,
                    source_entry=src, dest_entry=dst, error=e,
                )
            raise ComparisonError(f"comparing {src.key} failed: {e}") from e

        return SyncDecision(
            self.transfer_operation if transfer else SyncOperation.NO_OP,
            src_key=src.key,
            dst_key=dst.key,
            src_path=src.path,
            dst_path=dst.path,
            source_entry=src,
            dest_entry=dst,
        )

    def _source_only(self, src: Entry) -> SyncDecision:
        operation = self.transfer_operation if always_sync(src) else SyncOperation.NO_OP
        return SyncDecision(
            operation,
            src_key=src.key,
            dst_key=src.key,
            src_path=src.path,
            dst_path=self.args.destination.child_path(src.key),
            source_entry=src,
        )

    def _destination_only(self, dst: Entry) -> SyncDecision:
        operation = self.delete_operation if self.delete_policy.should_delete(dst) else SyncOperation.NO_OP
        return SyncDecision(operation, dst_key=dst.key, dst_path=dst.path, dest_entry=dst)

    def decisions(self) -> Iterator[SyncDecision]:
        """Yield one decision per distinct key until both listers end."""
        src = dst = None
        take_src = take_dst = True
        compared = 0

        while True:
            if take_src:
                src = self._pull(self.src_lister, "source")
            if take_dst:
                dst = self._pull(self.dst_lister, "destination")
            while self._pending:
                yield self._pending.popleft()

            src_end = src.kind == ResultKind.END
            dst_end = dst.kind == ResultKind.END
            if src_end and dst_end:
                break

            if not src_end and not dst_end and src.entry.key == dst.entry.key:
                decision = self._both_sides(src.entry, dst.entry)
                take_src = take_dst = True
            elif dst_end or (not src_end and src.entry.key < dst.entry.key):
                decision = self._source_only(src.entry)
                take_src, take_dst = True, False
            else:
                decision = self._destination_only(dst.entry)
                take_src, take_dst = False, True

            compared += 1
            yield decision

        logger.info(f"Compared {compared} keys")
