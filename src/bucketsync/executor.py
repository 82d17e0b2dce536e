"""
Concurrent execution of a sync decision stream.

Decisions are pulled one at a time; each accepted decision waits for a free
slot of a bounded pool, then runs on its own worker thread. Workers report
outcomes through a queue to a single aggregator thread, which owns the
counts. All workers are joined before the counts are returned.
"""

import logging
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .errors import is_not_exist
from .models import OutputOptions, SyncArgs, SyncDecision, SyncOperation, SyncResult

logger = logging.getLogger(__name__)

_DONE = object()

OPERATION_VERBS = {
    SyncOperation.UPLOAD: "Upload",
    SyncOperation.DOWNLOAD: "Download",
    SyncOperation.COPY: "Copy",
    SyncOperation.REMOVE_REMOTE: "Remove",
    SyncOperation.REMOVE_LOCAL: "Delete",
}


class SyncExecutor:
    """Run decisions under a concurrency bound and count the outcomes."""

    def __init__(
        self,
        perform: Callable[[SyncDecision], None],
        concurrency: int = 10,
        dry_run: bool = False,
        args: Optional[SyncArgs] = None,
        output: Optional[OutputOptions] = None,
        on_progress: Optional[Callable[[SyncResult], None]] = None,
    ):
        """
        Args:
            perform: Carries out one transfer or delete; raises on failure
            concurrency: Maximum number of operations in flight
            dry_run: Print what would be done without dispatching anything
            args: Sync arguments, used to render full paths in messages
            output: Output switches for per-operation messages
            on_progress: Called by the aggregator after every counted outcome
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.perform = perform
        self.concurrency = concurrency
        self.dry_run = dry_run
        self.args = args
        self.output = output or OutputOptions()
        self.on_progress = on_progress

    def describe(self, decision: SyncDecision) -> str:
        """Human-readable one-line description of a decision."""
        verb = OPERATION_VERBS.get(decision.operation, decision.operation.value)
        src = decision.src_path
        dst = decision.dst_path
        if self.args is not None:
            if src is not None:
                src = self.args.source.display(src)
            if dst is not None:
                dst = self.args.destination.display(dst)
        if decision.operation.is_delete:
            return f"{verb}: {dst}"
        return f"{verb}: {src} to {dst}"

    def _aggregate(self, outcomes: "queue.Queue", result: SyncResult) -> None:
        while True:
            outcome = outcomes.get()
            if outcome is _DONE:
                return
            if outcome:
                result.succeeded += 1
            else:
                result.failed += 1
            if self.on_progress is not None:
                try:
                    self.on_progress(result)
                except Exception as e:
                    logger.warning(f"Progress callback failed: {e}")

    def _run_one(
        self,
        decision: SyncDecision,
        slots: threading.BoundedSemaphore,
        outcomes: "queue.Queue",
    ) -> None:
        description = self.describe(decision)
        try:
            self.perform(decision)
        except Exception as e:
            if is_not_exist(e):
                path = decision.src_path or decision.dst_path or decision.key
                logger.warning(f"Failed: {path}. It may have been deleted! ({e})")
            else:
                logger.error(f"Failed: {description}: {e}")
            outcomes.put(False)
        else:
            self.output.echo(description)
            outcomes.put(True)
        finally:
            slots.release()

    def _rejected(self, decision: SyncDecision) -> Optional[str]:
        """Reason a decision cannot run at all, or None."""
        if decision.operation == SyncOperation.DOWNLOAD and decision.dst_path and os.path.isdir(decision.dst_path):
            return "destination is a folder instead of a file"
        return None

    def run(self, decisions: Iterable[SyncDecision]) -> SyncResult:
        """
        Consume ``decisions`` and return the aggregate counts.

        A failure raised by the decision stream itself stops dispatch; the
        operations already in flight are drained and the error is stored on
        the returned result.
        """
        result = SyncResult()
        outcomes: "queue.Queue" = queue.Queue()
        aggregator = threading.Thread(
            target=self._aggregate, args=(outcomes, result), name="bucketsync-aggregator", daemon=True
        )
        aggregator.start()

        slots = threading.BoundedSemaphore(self.concurrency)
        pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="bucketsync-sync")
        try:
            for decision in decisions:
                if decision.operation == SyncOperation.NO_OP:
                    continue

                if decision.operation == SyncOperation.ERROR:
                    path = decision.src_path or decision.dst_path or decision.key
                    logger.warning(f"Failed: {path}. It may have been deleted! ({decision.error})")
                    if not self.dry_run:
                        outcomes.put(False)
                    continue

                if decision.operation == SyncOperation.DOWNLOAD and decision.src_path and decision.src_path.endswith("/"):
                    logger.debug(f"Skipping directory object {decision.src_path}")
                    continue

                if self.dry_run:
                    self.output.echo(f"[dryrun] {self.describe(decision)}")
                    continue

                reason = self._rejected(decision)
                if reason:
                    logger.error(f"Failed: {self.describe(decision)}: {reason}")
                    outcomes.put(False)
                    continue

                slots.acquire()
                try:
                    pool.submit(self._run_one, decision, slots, outcomes)
                except Exception:
                    slots.release()
                    raise
        except Exception as e:
            logger.error(f"Sync interrupted, draining in-flight operations: {e}")
            result.error = e
        finally:
            pool.shutdown(wait=True)
            outcomes.put(_DONE)
            aggregator.join()

        result.end_time = datetime.now(timezone.utc)
        logger.info(
            f"Executed sync: {result.succeeded} succeeded, {result.failed} failed "
            f"in {result.elapsed_seconds:.1f}s"
        )
        return result
