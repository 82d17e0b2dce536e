"""
Include/exclude filters applied by the entry listers.

Patterns are shell globs in which ``*`` also crosses path separators, so
``/data/*.jpg`` matches ``/data/2024/01/cat.jpg``. They are matched against
the absolute local path or against ``bucket/key`` for remote entries.
Time ranges are inclusive ``[start, end]`` pairs of epoch seconds.
"""

import logging
import os
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .models import REMOTE_PATH_PREFIX

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_time_value(value: str) -> int:
    """Parse epoch seconds or a ``YYYY-MM-DD HH:MM:SS`` local time."""
    value = value.strip()
    if value.lstrip("-").isdigit():
        return int(value)
    try:
        return int(datetime.strptime(value, TIME_FORMAT).timestamp())
    except ValueError:
        raise ValidationError(
            f"invalid time '{value}', expected epoch seconds or '{TIME_FORMAT}'"
        )


def parse_time_range(spec: str) -> Tuple[int, int]:
    """
    Parse a ``start,end`` time range.

    Either bound may be omitted: ``,1700000000`` means "up to" and
    ``1700000000,`` means "from".
    """
    if "," not in spec:
        raise ValidationError(f"invalid time range '{spec}', expected 'start,end'")
    start_str, end_str = spec.split(",", 1)
    start = parse_time_value(start_str) if start_str.strip() else 0
    end = parse_time_value(end_str) if end_str.strip() else 2 ** 63 - 1
    if start > end:
        raise ValidationError(f"invalid time range '{spec}', start is after end")
    return start, end


class SyncFilter:
    """
    Path pattern and modification-time predicate.

    Exactly one of include/exclude patterns may be set, and exactly one of
    include/exclude time ranges. An empty filter lets everything through.
    """

    def __init__(
        self,
        exclude: Sequence[str] = (),
        include: Sequence[str] = (),
        exclude_time: Sequence[str] = (),
        include_time: Sequence[str] = (),
        local_root: Optional[str] = None,
    ):
        """
        Args:
            exclude: Glob patterns of paths to skip
            include: Glob patterns of the only paths to keep
            exclude_time: ``start,end`` ranges of mtimes to skip
            include_time: ``start,end`` ranges of the only mtimes to keep
            local_root: When set, relative patterns are anchored at this directory
        """
        if exclude and include:
            raise ValidationError("exclude and include cannot be used together")
        if exclude_time and include_time:
            raise ValidationError("exclude-time and include-time cannot be used together")

        self.include_mode = bool(include)
        self.include_time_mode = bool(include_time)
        self.local_root = local_root
        raw_patterns = list(include or exclude)
        self.patterns = [self._normalize_pattern(p) for p in raw_patterns]
        self.time_ranges: List[Tuple[int, int]] = [
            parse_time_range(r) for r in (include_time or exclude_time)
        ]

    def _normalize_pattern(self, pattern: str) -> str:
        if pattern.startswith(REMOTE_PATH_PREFIX):
            return pattern[len(REMOTE_PATH_PREFIX):]
        if self.local_root is None:
            return pattern
        if pattern.startswith(os.sep) or pattern.startswith("*"):
            return pattern
        return os.path.join(os.path.abspath(self.local_root), pattern)

    @property
    def has_patterns(self) -> bool:
        return bool(self.patterns)

    @property
    def has_time_ranges(self) -> bool:
        return bool(self.time_ranges)

    @property
    def is_empty(self) -> bool:
        return not self.patterns and not self.time_ranges

    def _matches(self, path: str) -> bool:
        for pattern in self.patterns:
            candidate = pattern
            # Directory paths end with a separator; let "dir" match "dir/"
            if path.endswith(("/", os.sep)) and not pattern.endswith(("/", os.sep)):
                candidate = pattern + path[-1]
            if fnmatchcase(path, candidate):
                return True
        return False

    def pattern_filtered(self, path: str) -> bool:
        """Return True if ``path`` must be skipped because of the patterns."""
        if not self.patterns:
            return False
        matched = self._matches(path)
        return not matched if self.include_mode else matched

    def directory_filtered(self, path: str) -> bool:
        """
        Return True if the whole directory ``path`` must be pruned.

        Only exclude patterns prune directories; in include mode a directory
        may still contain matching files.
        """
        if not self.patterns or self.include_mode:
            return False
        return self._matches(path)

    def time_filtered(self, modified_time: int) -> bool:
        """Return True if an entry with ``modified_time`` must be skipped."""
        if not self.time_ranges:
            return False
        in_range = any(start <= modified_time <= end for start, end in self.time_ranges)
        return not in_range if self.include_time_mode else in_range

    def filtered(self, path: str, modified_time: int) -> bool:
        return self.pattern_filtered(path) or self.time_filtered(modified_time)


def build_filter(
    exclude: Iterable[str] = (),
    include: Iterable[str] = (),
    exclude_time: Iterable[str] = (),
    include_time: Iterable[str] = (),
    local_root: Optional[str] = None,
) -> Optional[SyncFilter]:
    """Return a SyncFilter, or None when no filtering was requested."""
    sync_filter = SyncFilter(
        exclude=list(exclude),
        include=list(include),
        exclude_time=list(exclude_time),
        include_time=list(include_time),
        local_root=local_root,
    )
    if sync_filter.is_empty:
        return None
    logger.debug(
        f"Filter: {len(sync_filter.patterns)} pattern(s), "
        f"{len(sync_filter.time_ranges)} time range(s)"
    )
    return sync_filter
