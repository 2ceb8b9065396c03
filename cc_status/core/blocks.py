"""
Rolling usage blocks.

Groups a record stream into non-overlapping 5-hour blocks and decides which
block, if any, is still in progress.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from .records import TokenCounts, UsageRecord, sum_tokens

SESSION_DURATION = timedelta(hours=5)


def floor_to_hour(timestamp: datetime) -> datetime:
    """Floor an instant to the start of its hour in UTC."""
    utc = timestamp.astimezone(timezone.utc)
    return utc.replace(minute=0, second=0, microsecond=0)


@dataclass
class UsageBlock:
    """A run of records assigned to one rolling window.

    ``end_time`` is fixed when the block is opened; later records never
    move it.
    """
    start_time: datetime
    end_time: datetime
    records: List[UsageRecord] = field(default_factory=list)

    @property
    def tokens(self) -> TokenCounts:
        return sum_tokens(self.records)

    @property
    def total_tokens(self) -> int:
        return self.tokens.total_tokens

    @property
    def first_record_time(self) -> Optional[datetime]:
        return self.records[0].timestamp if self.records else None

    @property
    def last_record_time(self) -> Optional[datetime]:
        return self.records[-1].timestamp if self.records else None

    @property
    def models(self) -> List[str]:
        """Distinct model ids, in first-seen order."""
        seen = []
        for record in self.records:
            if record.model_id and record.model_id not in seen:
                seen.append(record.model_id)
        return seen

    def is_active(self, now: datetime, duration: timedelta = SESSION_DURATION) -> bool:
        """True while the last record is within the window and the fixed end is ahead."""
        last = self.last_record_time or self.start_time
        return now - last < duration and now < self.end_time


def identify_blocks(
    records: Iterable[UsageRecord],
    duration: timedelta = SESSION_DURATION,
) -> List[UsageBlock]:
    """Partition records into rolling usage blocks.

    A new block opens, floored to the hour, when a record lands more than
    ``duration`` after the open block's start or more than ``duration``
    after the previous record.

    Args:
        records: Usage records in any order (re-sorted by timestamp here)
        duration: Window length

    Returns:
        Blocks ordered by start time; every record lands in exactly one
    """
    ordered = sorted(records, key=lambda r: r.timestamp)
    blocks: List[UsageBlock] = []
    current: Optional[UsageBlock] = None

    for record in ordered:
        if current is None:
            current = _open_block(record, duration)
            continue

        since_start = record.timestamp - current.start_time
        since_last = record.timestamp - current.records[-1].timestamp

        if since_start > duration or since_last > duration:
            blocks.append(current)
            current = _open_block(record, duration)
        else:
            current.records.append(record)

    if current is not None:
        blocks.append(current)

    return blocks


def _open_block(record: UsageRecord, duration: timedelta) -> UsageBlock:
    start = floor_to_hour(record.timestamp)
    return UsageBlock(start_time=start, end_time=start + duration, records=[record])


def find_active_block(
    blocks: List[UsageBlock],
    now: datetime,
    duration: timedelta = SESSION_DURATION,
) -> Optional[UsageBlock]:
    """Return the most recent block that is still active, or None.

    None is the normal answer between sessions and means zero current usage.
    """
    for block in reversed(blocks):
        if block.is_active(now, duration):
            return block
    return None
