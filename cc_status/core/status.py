"""
Status line data assembly.

Runs the accounting pipeline once per invocation: read records, partition
them into blocks, find the active block, fetch the quota estimate, and
derive the figures each status segment shows.

Every public accessor is a boundary. An unexpected error inside one is
logged and replaced by a documented fallback, so the status line always
has something to show:

- usage: ``FALLBACK_USAGE_SUMMARY``
- burn rate, session timer, daily cost, context: None
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import List, Optional

from .blocks import SESSION_DURATION, UsageBlock, find_active_block, identify_blocks
from .context import ContextInfo, compute_context_info
from .metrics import (
    BurnRateSummary,
    DailyCostSummary,
    SessionTimerSummary,
    UsageSummary,
    compute_burn_rate,
    compute_daily_cost,
    compute_session_timer,
    compute_usage_summary,
    resolve_reset_time,
    start_of_day,
)
from .pricing import PricingResolver
from .quota import FALLBACK_LIMIT, QuotaEstimate, QuotaEstimator
from .records import UsageRecord

logger = logging.getLogger(__name__)

ACTIVE_HISTORY = timedelta(days=1)
MAX_ANCHOR_HISTORY = timedelta(days=30)

FALLBACK_USAGE_SUMMARY = UsageSummary(
    percentage=0.0,
    tokens_used=0,
    tokens_limit=FALLBACK_LIMIT,
    is_over_limit=False,
)


@dataclass(frozen=True)
class StatusSnapshot:
    """Everything the renderer needs for one status line."""
    usage: UsageSummary
    burn_rate: Optional[BurnRateSummary]
    session_timer: Optional[SessionTimerSummary]
    daily_cost: Optional[DailyCostSummary]
    context: Optional[ContextInfo]
    quota: Optional[QuotaEstimate]


class StatusService:
    """Computes status segments from transcript logs.

    Blocks are recomputed on each call and never stored; the quota and
    price caches live in the injected collaborators.
    """

    def __init__(
        self,
        repository,
        quota_estimator: QuotaEstimator,
        pricing: PricingResolver,
        reset_override: Optional[datetime] = None,
        tz: Optional[tzinfo] = None,
    ):
        """Initialize the service.

        Args:
            repository: TranscriptRepository (or anything with the same reads)
            quota_estimator: Source of the quota estimate
            pricing: Prices records without a recorded cost
            reset_override: Configured reset instant, if any
            tz: Display timezone (system local if None)
        """
        self.repository = repository
        self.quota_estimator = quota_estimator
        self.pricing = pricing
        self.reset_override = reset_override
        self.tz = tz

    def anchored_records(self, since: datetime, now: datetime) -> List[UsageRecord]:
        """Records from ``since`` on, reaching back far enough to anchor blocks.

        Block boundaries depend on every earlier record until a gap longer
        than ``SESSION_DURATION``. The window is widened until such a gap
        precedes the first record, up to ``MAX_ANCHOR_HISTORY``; past that,
        records before the first gap inside the window are dropped.
        """
        start = since
        while True:
            records = self.repository.load_records(since=start)
            if not records or records[0].timestamp - start > SESSION_DURATION:
                return records
            if now - start >= MAX_ANCHOR_HISTORY:
                return _after_first_gap(records)
            start = max(now - 2 * (now - start), now - MAX_ANCHOR_HISTORY)

    def recent_records(self, now: datetime) -> List[UsageRecord]:
        """Records from the last ``ACTIVE_HISTORY``, plus any continuous run leading into it."""
        return self.anchored_records(now - ACTIVE_HISTORY, now)

    def get_blocks(self, now: datetime, since: Optional[datetime] = None) -> List[UsageBlock]:
        """Blocks with activity at or after ``since`` (default ``now - ACTIVE_HISTORY``)."""
        since = since or now - ACTIVE_HISTORY
        blocks = identify_blocks(self.anchored_records(since, now))
        return [b for b in blocks if b.last_record_time is not None and b.last_record_time >= since]

    def get_active_block(self, now: datetime) -> Optional[UsageBlock]:
        return find_active_block(identify_blocks(self.recent_records(now)), now)

    def get_usage_summary(self, now: datetime) -> UsageSummary:
        try:
            block = self.get_active_block(now)
            quota = self.quota_estimator.get_estimate(now)
            return compute_usage_summary(block, quota)
        except Exception as e:
            logger.warning("Usage summary failed, using fallback: %s", e)
            return FALLBACK_USAGE_SUMMARY

    def get_burn_rate(self, now: datetime) -> Optional[BurnRateSummary]:
        try:
            block = self.get_active_block(now)
            return compute_burn_rate(block, now, lambda r: self.pricing.cost_for_record(r, now))
        except Exception as e:
            logger.warning("Burn rate failed: %s", e)
            return None

    def get_session_timer(self, now: datetime) -> Optional[SessionTimerSummary]:
        try:
            block = self.get_active_block(now)
            reset_at = resolve_reset_time(block, now, self.reset_override)
            return compute_session_timer(reset_at, now, self.tz)
        except Exception as e:
            logger.warning("Session timer failed: %s", e)
            return None

    def get_daily_cost(self, now: datetime) -> Optional[DailyCostSummary]:
        try:
            records = self.repository.load_records(since=start_of_day(now, self.tz))
            return compute_daily_cost(records, now, lambda r: self.pricing.cost_for_record(r, now), self.tz)
        except Exception as e:
            logger.warning("Daily cost failed: %s", e)
            return None

    def get_context_info(self, transcript_path: Optional[str]) -> Optional[ContextInfo]:
        if not transcript_path:
            return None
        path = Path(transcript_path).expanduser()
        if not path.is_file():
            return None
        try:
            return compute_context_info(self.repository.parse_file(path))
        except Exception as e:
            logger.warning("Context info failed: %s", e)
            return None

    def build_status(self, now: datetime, transcript_path: Optional[str] = None) -> StatusSnapshot:
        """Compute every segment for one render.

        The record scan is shared by the usage, burn rate and timer segments.
        """
        try:
            block = self.get_active_block(now)
            quota = self.quota_estimator.get_estimate(now)
        except Exception as e:
            logger.warning("Status assembly failed, using fallback: %s", e)
            return StatusSnapshot(
                usage=FALLBACK_USAGE_SUMMARY,
                burn_rate=None,
                session_timer=None,
                daily_cost=self.get_daily_cost(now),
                context=self.get_context_info(transcript_path),
                quota=None,
            )

        def cost_of(record: UsageRecord) -> float:
            return self.pricing.cost_for_record(record, now)

        try:
            burn_rate = compute_burn_rate(block, now, cost_of)
        except Exception as e:
            logger.warning("Burn rate failed: %s", e)
            burn_rate = None

        reset_at = resolve_reset_time(block, now, self.reset_override)
        return StatusSnapshot(
            usage=compute_usage_summary(block, quota),
            burn_rate=burn_rate,
            session_timer=compute_session_timer(reset_at, now, self.tz),
            daily_cost=self.get_daily_cost(now),
            context=self.get_context_info(transcript_path),
            quota=quota,
        )


def _after_first_gap(records: List[UsageRecord]) -> List[UsageRecord]:
    for i in range(1, len(records)):
        if records[i].timestamp - records[i - 1].timestamp > SESSION_DURATION:
            return records[i:]
    return records
