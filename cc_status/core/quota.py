"""
Rolling-window quota estimation.

Infers the per-block token ceiling from completed historical blocks. Rank
percentiles keep a single outlier block from setting the limit, and tight
clusters of high block totals are read as evidence of having been capped.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .blocks import identify_blocks
from .records import UsageRecord
from cc_status.storage.cache import TTLCache

logger = logging.getLogger(__name__)

FALLBACK_LIMIT = 45_600_000
CLUSTER_FLOOR = 30_000_000
HIGH_USAGE_FLOOR = 40_000_000
MODERATE_USAGE_FLOOR = 20_000_000
CLUSTER_THRESHOLD = 0.02  # 2% of the group's running mean
MIN_CLUSTER_SIZE = 3
MIN_CLUSTER_SAMPLES = 5
QUOTA_CACHE_TTL = timedelta(hours=4)
DEFAULT_LOOKBACK_DAYS = 30


class QuotaConfidence(Enum):
    """How much the estimate can be trusted, weakest first."""
    FALLBACK = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    def __lt__(self, other: "QuotaConfidence") -> bool:
        if not isinstance(other, QuotaConfidence):
            return NotImplemented
        return self.value < other.value


class QuotaSource(Enum):
    """Where an estimate came from."""
    HISTORICAL_ANALYSIS = "historical_analysis"
    CONFIGURATION = "configuration"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class QuotaEstimate:
    """Belief about the token ceiling of one rolling window."""
    limit: int
    confidence: QuotaConfidence
    source: QuotaSource
    computed_at: datetime

    def __post_init__(self):
        """Validate the limit is positive."""
        if self.limit <= 0:
            raise ValueError("limit must be > 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "confidence": self.confidence.name.lower(),
            "source": self.source.value,
            "computed_at": self.computed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaEstimate":
        return cls(
            limit=int(data["limit"]),
            confidence=QuotaConfidence[data["confidence"].upper()],
            source=QuotaSource(data["source"]),
            computed_at=datetime.fromisoformat(data["computed_at"]),
        )


def fallback_estimate(now: datetime) -> QuotaEstimate:
    return QuotaEstimate(
        limit=FALLBACK_LIMIT,
        confidence=QuotaConfidence.FALLBACK,
        source=QuotaSource.FALLBACK,
        computed_at=now,
    )


def rank_percentile(sorted_desc: Sequence[int], fraction: float) -> int:
    """Pick the ``floor(n * fraction)``-th element of a descending list.

    ``fraction`` 0.05 gives the 95th percentile, 0.01 the 99th.
    Returns 0 for an empty list.
    """
    if not sorted_desc:
        return 0
    if fraction < 0 or fraction >= 1:
        raise ValueError("fraction must be in [0, 1)")
    return sorted_desc[int(len(sorted_desc) * fraction)]


def find_limit_clusters(sorted_desc: Sequence[int]) -> List[int]:
    """Find high block totals that bunch up around one value.

    Each value joins the first group whose running mean it is within
    ``CLUSTER_THRESHOLD`` of. Groups of at least ``MIN_CLUSTER_SIZE`` whose
    mean is above ``CLUSTER_FLOOR`` yield their rounded mean.

    Args:
        sorted_desc: Block totals, largest first

    Returns:
        Candidate limits, largest first
    """
    if len(sorted_desc) < MIN_CLUSTER_SAMPLES:
        return []

    groups: List[List[int]] = []
    for value in sorted_desc:
        for group in groups:
            mean = sum(group) / len(group)
            if mean > 0 and abs(value - mean) / mean <= CLUSTER_THRESHOLD:
                group.append(value)
                break
        else:
            groups.append([value])

    candidates = []
    for group in groups:
        if len(group) < MIN_CLUSTER_SIZE:
            continue
        mean = sum(group) / len(group)
        if mean > CLUSTER_FLOOR:
            candidates.append(round(mean))
    return sorted(candidates, reverse=True)


def estimate_quota(block_totals: Sequence[int], now: datetime) -> QuotaEstimate:
    """Apply the decision table to completed block totals.

    Rows, first match wins:

    1. clusters found and P99 > ``CLUSTER_FLOOR``: largest cluster, HIGH
    2. P95 > ``HIGH_USAGE_FLOOR``: P99, MEDIUM
    3. P95 > ``MODERATE_USAGE_FLOOR``: max(P99, ``FALLBACK_LIMIT``), LOW
    4. otherwise: ``FALLBACK_LIMIT``, LOW

    An empty input gives the FALLBACK estimate.
    """
    if not block_totals:
        return fallback_estimate(now)

    totals = sorted(block_totals, reverse=True)
    p95 = rank_percentile(totals, 0.05)
    p99 = rank_percentile(totals, 0.01)
    clusters = find_limit_clusters(totals)

    if clusters and p99 > CLUSTER_FLOOR:
        limit, confidence = max(clusters), QuotaConfidence.HIGH
    elif p95 > HIGH_USAGE_FLOOR:
        limit, confidence = p99, QuotaConfidence.MEDIUM
    elif p95 > MODERATE_USAGE_FLOOR:
        limit, confidence = max(p99, FALLBACK_LIMIT), QuotaConfidence.LOW
    else:
        limit, confidence = FALLBACK_LIMIT, QuotaConfidence.LOW

    return QuotaEstimate(
        limit=int(round(limit)),
        confidence=confidence,
        source=QuotaSource.HISTORICAL_ANALYSIS,
        computed_at=now,
    )


def historical_block_totals(records: Sequence[UsageRecord], now: datetime) -> List[int]:
    """Totals of completed, non-empty blocks."""
    totals = []
    for block in identify_blocks(records):
        if not block.records or block.is_active(now):
            continue
        total = block.total_tokens
        if total > 0:
            totals.append(total)
    return totals


class QuotaEstimator:
    """Cached access to the quota estimate.

    The historical scan can cover months of logs, so results are kept for
    ``QUOTA_CACHE_TTL`` in the injected cache.
    """

    CACHE_KEY = "quota"

    def __init__(
        self,
        repository,
        cache: Optional[TTLCache] = None,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ):
        """Initialize the estimator.

        Args:
            repository: Source of historical records (``load_records(since=...)``)
            cache: Cache for estimates (in-memory only if None)
            lookback_days: How far back to scan

        Raises:
            ValueError: If lookback_days is not positive
        """
        if lookback_days <= 0:
            raise ValueError("lookback_days must be > 0")
        self.repository = repository
        self.cache = cache if cache is not None else TTLCache(QUOTA_CACHE_TTL)
        self.lookback_days = lookback_days
        self._manual: Optional[QuotaEstimate] = None

    def get_estimate(self, now: datetime) -> QuotaEstimate:
        """Return the current estimate, recomputing when the cached one expired."""
        if self._manual is not None:
            return self._manual

        cached = self.cache.get(self.CACHE_KEY, now)
        if cached is not None:
            try:
                estimate = QuotaEstimate.from_dict(cached)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.debug("Discarding unreadable cached quota estimate")
            else:
                # A configured limit only holds while it is still configured
                if estimate.source != QuotaSource.CONFIGURATION:
                    return estimate

        estimate = self._detect(now)
        self.cache.set(self.CACHE_KEY, estimate.to_dict(), now)
        return estimate

    def invalidate(self) -> None:
        """Force recomputation on the next call."""
        self._manual = None
        self.cache.invalidate(self.CACHE_KEY)

    def set_manual_limit(self, tokens: int, now: datetime) -> QuotaEstimate:
        """Pin the limit to a configured value, bypassing detection."""
        estimate = QuotaEstimate(
            limit=tokens,
            confidence=QuotaConfidence.HIGH,
            source=QuotaSource.CONFIGURATION,
            computed_at=now,
        )
        self._manual = estimate
        self.cache.set(self.CACHE_KEY, estimate.to_dict(), now)
        return estimate

    def _detect(self, now: datetime) -> QuotaEstimate:
        since = now - timedelta(days=self.lookback_days)
        try:
            records = self.repository.load_records(since=since)
            totals = historical_block_totals(records, now)
        except Exception as e:
            logger.warning("Quota detection failed, using fallback: %s", e)
            return fallback_estimate(now)

        estimate = estimate_quota(totals, now)
        logger.debug(
            "Estimated quota %d (%s) from %d blocks",
            estimate.limit, estimate.confidence.name.lower(), len(totals),
        )
        return estimate
