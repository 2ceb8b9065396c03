"""
Pricing calculations and rate management.

Maps model identifiers to per-million-token prices and computes the cost of
records that do not carry one. The price table is layered: fresh cache,
remote fetch, stale cache, then a built-in offline table.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import httpx

from .records import DEFAULT_MODEL_ID, TokenCounts, UsageRecord
from cc_status.storage.cache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_PRICING_URL = "https://raw.githubusercontent.com/Owloops/claude-powerline/main/pricing.json"
DEFAULT_TIMEOUT_SECONDS = 2.0
PRICING_CACHE_TTL = timedelta(hours=24)
FETCH_RETRY_INTERVAL = timedelta(minutes=5)
TOKENS_PER_UNIT = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens for each token category."""
    name: str
    input: float
    output: float
    cache_write: float
    cache_read: float

    def __post_init__(self):
        """Validate prices are not negative."""
        for name in ("input", "output", "cache_write", "cache_read"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} price cannot be negative")


def _pricing(name, input, output, cache_write, cache_read):
    return ModelPricing(name=name, input=input, output=output, cache_write=cache_write, cache_read=cache_read)


_OPUS = (15.00, 75.00, 18.75, 1.50)
_SONNET = (3.00, 15.00, 3.75, 0.30)

# Used when neither cache nor network can supply a table
OFFLINE_PRICING_TABLE: Dict[str, ModelPricing] = {
    "claude-3-haiku-20240307": _pricing("Claude 3 Haiku", 0.25, 1.25, 0.30, 0.03),
    "claude-3-5-haiku-20241022": _pricing("Claude 3.5 Haiku", 0.80, 4.00, 1.00, 0.08),
    "claude-3-5-haiku-latest": _pricing("Claude 3.5 Haiku Latest", 1.00, 5.00, 1.25, 0.10),
    "claude-3-opus-latest": _pricing("Claude 3 Opus Latest", *_OPUS),
    "claude-3-opus-20240229": _pricing("Claude 3 Opus", *_OPUS),
    "claude-3-5-sonnet-latest": _pricing("Claude 3.5 Sonnet Latest", *_SONNET),
    "claude-3-5-sonnet-20240620": _pricing("Claude 3.5 Sonnet", *_SONNET),
    "claude-3-5-sonnet-20241022": _pricing("Claude 3.5 Sonnet", *_SONNET),
    "claude-3-7-sonnet-latest": _pricing("Claude 3.7 Sonnet Latest", *_SONNET),
    "claude-3-7-sonnet-20250219": _pricing("Claude 3.7 Sonnet", *_SONNET),
    "claude-opus-4-20250514": _pricing("Claude Opus 4", *_OPUS),
    "claude-opus-4-1": _pricing("Claude Opus 4.1", *_OPUS),
    "claude-opus-4-1-20250805": _pricing("Claude Opus 4.1", *_OPUS),
    "claude-sonnet-4-20250514": _pricing("Claude Sonnet 4", *_SONNET),
    "claude-4-opus-20250514": _pricing("Claude 4 Opus", *_OPUS),
    "claude-4-sonnet-20250514": _pricing("Claude 4 Sonnet", *_SONNET),
}

# Model-family substrings, most specific first, and the table key each maps to
FUZZY_PATTERNS = [
    (("opus-4-1", "claude-opus-4-1"), "claude-opus-4-1-20250805"),
    (("opus-4", "claude-opus-4"), "claude-opus-4-20250514"),
    (("sonnet-4", "claude-sonnet-4"), "claude-sonnet-4-20250514"),
    (("sonnet-3.7", "3-7-sonnet"), "claude-3-7-sonnet-20250219"),
    (("3-5-sonnet", "sonnet-3.5"), "claude-3-5-sonnet-20241022"),
    (("3-5-haiku", "haiku-3.5"), "claude-3-5-haiku-20241022"),
    (("haiku", "3-haiku"), "claude-3-haiku-20240307"),
    (("opus",), "claude-opus-4-20250514"),
    (("sonnet",), "claude-3-5-sonnet-20241022"),
]

ULTIMATE_FALLBACK = _pricing("Unknown Model", *_SONNET)


def validate_pricing_data(raw: Any) -> bool:
    """Check every entry of a raw price table has numeric input, output and cache_read."""
    if not isinstance(raw, dict) or not raw:
        return False
    for key, entry in raw.items():
        if key == "_meta":
            continue
        if not isinstance(entry, dict):
            return False
        for field_name in ("input", "output", "cache_read"):
            value = entry.get(field_name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return False
    return True


def parse_pricing_table(raw: Dict[str, Any]) -> Dict[str, ModelPricing]:
    """Convert a validated raw price table into ModelPricing entries.

    Cache-write price comes from ``cache_write_5m``, then ``cache_write``,
    then the input price.
    """
    table = {}
    for key, entry in raw.items():
        if key == "_meta":
            continue
        cache_write = entry.get("cache_write_5m", entry.get("cache_write", entry["input"]))
        table[key] = ModelPricing(
            name=str(entry.get("name", key)),
            input=float(entry["input"]),
            output=float(entry["output"]),
            cache_write=float(cache_write),
            cache_read=float(entry["cache_read"]),
        )
    return table


def match_model(model_id: str, table: Dict[str, ModelPricing]) -> ModelPricing:
    """Find the price entry for a model id.

    Exact match, then case-insensitive match, then the first matching
    family pattern, then the default Sonnet entry, then ULTIMATE_FALLBACK.
    """
    if model_id in table:
        return table[model_id]

    lowered = model_id.lower()
    for key, pricing in table.items():
        if key.lower() == lowered:
            return pricing

    for patterns, target in FUZZY_PATTERNS:
        if any(p in lowered for p in patterns) and target in table:
            return table[target]

    return table.get(DEFAULT_MODEL_ID, ULTIMATE_FALLBACK)


def calculate_cost(tokens: TokenCounts, pricing: ModelPricing) -> float:
    """Cost in USD of one set of token counts.

    No rounding: money stays a float until it is displayed.
    """
    return (
        tokens.input_tokens / TOKENS_PER_UNIT * pricing.input
        + tokens.output_tokens / TOKENS_PER_UNIT * pricing.output
        + tokens.cache_write_tokens / TOKENS_PER_UNIT * pricing.cache_write
        + tokens.cache_read_tokens / TOKENS_PER_UNIT * pricing.cache_read
    )


class PricingResolver:
    """Resolves model prices through the cache hierarchy.

    Every step is total: network and cache failures fall through to the
    next source, ending at the offline table.
    """

    CACHE_KEY = "pricing"

    def __init__(
        self,
        cache: Optional[TTLCache] = None,
        url: str = DEFAULT_PRICING_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        offline: bool = False,
    ):
        """Initialize the resolver.

        Args:
            cache: Cache for the raw price table (in-memory only if None)
            url: Remote price table location
            timeout: Hard timeout for the remote fetch, in seconds
            offline: Never touch the network
        """
        self.cache = cache if cache is not None else TTLCache(PRICING_CACHE_TTL)
        self.url = url
        self.timeout = timeout
        self.offline = offline
        # Table served after a failed fetch, and when it was resolved
        self._fallback: Optional[Tuple[datetime, Dict[str, ModelPricing]]] = None

    def get_pricing_table(self, now: datetime) -> Dict[str, ModelPricing]:
        """Current price table.

        Order: fresh cache, remote fetch, stale cache, offline table. After a
        failed fetch the fallback table is reused for ``FETCH_RETRY_INTERVAL``,
        so pricing many records costs at most one network attempt.
        """
        cached = self.cache.get(self.CACHE_KEY, now)
        if cached is not None and validate_pricing_data(cached):
            return parse_pricing_table(cached)

        if self._fallback is not None:
            resolved_at, table = self._fallback
            if now - resolved_at < FETCH_RETRY_INTERVAL:
                return table

        if not self.offline:
            remote = self._fetch_remote()
            if remote is not None:
                self._fallback = None
                self.cache.set(self.CACHE_KEY, remote, now)
                return parse_pricing_table(remote)

        stale = self.cache.get_stale(self.CACHE_KEY)
        if stale is not None and validate_pricing_data(stale):
            logger.debug("Using stale pricing cache")
            table = parse_pricing_table(stale)
        else:
            table = dict(OFFLINE_PRICING_TABLE)

        self._fallback = (now, table)
        return table

    def resolve_price(self, model_id: str, now: datetime) -> ModelPricing:
        return match_model(model_id, self.get_pricing_table(now))

    def cost_for_record(self, record: UsageRecord, now: datetime) -> float:
        """Recorded cost when present, otherwise priced from the record's tokens."""
        if record.cost is not None:
            return record.cost
        pricing = self.resolve_price(record.model_id or DEFAULT_MODEL_ID, now)
        return calculate_cost(record.tokens, pricing)

    def _fetch_remote(self) -> Optional[Dict[str, Any]]:
        try:
            with httpx.Client(timeout=self.timeout) as http:
                resp = http.get(self.url, headers={"User-Agent": "cc-status", "Cache-Control": "no-cache"})
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Pricing fetch failed: %s", e)
            return None

        if not isinstance(data, dict):
            return None
        data = {k: v for k, v in data.items() if k != "_meta"}
        if not validate_pricing_data(data):
            logger.debug("Rejected invalid remote pricing data")
            return None
        return data
