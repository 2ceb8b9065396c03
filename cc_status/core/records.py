"""
Usage records parsed from assistant transcript logs.

Each line of a transcript is a loosely-typed JSON object. Only lines that
carry a ``message.usage`` structure are usage events; everything else is
metadata and is ignored.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

DEFAULT_MODEL_ID = "claude-3-5-sonnet-20241022"


@dataclass(frozen=True)
class TokenCounts:
    """Token counts for the four usage categories."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0

    def __post_init__(self):
        """Validate token counts are never negative."""
        for name in ("input_tokens", "output_tokens", "cache_write_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """All four categories, cache traffic included."""
        return self.input_tokens + self.output_tokens + self.cache_write_tokens + self.cache_read_tokens

    @property
    def fresh_tokens(self) -> int:
        """Input plus output tokens (no cache traffic)."""
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenCounts") -> "TokenCounts":
        return TokenCounts(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )


@dataclass(frozen=True)
class UsageRecord:
    """One observed assistant interaction.

    Records are read fresh from the append-only logs on every invocation
    and are never written back.
    """
    timestamp: datetime
    tokens: TokenCounts
    model_id: Optional[str] = None
    cost: Optional[float] = None
    is_sidechain: bool = False
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    limit_reset_time: Optional[datetime] = None

    @property
    def dedupe_key(self) -> Tuple:
        """Identity of the logical event behind this record.

        Message id + request id when both are present, otherwise the
        timestamp with the input/output token counts.
        """
        if self.message_id and self.request_id:
            return ("id", self.message_id, self.request_id)
        return ("sig", self.timestamp.isoformat(), self.tokens.input_tokens, self.tokens.output_tokens)

    @property
    def total_tokens(self) -> int:
        return self.tokens.total_tokens


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken as UTC. Returns None for anything that is
    not a parsable string.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _token_field(usage: Dict[str, Any], key: str) -> int:
    value = usage.get(key)
    if value is None:
        return 0
    # bool is an int subclass; a flag is never a token count
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        else:
            raise ValueError(f"'{key}' must be an integer")
    if value < 0:
        raise ValueError(f"'{key}' cannot be negative")
    return value


def resolve_model_id(entry: Dict[str, Any], default: str = DEFAULT_MODEL_ID) -> str:
    """Find the model identifier for a raw log entry.

    Fallback chain: ``model`` -> ``model_id`` -> ``message.model`` (a string
    or an object with ``id``) -> ``default``.
    """
    model = entry.get("model")
    if isinstance(model, str) and model:
        return model

    model_id = entry.get("model_id")
    if isinstance(model_id, str) and model_id:
        return model_id

    message = entry.get("message")
    if isinstance(message, dict):
        nested = message.get("model")
        if isinstance(nested, str) and nested:
            return nested
        if isinstance(nested, dict):
            nested_id = nested.get("id")
            if isinstance(nested_id, str) and nested_id:
                return nested_id

    return default


def parse_record(entry: Any, default_model: str = DEFAULT_MODEL_ID) -> Optional[UsageRecord]:
    """Build a UsageRecord from one decoded log line.

    Returns None when the entry is not a usage event (no ``message.usage``)
    or is malformed (bad timestamp, non-integer or negative token counts).
    """
    if not isinstance(entry, dict):
        return None

    message = entry.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None

    timestamp = parse_timestamp(entry.get("timestamp"))
    if timestamp is None:
        return None

    try:
        tokens = TokenCounts(
            input_tokens=_token_field(usage, "input_tokens"),
            output_tokens=_token_field(usage, "output_tokens"),
            cache_write_tokens=_token_field(usage, "cache_creation_input_tokens"),
            cache_read_tokens=_token_field(usage, "cache_read_input_tokens"),
        )
    except ValueError:
        return None

    cost = entry.get("costUSD")
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        cost = None

    message_id = message.get("id")
    request_id = entry.get("requestId")

    return UsageRecord(
        timestamp=timestamp,
        tokens=tokens,
        model_id=resolve_model_id(entry, default_model),
        cost=float(cost) if cost is not None else None,
        is_sidechain=entry.get("isSidechain") is True,
        message_id=message_id if isinstance(message_id, str) else None,
        request_id=request_id if isinstance(request_id, str) else None,
        limit_reset_time=parse_timestamp(entry.get("usageLimitResetTime")),
    )


def sum_tokens(records: Iterable[UsageRecord]) -> TokenCounts:
    """Sum token counts across records."""
    total = TokenCounts()
    for record in records:
        total = total + record.tokens
    return total
