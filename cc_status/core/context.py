"""
Context window fill for the current conversation.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .records import UsageRecord

MAX_CONTEXT_TOKENS = 200_000
NEAR_LIMIT_PERCENT = 80


@dataclass(frozen=True)
class ContextInfo:
    tokens: int
    percentage: int
    is_near_limit: bool


def compute_context_info(
    records: Iterable[UsageRecord],
    max_tokens: int = MAX_CONTEXT_TOKENS,
) -> Optional[ContextInfo]:
    """Context size from the most recent non-sidechain record with input tokens.

    The prompt of the latest turn is input plus cache read plus cache write.

    Returns:
        ContextInfo, or None when no record qualifies
    """
    if max_tokens <= 0:
        raise ValueError("max_tokens must be > 0")

    latest = None
    for record in records:
        if record.is_sidechain or record.tokens.input_tokens <= 0:
            continue
        if latest is None or record.timestamp > latest.timestamp:
            latest = record

    if latest is None:
        return None

    tokens = latest.tokens
    context_tokens = tokens.input_tokens + tokens.cache_read_tokens + tokens.cache_write_tokens
    percentage = min(100, max(0, int(context_tokens / max_tokens * 100 + 0.5)))
    return ContextInfo(
        tokens=context_tokens,
        percentage=percentage,
        is_near_limit=percentage > NEAR_LIMIT_PERCENT,
    )
