"""
Repository for transcript usage records.

Reads the append-only transcript logs and turns them into a flat,
deduplicated stream of usage records. This is a pure read: the logs are
never modified.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from cc_status.core.records import DEFAULT_MODEL_ID, UsageRecord, parse_record
from .paths import find_transcript_files

logger = logging.getLogger(__name__)


def deduplicate(records: Iterable[UsageRecord]) -> List[UsageRecord]:
    """Fold records sharing a dedupe key into the first one seen.

    Order of first occurrence is preserved, so running this twice gives the
    same result as running it once.
    """
    seen = set()
    unique = []
    for record in records:
        key = record.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


class TranscriptRepository:
    """Read access to usage records across all transcript files.

    A malformed line only costs that line; an unreadable file or directory
    only costs that path.
    """

    def __init__(self, roots: Sequence[Path], default_model: str = DEFAULT_MODEL_ID):
        """Initialize the repository.

        Args:
            roots: Data directories holding transcripts
            default_model: Model id for records that name none
        """
        self.roots = [Path(root) for root in roots]
        self.default_model = default_model

    def find_files(self, modified_since: Optional[datetime] = None) -> List[Path]:
        return find_transcript_files(self.roots, modified_since=modified_since)

    def parse_lines(self, lines: Iterable[bytes]) -> List[UsageRecord]:
        """Parse raw transcript lines, skipping anything that is not a usage event.

        Args:
            lines: Raw lines (bytes or str), one JSON object per line

        Returns:
            Usage records in line order, sidechain records included
        """
        records = []
        for raw in lines:
            try:
                text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            except UnicodeDecodeError:
                continue
            text = text.strip()
            if not text.startswith("{") or not text.endswith("}"):
                continue
            try:
                entry = json.loads(text)
            except ValueError:
                continue
            record = parse_record(entry, self.default_model)
            if record is not None:
                records.append(record)
        return records

    def parse_file(self, path: Path) -> List[UsageRecord]:
        """Parse one transcript file.

        Returns an empty list when the file cannot be read.
        """
        try:
            with open(path, "rb") as f:
                return self.parse_lines(f)
        except OSError as e:
            logger.debug("Failed to read transcript %s: %s", path, e)
            return []

    def load_lines(self, lines: Iterable[bytes]) -> List[UsageRecord]:
        """Accountable records from raw content: no sidechain, deduplicated, time ordered."""
        return _accountable(self.parse_lines(lines))

    def load_records(self, since: Optional[datetime] = None) -> List[UsageRecord]:
        """Load accountable records from every transcript file.

        Args:
            since: Only consider files modified, and records stamped, at or
                after this instant

        Returns:
            Deduplicated, non-sidechain records sorted by timestamp
        """
        records: List[UsageRecord] = []
        for path in self.find_files(modified_since=since):
            records.extend(self.parse_file(path))

        if since is not None:
            records = [r for r in records if r.timestamp >= since]

        return _accountable(records)


def _accountable(records: List[UsageRecord]) -> List[UsageRecord]:
    # Sort before dedupe so the surviving copy is independent of file order
    ordered = sorted(
        (r for r in records if not r.is_sidechain),
        key=lambda r: (r.timestamp, repr(r.dedupe_key)),
    )
    return deduplicate(ordered)
