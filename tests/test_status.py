"""
Tests for status assembly and its fallbacks.
"""

import json
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cc_status.core.pricing import PricingResolver
from cc_status.core.quota import FALLBACK_LIMIT, QuotaEstimator
from cc_status.core.records import TokenCounts, UsageRecord
from cc_status.core.status import ACTIVE_HISTORY, FALLBACK_USAGE_SUMMARY, MAX_ANCHOR_HISTORY, StatusService
from cc_status.storage.transcripts import TranscriptRepository

NOW = datetime(2025, 1, 1, 14, 30, tzinfo=timezone.utc)


def _line(timestamp, input_tokens=10, output_tokens=20, **extra):
    entry = {
        "timestamp": timestamp.isoformat(),
        "message": {
            "model": "claude-sonnet-4-20250514",
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    }
    entry.update(extra)
    return json.dumps(entry)


class TestStatusService:
    """Test status assembly over real transcript files."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.repository = TranscriptRepository([self.temp_dir])
        self.estimator = QuotaEstimator(self.repository)
        self.estimator.set_manual_limit(1_000, NOW)
        self.service = StatusService(
            self.repository,
            self.estimator,
            PricingResolver(offline=True),
            tz=timezone.utc,
        )

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name, lines):
        path = self.temp_dir / "projects" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def test_usage_and_burn_rate(self):
        """Verify usage and burn rate for the active block."""
        self._write("session.jsonl", [
            _line(NOW - timedelta(hours=2), costUSD=0.10),
            _line(NOW - timedelta(hours=1), costUSD=0.20),
        ])

        usage = self.service.get_usage_summary(NOW)
        assert usage.tokens_used == 60
        assert usage.tokens_limit == 1_000
        assert usage.percentage == 6.0

        burn = self.service.get_burn_rate(NOW)
        assert burn.tokens_per_minute == pytest.approx(1.0)
        assert burn.cost_per_hour == pytest.approx(0.30)

    def test_duplicate_lines_counted_once(self):
        """Verify the same line in two files counts once."""
        line = _line(NOW - timedelta(minutes=30))
        self._write("a.jsonl", [line, line])
        self._write("b.jsonl", [line])
        assert self.service.get_usage_summary(NOW).tokens_used == 30

    def test_sidechain_contributes_nothing(self):
        """Verify sidechain records add nothing to any total."""
        self._write("session.jsonl", [
            _line(NOW - timedelta(minutes=30), isSidechain=True, costUSD=9.99),
            _line(NOW - timedelta(minutes=20), input_tokens=500, output_tokens=500, isSidechain=True),
        ])

        status = self.service.build_status(NOW)

        assert status.usage.tokens_used == 0
        assert status.burn_rate is None
        assert status.session_timer is None
        assert status.daily_cost.cost == 0.0

    def test_no_active_block(self):
        """Verify an idle period reports zero usage, not an error."""
        self._write("old.jsonl", [_line(NOW - timedelta(hours=7))])

        status = self.service.build_status(NOW)

        assert status.usage.tokens_used == 0
        assert status.usage.percentage == 0.0
        assert status.burn_rate is None

    def test_session_timer_counts_to_block_end(self):
        """Verify the timer counts down to the active block's fixed end."""
        self._write("session.jsonl", [_line(NOW - timedelta(hours=1))])
        timer = self.service.get_session_timer(NOW)
        # Block opened at 13:00 and ends at 18:00
        assert timer.time_remaining_formatted == "3h 30m"
        assert timer.reset_time_formatted == "6PM"

    def test_daily_cost(self):
        """Verify today's cost sums recorded and priced records."""
        self._write("session.jsonl", [
            _line(NOW - timedelta(days=1), costUSD=50.0),
            _line(NOW - timedelta(hours=3), costUSD=1.5),
            _line(NOW - timedelta(hours=2), input_tokens=1_000_000, output_tokens=0),
        ])
        assert self.service.get_daily_cost(NOW).cost == pytest.approx(4.5)

    def test_context_from_transcript(self):
        """Verify context info comes from the given transcript file."""
        path = self._write("session.jsonl", [_line(NOW - timedelta(minutes=5), input_tokens=50_000)])
        status = self.service.build_status(NOW, transcript_path=str(path))
        assert status.context.tokens == 50_000
        assert status.context.percentage == 25

    def test_missing_transcript_path(self):
        """Verify a missing transcript gives no context."""
        assert self.service.get_context_info(str(self.temp_dir / "nope.jsonl")) is None
        assert self.service.get_context_info(None) is None

    def test_recent_records_window(self):
        """Verify active detection reads only recent history."""
        repository = MagicMock()
        repository.load_records.return_value = []
        service = StatusService(repository, self.estimator, PricingResolver(offline=True))
        service.get_active_block(NOW)
        repository.load_records.assert_called_once_with(since=NOW - ACTIVE_HISTORY)

    def test_continuous_activity_anchors_blocks(self):
        """Verify blocks anchor on history older than one day when activity never pauses."""
        first = datetime(2025, 1, 1, 1, tzinfo=timezone.utc)
        now = datetime(2025, 1, 2, 4, 30, tzinfo=timezone.utc)
        self._write("session.jsonl", [_line(first + timedelta(hours=2 * i)) for i in range(14)])
        self.estimator.set_manual_limit(1_000, now)

        block = self.service.get_active_block(now)

        assert block.start_time == datetime(2025, 1, 2, 1, tzinfo=timezone.utc)
        assert len(block.records) == 2
        assert self.service.get_usage_summary(now).tokens_used == 60
        assert self.service.get_session_timer(now).time_remaining_formatted == "1h 30m"

    def test_continuous_activity_blocks_listing(self):
        """Verify listed blocks keep their full-history boundaries."""
        first = datetime(2025, 1, 1, 1, tzinfo=timezone.utc)
        now = datetime(2025, 1, 2, 4, 30, tzinfo=timezone.utc)
        self._write("session.jsonl", [_line(first + timedelta(hours=2 * i)) for i in range(14)])

        found = self.service.get_blocks(now, since=now - timedelta(days=1))

        assert [b.start_time.hour for b in found] == [1, 7, 13, 19, 1]
        assert [len(b.records) for b in found] == [3, 3, 3, 3, 2]

    def test_anchor_history_is_bounded(self):
        """Verify an unbroken history is read back no further than the anchor limit."""
        def load_records(since=None):
            records = [
                UsageRecord(timestamp=NOW - timedelta(hours=2 * i), tokens=TokenCounts(input_tokens=10))
                for i in range(24 * 60)
            ]
            return sorted((r for r in records if r.timestamp >= since), key=lambda r: r.timestamp)

        repository = MagicMock()
        repository.load_records.side_effect = load_records
        service = StatusService(repository, self.estimator, PricingResolver(offline=True))

        assert service.get_active_block(NOW) is not None
        earliest = min(c.kwargs["since"] for c in repository.load_records.call_args_list)
        assert earliest == NOW - MAX_ANCHOR_HISTORY


class TestStatusFallbacks:
    """Test fallback payloads on unexpected errors."""

    def setup_method(self):
        self.repository = MagicMock()
        self.repository.load_records.side_effect = RuntimeError("boom")
        self.estimator = MagicMock()
        self.service = StatusService(self.repository, self.estimator, PricingResolver(offline=True))

    def test_usage_summary_fallback(self):
        """Verify a failing read gives the documented fallback summary."""
        assert self.service.get_usage_summary(NOW) == FALLBACK_USAGE_SUMMARY
        assert FALLBACK_USAGE_SUMMARY.tokens_limit == FALLBACK_LIMIT

    def test_optional_segments_fallback_to_none(self):
        """Verify optional segments degrade to None."""
        assert self.service.get_burn_rate(NOW) is None
        assert self.service.get_session_timer(NOW) is None
        assert self.service.get_daily_cost(NOW) is None

    def test_build_status_never_raises(self):
        """Verify a full render survives a failing repository."""
        status = self.service.build_status(NOW)
        assert status.usage == FALLBACK_USAGE_SUMMARY
        assert status.burn_rate is None
        assert status.quota is None

    def test_quota_failure_falls_back(self):
        """Verify a failing estimator also yields the fallback summary."""
        self.repository.load_records.side_effect = None
        self.repository.load_records.return_value = [
            UsageRecord(timestamp=NOW, tokens=TokenCounts(input_tokens=1)),
        ]
        self.estimator.get_estimate.side_effect = RuntimeError("boom")
        assert self.service.get_usage_summary(NOW) == FALLBACK_USAGE_SUMMARY
