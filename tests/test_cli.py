"""
Tests for the CLI interface.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from cc_status.cli.git import GitInfo
from cc_status.cli.main import (
    EXIT_CODE_FAIL,
    EXIT_CODE_PASS,
    _format_currency,
    app,
    format_tokens,
    render_status_line,
)
from cc_status.config.loader import SegmentsConfig, StatusConfig
from cc_status.core.blocks import identify_blocks
from cc_status.core.context import ContextInfo
from cc_status.core.metrics import BurnRateSummary, DailyCostSummary, SessionTimerSummary, UsageSummary
from cc_status.core.quota import QuotaConfidence, QuotaEstimate, QuotaSource
from cc_status.core.records import TokenCounts, UsageRecord
from cc_status.core.status import StatusSnapshot

runner = CliRunner()

NOW = datetime(2025, 1, 1, 14, 30, tzinfo=timezone.utc)


def _snapshot(**overrides):
    values = dict(
        usage=UsageSummary(percentage=12.5, tokens_used=5_700_000, tokens_limit=45_600_000, is_over_limit=False),
        burn_rate=BurnRateSummary(
            tokens_per_minute=2000.0,
            indicator_tokens_per_minute=1200.0,
            cost_per_hour=1.2,
            projection=None,
        ),
        session_timer=SessionTimerSummary(
            time_remaining_formatted="2h 5m",
            reset_time_formatted="6PM",
            is_near_reset=False,
            time_remaining_ms=7_500_000,
        ),
        daily_cost=DailyCostSummary(cost=3.21),
        context=ContextInfo(tokens=45_000, percentage=23, is_near_limit=False),
        quota=None,
    )
    values.update(overrides)
    return StatusSnapshot(**values)


@pytest.fixture
def mock_config():
    """Use default configuration regardless of files on the test machine."""
    with patch('cc_status.cli.main.load_default_config') as mock:
        mock.return_value = StatusConfig()
        yield mock


@pytest.fixture
def mock_service():
    """Mock the status service factory."""
    with patch('cc_status.cli.main.build_service') as mock:
        yield mock.return_value


@pytest.fixture
def mock_git():
    """Mock git lookups."""
    with patch('cc_status.cli.main.get_git_info') as mock:
        mock.return_value = GitInfo(branch="main", status="dirty", ahead=2, behind=0)
        yield mock


class TestRenderStatusLine:
    """Test status line composition."""

    def test_all_segments(self):
        """Test that every enabled segment is rendered."""
        line = render_status_line(_snapshot(), GitInfo("main", "dirty", ahead=2), StatusConfig())

        assert "main ●" in line
        assert "↑2" in line
        assert "12.5%" in line
        assert "(5.7M/45.6M)" in line
        assert "45.0k (23%)" in line
        assert "$1.20/h" in line
        assert "2h 5m (6PM)" in line
        assert "$3.21 today" in line

    def test_disabled_segments_hidden(self):
        """Test that disabled segments are left out."""
        config = StatusConfig(segments=SegmentsConfig(git=False, burn_rate=False, daily_cost=False))
        line = render_status_line(_snapshot(), GitInfo("main", "clean"), config)

        assert "main" not in line
        assert "/h" not in line
        assert "today" not in line
        assert "12.5%" in line

    def test_missing_segments_skipped(self):
        """Test that unavailable figures are skipped rather than shown as errors."""
        snapshot = _snapshot(burn_rate=None, session_timer=None, daily_cost=None, context=None)
        line = render_status_line(snapshot, None, StatusConfig())
        assert "12.5%" in line
        assert "/h" not in line

    def test_branch_markup_escaped(self):
        """Test that branch names cannot inject markup."""
        line = render_status_line(_snapshot(), GitInfo("[bold]x", "clean"), StatusConfig())
        assert "\\[bold]x" in line


@pytest.mark.parametrize("tokens,expected", [(950, "950"), (12_345, "12.3k"), (45_600_000, "45.6M")])
def test_format_tokens(tokens, expected):
    """Test compact token formatting."""
    assert format_tokens(tokens) == expected


@pytest.mark.parametrize("amount,expected", [
    (0.0, "$0.00"),
    (3.456, "$3.46"),
    (1234567.891, "$1,234,567.89"),
    (-12.5, "$12.50"),
])
def test_format_currency(amount, expected):
    """Test dollar formatting drops the sign and groups thousands."""
    assert _format_currency(amount) == expected


class TestCLI:
    """Test CLI commands."""

    def test_render_from_hook_json(self, mock_config, mock_service, mock_git):
        """Test the default command renders a status line from stdin."""
        mock_service.build_status.return_value = _snapshot()
        hook = {"transcript_path": "/tmp/session.jsonl", "workspace": {"current_dir": "/work/repo"}}

        result = runner.invoke(app, [], input=json.dumps(hook))

        assert result.exit_code == EXIT_CODE_PASS
        assert "12.5%" in result.output
        mock_git.assert_called_once_with("/work/repo")
        args, kwargs = mock_service.build_status.call_args
        assert args[1] == "/tmp/session.jsonl"

    def test_render_with_invalid_json(self, mock_config, mock_service, mock_git):
        """Test that unreadable hook data still renders."""
        mock_service.build_status.return_value = _snapshot()

        result = runner.invoke(app, [], input="not json")

        assert result.exit_code == EXIT_CODE_PASS
        args, kwargs = mock_service.build_status.call_args
        assert args[1] is None

    def test_config_error_exits_nonzero(self, mock_config):
        """Test that a bad config file fails with exit code 1."""
        mock_config.side_effect = ValueError("Unknown keys in configuration: {'x'}")

        result = runner.invoke(app, ["daily"])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_quota_command(self, mock_config, mock_service):
        """Test the quota command shows the estimate."""
        mock_service.quota_estimator.get_estimate.return_value = QuotaEstimate(
            40_000_000, QuotaConfidence.HIGH, QuotaSource.HISTORICAL_ANALYSIS, NOW
        )
        mock_service.get_usage_summary.return_value = UsageSummary(10.0, 4_000_000, 40_000_000, False)

        result = runner.invoke(app, ["quota"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "40,000,000" in result.output
        assert "high" in result.output
        assert "historical_analysis" in result.output
        mock_service.quota_estimator.invalidate.assert_not_called()

    def test_quota_refresh(self, mock_config, mock_service):
        """Test --refresh discards the cached estimate."""
        mock_service.quota_estimator.get_estimate.return_value = QuotaEstimate(
            45_600_000, QuotaConfidence.FALLBACK, QuotaSource.FALLBACK, NOW
        )
        mock_service.get_usage_summary.return_value = UsageSummary(0.0, 0, 45_600_000, False)

        result = runner.invoke(app, ["quota", "--refresh"])

        assert result.exit_code == EXIT_CODE_PASS
        mock_service.quota_estimator.invalidate.assert_called_once()

    def test_blocks_command(self, mock_config, mock_service):
        """Test the blocks command lists blocks."""
        records = [
            UsageRecord(timestamp=NOW - timedelta(hours=30), tokens=TokenCounts(input_tokens=1234), model_id="m"),
            UsageRecord(timestamp=NOW - timedelta(hours=1), tokens=TokenCounts(output_tokens=10), model_id="m"),
        ]
        mock_service.get_blocks.return_value = identify_blocks(records)

        result = runner.invoke(app, ["blocks", "--days", "2"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage Blocks" in result.output
        assert "1,234" in result.output

    def test_blocks_empty(self, mock_config, mock_service):
        """Test the blocks command with no usage."""
        mock_service.get_blocks.return_value = []

        result = runner.invoke(app, ["blocks"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage found" in result.output

    def test_blocks_invalid_days(self, mock_config):
        """Test that a non-positive window is rejected."""
        result = runner.invoke(app, ["blocks", "--days", "0"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_daily_command(self, mock_config, mock_service):
        """Test the daily command shows today's cost."""
        mock_service.get_daily_cost.return_value = DailyCostSummary(cost=12.5)

        result = runner.invoke(app, ["daily"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "$12.50" in result.output
