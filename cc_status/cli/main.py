"""
CLI interface for cc-status.

With no subcommand, reads the assistant's hook JSON from stdin and prints
one status line. Subcommands inspect the accounting behind it.
"""

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cc_status.cli.git import GitInfo, get_git_info
from cc_status.config.loader import StatusConfig, load_default_config
from cc_status.core.metrics import burn_rate_level
from cc_status.core.pricing import PRICING_CACHE_TTL, PricingResolver
from cc_status.core.quota import QUOTA_CACHE_TTL, QuotaEstimator
from cc_status.core.status import StatusService, StatusSnapshot
from cc_status.storage.cache import TTLCache
from cc_status.storage.paths import get_claude_paths
from cc_status.storage.transcripts import TranscriptRepository

app = typer.Typer()
console = Console(highlight=False, soft_wrap=True)
status_console = Console(highlight=False, soft_wrap=True, force_terminal=True)
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

SEPARATOR = "  "
ICONS = {
    "git": "⑂",
    "subscription": "↻",
    "context": "◐",
    "burn_rate": "▲",
    "session_timer": "◷",
}
NEUTRAL = "grey62"


def build_service(config: StatusConfig, now: datetime) -> StatusService:
    """Wire repository, caches, estimator and pricing from configuration."""
    roots = [Path(p).expanduser() for p in config.paths] or get_claude_paths()
    repository = TranscriptRepository(roots, default_model=config.default_model)
    cache_dir = config.resolved_cache_dir()

    estimator = QuotaEstimator(
        repository,
        cache=TTLCache(QUOTA_CACHE_TTL, cache_dir),
        lookback_days=config.quota.lookback_days,
    )
    if config.quota.limit is not None:
        estimator.set_manual_limit(config.quota.limit, now)

    pricing = PricingResolver(
        cache=TTLCache(PRICING_CACHE_TTL, cache_dir),
        url=config.pricing.url,
        timeout=config.pricing.timeout_seconds,
        offline=config.pricing.offline,
    )
    return StatusService(repository, estimator, pricing, reset_override=config.quota.reset_time)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(levelname)s %(name)s: %(message)s",
        )
    else:
        # Keep recovered errors off the terminal the status line is drawn on
        logging.getLogger("cc_status").addHandler(logging.NullHandler())


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML config file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log diagnostics to stderr"
    ),
):
    """cc-status: usage, quota and cost status line."""
    _configure_logging(verbose)
    try:
        config = load_default_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        err_console.print(f"[red]Error loading config:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = config
    if ctx.invoked_subcommand is None:
        _render_from_stdin(config)


def _read_hook_data() -> Dict[str, Any]:
    try:
        data = json.loads(sys.stdin.read() or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _render_from_stdin(config: StatusConfig) -> None:
    if sys.stdin.isatty():
        err_console.print("[red]Error:[/] cc-status reads hook data from stdin")
        err_console.print("Configure it as the statusLine command of your assistant settings.")
        sys.exit(EXIT_CODE_FAIL)

    hook = _read_hook_data()
    workspace = hook.get("workspace") if isinstance(hook.get("workspace"), dict) else {}
    current_dir = workspace.get("current_dir") or hook.get("cwd") or str(Path.cwd())
    transcript_path = hook.get("transcript_path")

    now = _now()
    service = build_service(config, now)
    snapshot = service.build_status(now, transcript_path if isinstance(transcript_path, str) else None)
    git_info = get_git_info(current_dir) if config.segments.git else None

    status_console.print(render_status_line(snapshot, git_info, config))
    sys.exit(EXIT_CODE_PASS)


def format_tokens(tokens: int) -> str:
    """Compact token count: 950, 12.3k, 45.6M."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}k"
    return str(tokens)


def _format_currency(amount: float) -> str:
    """Dollar amount with thousands separators and two decimals; the sign is dropped."""
    return f"${abs(amount):,.2f}"


def _percentage_color(percentage: float) -> str:
    if percentage >= 80:
        return "red"
    if percentage >= 60:
        return "yellow"
    return "green"


def _render_git(git_info: GitInfo) -> str:
    status_icon = {"conflicts": "⚠", "dirty": "●"}.get(git_info.status, "✓")
    text = f"{ICONS['git']} {escape(git_info.branch)} {status_icon}"
    if git_info.ahead:
        text += f" ↑{git_info.ahead}"
    if git_info.behind:
        text += f" ↓{git_info.behind}"
    return f"[{NEUTRAL}]{text}[/]"


def render_status_line(
    snapshot: StatusSnapshot,
    git_info: Optional[GitInfo],
    config: StatusConfig,
) -> str:
    """Join the enabled segments into one line of rich markup."""
    segments = config.segments
    parts: List[str] = []

    if segments.git and git_info is not None:
        parts.append(_render_git(git_info))

    if segments.subscription:
        usage = snapshot.usage
        color = _percentage_color(usage.percentage)
        parts.append(
            f"[{NEUTRAL}]{ICONS['subscription']} [/]"
            f"[{color}]{usage.percentage:.1f}%[/]"
            f"[{NEUTRAL}] ({format_tokens(usage.tokens_used)}/{format_tokens(usage.tokens_limit)})[/]"
        )

    if segments.context and snapshot.context is not None:
        context = snapshot.context
        color = "yellow" if context.is_near_limit else NEUTRAL
        parts.append(f"[{color}]{ICONS['context']} {format_tokens(context.tokens)} ({context.percentage}%)[/]")

    if segments.burn_rate and snapshot.burn_rate is not None:
        burn = snapshot.burn_rate
        color = {"high": "red", "moderate": "yellow"}.get(burn_rate_level(burn.indicator_tokens_per_minute), NEUTRAL)
        parts.append(f"[{color}]{ICONS['burn_rate']} {_format_currency(burn.cost_per_hour)}/h[/]")

    if segments.session_timer and snapshot.session_timer is not None:
        timer = snapshot.session_timer
        color = "yellow" if timer.is_near_reset else NEUTRAL
        parts.append(
            f"[{color}]{ICONS['session_timer']} {timer.time_remaining_formatted} ({timer.reset_time_formatted})[/]"
        )

    if segments.daily_cost and snapshot.daily_cost is not None:
        parts.append(f"[{NEUTRAL}]{_format_currency(snapshot.daily_cost.cost)} today[/]")

    return SEPARATOR.join(parts)


@app.command()
def blocks(
    ctx: typer.Context,
    days: int = typer.Option(
        1,
        "--days",
        "-d",
        help="How many days of history to partition"
    ),
):
    """Show the rolling usage blocks found in recent transcripts."""
    if days <= 0:
        err_console.print("[red]Error:[/] --days must be > 0")
        sys.exit(EXIT_CODE_FAIL)

    now = _now()
    service = build_service(ctx.obj, now)
    found = service.get_blocks(now, since=now - timedelta(days=days))

    if not found:
        console.print("\n[bold yellow]No usage found in the selected window[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Usage Blocks")
    table.add_column("Start (UTC)")
    table.add_column("End (UTC)")
    table.add_column("Records", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Models")
    table.add_column("Active")

    for block in found:
        table.add_row(
            block.start_time.strftime("%Y-%m-%d %H:%M"),
            block.end_time.strftime("%Y-%m-%d %H:%M"),
            str(len(block.records)),
            f"{block.total_tokens:,}",
            ", ".join(block.models),
            "[green]yes[/]" if block.is_active(now) else "",
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quota(
    ctx: typer.Context,
    refresh: bool = typer.Option(
        False,
        "--refresh",
        "-r",
        help="Discard the cached estimate and recompute"
    ),
):
    """Show the current rolling-window quota estimate."""
    now = _now()
    service = build_service(ctx.obj, now)
    if refresh and ctx.obj.quota.limit is None:
        service.quota_estimator.invalidate()

    estimate = service.quota_estimator.get_estimate(now)
    usage = service.get_usage_summary(now)

    console.print("\n[bold]Quota Estimate[/bold]")
    console.print("-" * 40)
    console.print(f"Limit: {estimate.limit:,} tokens ({format_tokens(estimate.limit)})")
    console.print(f"Confidence: {estimate.confidence.name.lower()}")
    console.print(f"Source: {estimate.source.value}")
    console.print(f"Computed at: {estimate.computed_at.isoformat()}")
    console.print(f"Current block: {usage.tokens_used:,} tokens ({usage.percentage:.1f}%)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def daily(ctx: typer.Context):
    """Show today's estimated cost across all sessions."""
    now = _now()
    service = build_service(ctx.obj, now)
    summary = service.get_daily_cost(now)
    if summary is None:
        console.print("[yellow]Daily cost unavailable[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"Today: {_format_currency(summary.cost)}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
