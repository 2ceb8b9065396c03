"""
Configuration management and loading.

Handles the YAML settings file and environment variable overrides.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from cc_status.core.pricing import DEFAULT_PRICING_URL, DEFAULT_TIMEOUT_SECONDS
from cc_status.core.quota import DEFAULT_LOOKBACK_DAYS
from cc_status.core.records import DEFAULT_MODEL_ID, parse_timestamp

PROJECT_CONFIG_NAME = ".cc-status.yaml"
ENV_PREFIX = "CC_STATUS_"
SEGMENT_NAMES = ("git", "subscription", "context", "burn_rate", "session_timer", "daily_cost")


@dataclass(frozen=True)
class QuotaConfig:
    """Quota overrides and detection settings."""
    limit: Optional[int] = None
    reset_time: Optional[datetime] = None
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    def __post_init__(self):
        """Validate quota values."""
        if self.limit is not None and self.limit <= 0:
            raise ValueError("quota.limit must be > 0")
        if self.lookback_days <= 0:
            raise ValueError("quota.lookback_days must be > 0")


@dataclass(frozen=True)
class PricingConfig:
    """Where prices come from."""
    url: str = DEFAULT_PRICING_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    offline: bool = False

    def __post_init__(self):
        """Validate the fetch timeout."""
        if self.timeout_seconds <= 0:
            raise ValueError("pricing.timeout_seconds must be > 0")


@dataclass(frozen=True)
class SegmentsConfig:
    """Which status segments are shown."""
    git: bool = True
    subscription: bool = True
    context: bool = True
    burn_rate: bool = True
    session_timer: bool = True
    daily_cost: bool = True


@dataclass(frozen=True)
class StatusConfig:
    """Complete cc-status configuration."""
    paths: Tuple[str, ...] = ()
    default_model: str = DEFAULT_MODEL_ID
    cache_dir: Optional[str] = None
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    segments: SegmentsConfig = field(default_factory=SegmentsConfig)

    def resolved_cache_dir(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return Path.home() / ".claude" / "cache"


def load_config(path: str) -> StatusConfig:
    """Load and validate configuration from a YAML file.

    Strict validation: unknown keys and wrong types are errors, never
    silently ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated StatusConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return StatusConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    _check_keys(raw_config, {'paths', 'default_model', 'cache_dir', 'quota', 'pricing', 'segments'}, "configuration")

    paths = raw_config.get('paths', [])
    if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
        raise ValueError("'paths' must be a list of strings")

    default_model = raw_config.get('default_model', DEFAULT_MODEL_ID)
    if not isinstance(default_model, str) or not default_model.strip():
        raise ValueError("'default_model' must be a non-empty string")

    cache_dir = raw_config.get('cache_dir')
    if cache_dir is not None and not isinstance(cache_dir, str):
        raise ValueError("'cache_dir' must be a string")

    return StatusConfig(
        paths=tuple(paths),
        default_model=default_model,
        cache_dir=cache_dir,
        quota=_parse_quota(_section(raw_config, 'quota')),
        pricing=_parse_pricing(_section(raw_config, 'pricing')),
        segments=_parse_segments(_section(raw_config, 'segments')),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_quota(data: Dict) -> QuotaConfig:
    _check_keys(data, {'limit', 'reset_time', 'lookback_days'}, "quota")

    limit = data.get('limit')
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0):
        raise ValueError("'limit' in quota must be a positive integer")

    lookback_days = data.get('lookback_days', DEFAULT_LOOKBACK_DAYS)
    if isinstance(lookback_days, bool) or not isinstance(lookback_days, int) or lookback_days <= 0:
        raise ValueError("'lookback_days' in quota must be a positive integer")

    return QuotaConfig(
        limit=limit,
        reset_time=_parse_reset_time(data.get('reset_time')),
        lookback_days=lookback_days,
    )


def _parse_reset_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    # PyYAML already turns unquoted ISO timestamps into datetimes
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("'reset_time' in quota must be an ISO-8601 timestamp")
    return parsed


def _parse_pricing(data: Dict) -> PricingConfig:
    _check_keys(data, {'url', 'timeout_seconds', 'offline'}, "pricing")

    url = data.get('url', DEFAULT_PRICING_URL)
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ValueError("'url' in pricing must be an http(s) URL")

    timeout = data.get('timeout_seconds', DEFAULT_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("'timeout_seconds' in pricing must be > 0")

    offline = data.get('offline', False)
    if not isinstance(offline, bool):
        raise ValueError("'offline' in pricing must be a boolean")

    return PricingConfig(url=url, timeout_seconds=float(timeout), offline=offline)


def _parse_segments(data: Dict) -> SegmentsConfig:
    _check_keys(data, set(SEGMENT_NAMES), "segments")
    for name, value in data.items():
        if not isinstance(value, bool):
            raise ValueError(f"'{name}' in segments must be a boolean")
    return SegmentsConfig(**data)


def find_config_file(
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Optional[Path]:
    """Locate the first existing config file.

    Order: ``./.cc-status.yaml``, ``~/.claude/cc-status.yaml``,
    ``$XDG_CONFIG_HOME/cc-status/config.yaml``.
    """
    env = os.environ if env is None else env
    cwd = Path.cwd() if cwd is None else Path(cwd)
    home = Path.home()
    xdg = Path(env.get("XDG_CONFIG_HOME") or home / ".config")

    for candidate in (
        cwd / PROJECT_CONFIG_NAME,
        home / ".claude" / "cc-status.yaml",
        xdg / "cc-status" / "config.yaml",
    ):
        if candidate.is_file():
            return candidate
    return None


def apply_env_overrides(config: StatusConfig, env: Mapping[str, str]) -> StatusConfig:
    """Apply ``CC_STATUS_*`` environment overrides.

    ``CC_STATUS_QUOTA_LIMIT`` sets the quota limit and
    ``CC_STATUS_<SEGMENT>_ENABLED`` toggles a segment.

    Raises:
        ValueError: If an override value is invalid
    """
    raw_limit = env.get(f"{ENV_PREFIX}QUOTA_LIMIT")
    if raw_limit:
        try:
            limit = int(raw_limit)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}QUOTA_LIMIT must be an integer")
        config = replace(config, quota=replace(config.quota, limit=limit))

    toggles = {}
    for name in SEGMENT_NAMES:
        value = env.get(f"{ENV_PREFIX}{name.upper()}_ENABLED")
        if value:
            toggles[name] = value.strip().lower() == "true"
    if toggles:
        config = replace(config, segments=replace(config.segments, **toggles))

    return config


def load_default_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> StatusConfig:
    """Load the effective configuration.

    An explicit ``path`` must exist; otherwise the discovered file, or the
    defaults when there is none. Environment overrides are applied last.
    """
    env = os.environ if env is None else env
    config_path = path or find_config_file(cwd=cwd, env=env)
    config = load_config(str(config_path)) if config_path else StatusConfig()
    return apply_env_overrides(config, env)
