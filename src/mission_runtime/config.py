"""TOML configuration loader for mission-runtime."""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mission_runtime.constants import (
	DEFAULT_LIMITS,
	DEFAULT_MAX_ATTEMPTS_PER_RUN_KEY,
	DEFAULT_RETRY_BASE_SECONDS,
	DEFAULT_RETRY_MAX_SECONDS,
	DEFAULT_TICK_INTERVAL,
	DEFAULT_TIMEZONE,
	DEFAULT_WINDOW_MINUTES,
	MAX_ATTEMPTS_PER_RUN_KEY,
	MAX_RETRY_DELAY_SECONDS,
	MAX_TICK_INTERVAL,
	MAX_WINDOW_MINUTES,
	MIN_RETRY_BASE_SECONDS,
	MIN_TICK_INTERVAL,
	RESCHEDULE_PAST_BUFFER_SECONDS,
	SLO_MAX_LOOKBACK_DAYS,
	SLO_MIN_LOOKBACK_DAYS,
)


@dataclass
class StorageConfig:
	"""Where owner-scoped state lives."""

	data_dir: str = ".mission-runtime"

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.data_dir))


@dataclass
class SchedulerConfig:
	"""Tick loop settings."""

	tick_interval: int = DEFAULT_TICK_INTERVAL  # seconds between ticks
	window_minutes: int = DEFAULT_WINDOW_MINUTES  # lateness still counted as due
	max_runs_per_tick: int = DEFAULT_LIMITS["max_runs_per_tick"]
	max_runs_per_owner_per_tick: int = DEFAULT_LIMITS["max_runs_per_owner_per_tick"]
	execution_timeout: int = DEFAULT_LIMITS["execution_timeout"]
	default_timezone: str = DEFAULT_TIMEZONE
	max_attempts_per_run_key: int = DEFAULT_MAX_ATTEMPTS_PER_RUN_KEY
	retry_base_seconds: int = DEFAULT_RETRY_BASE_SECONDS
	retry_max_seconds: int = DEFAULT_RETRY_MAX_SECONDS


@dataclass
class RescheduleConfig:
	"""Reschedule write path settings."""

	past_buffer_seconds: int = RESCHEDULE_PAST_BUFFER_SECONDS
	conflict_window_hours: int = 12
	duration_base_seconds: int = 30
	duration_per_node_seconds: int = 45


@dataclass
class CalendarConfig:
	"""Calendar aggregator endpoint."""

	base_url: str = ""
	api_token: str = ""
	timeout: int = DEFAULT_LIMITS["calendar_timeout"]


@dataclass
class TelegramConfig:
	"""Telegram delivery settings."""

	bot_token: str = ""
	parse_mode: str = "Markdown"


@dataclass
class DiscordConfig:
	"""Discord webhook delivery settings."""

	enabled: bool = True


@dataclass
class DeliveryConfig:
	"""Output delivery settings."""

	timeout: int = DEFAULT_LIMITS["delivery_timeout"]
	circuit_breaker_enabled: bool = True
	circuit_breaker_max_failures: int = 3
	circuit_breaker_cooldown_seconds: int = 300
	telegram: TelegramConfig = field(default_factory=TelegramConfig)
	discord: DiscordConfig = field(default_factory=DiscordConfig)


@dataclass
class AutofixConfig:
	"""Workflow autofix policy."""

	low_risk_confidence_threshold: float = 0.85
	max_fix_candidates: int = 20
	default_ai_integration: str = "claude"
	default_output_channel: str = "telegram"
	default_fetch_query: str = "latest updates"
	default_condition_field: str = "data.value"
	min_ai_prompt_chars: int = 24


@dataclass
class SloConfig:
	"""SLO thresholds evaluated over telemetry."""

	lookback_days: int = 7
	success_rate_floor: float = 0.95
	latency_p95_ceiling_ms: float = 30000.0
	delivery_success_rate_floor: float = 0.98
	at_risk_margin: float = 0.02  # fraction of the threshold treated as at-risk


@dataclass
class LoggingConfig:
	level: str = "INFO"
	json_format: bool = False


@dataclass
class RuntimeConfig:
	"""Top-level mission-runtime configuration."""

	storage: StorageConfig = field(default_factory=StorageConfig)
	scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
	reschedule: RescheduleConfig = field(default_factory=RescheduleConfig)
	calendar: CalendarConfig = field(default_factory=CalendarConfig)
	delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
	autofix: AutofixConfig = field(default_factory=AutofixConfig)
	slo: SloConfig = field(default_factory=SloConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)


def _clamp(value: int, low: int, high: int) -> int:
	return max(low, min(high, value))


def _build_storage(data: dict[str, Any]) -> StorageConfig:
	sc = StorageConfig()
	if "data_dir" in data:
		sc.data_dir = str(data["data_dir"])
	return sc


def _build_scheduler(data: dict[str, Any]) -> SchedulerConfig:
	sc = SchedulerConfig()
	if "tick_interval" in data:
		sc.tick_interval = _clamp(int(data["tick_interval"]), MIN_TICK_INTERVAL, MAX_TICK_INTERVAL)
	if "window_minutes" in data:
		sc.window_minutes = _clamp(int(data["window_minutes"]), 0, MAX_WINDOW_MINUTES)
	for key in ("max_runs_per_tick", "max_runs_per_owner_per_tick", "execution_timeout"):
		if key in data:
			setattr(sc, key, max(1, int(data[key])))
	if "default_timezone" in data:
		sc.default_timezone = str(data["default_timezone"])
	if "max_attempts_per_run_key" in data:
		sc.max_attempts_per_run_key = _clamp(int(data["max_attempts_per_run_key"]), 1, MAX_ATTEMPTS_PER_RUN_KEY)
	if "retry_base_seconds" in data:
		sc.retry_base_seconds = _clamp(int(data["retry_base_seconds"]), MIN_RETRY_BASE_SECONDS, MAX_RETRY_DELAY_SECONDS)
	if "retry_max_seconds" in data:
		sc.retry_max_seconds = _clamp(int(data["retry_max_seconds"]), MIN_RETRY_BASE_SECONDS, MAX_RETRY_DELAY_SECONDS)
	# The ceiling never drops below the base delay
	sc.retry_max_seconds = max(sc.retry_max_seconds, sc.retry_base_seconds)
	return sc


def _build_reschedule(data: dict[str, Any]) -> RescheduleConfig:
	rc = RescheduleConfig()
	for key in ("past_buffer_seconds", "conflict_window_hours", "duration_base_seconds", "duration_per_node_seconds"):
		if key in data:
			setattr(rc, key, max(0, int(data[key])))
	return rc


def _build_calendar(data: dict[str, Any]) -> CalendarConfig:
	cc = CalendarConfig()
	if "base_url" in data:
		cc.base_url = str(data["base_url"]).rstrip("/")
	if "api_token" in data:
		cc.api_token = str(data["api_token"])
	if "timeout" in data:
		cc.timeout = max(1, int(data["timeout"]))
	return cc


def _build_delivery(data: dict[str, Any]) -> DeliveryConfig:
	dc = DeliveryConfig()
	if "timeout" in data:
		dc.timeout = max(1, int(data["timeout"]))
	if "circuit_breaker_enabled" in data:
		dc.circuit_breaker_enabled = bool(data["circuit_breaker_enabled"])
	for key in ("circuit_breaker_max_failures", "circuit_breaker_cooldown_seconds"):
		if key in data:
			setattr(dc, key, max(1, int(data[key])))
	if "telegram" in data:
		tg = data["telegram"]
		dc.telegram = TelegramConfig(
			bot_token=str(tg.get("bot_token", "")),
			parse_mode=str(tg.get("parse_mode", "Markdown")),
		)
	if "discord" in data:
		dc.discord = DiscordConfig(enabled=bool(data["discord"].get("enabled", True)))
	return dc


def _build_autofix(data: dict[str, Any]) -> AutofixConfig:
	ac = AutofixConfig()
	if "low_risk_confidence_threshold" in data:
		ac.low_risk_confidence_threshold = min(1.0, max(0.0, float(data["low_risk_confidence_threshold"])))
	if "max_fix_candidates" in data:
		ac.max_fix_candidates = max(1, int(data["max_fix_candidates"]))
	if "min_ai_prompt_chars" in data:
		ac.min_ai_prompt_chars = max(0, int(data["min_ai_prompt_chars"]))
	for key in ("default_ai_integration", "default_output_channel", "default_fetch_query", "default_condition_field"):
		if key in data:
			setattr(ac, key, str(data[key]))
	return ac


def _build_slo(data: dict[str, Any]) -> SloConfig:
	sc = SloConfig()
	if "lookback_days" in data:
		sc.lookback_days = _clamp(int(data["lookback_days"]), SLO_MIN_LOOKBACK_DAYS, SLO_MAX_LOOKBACK_DAYS)
	for key in ("success_rate_floor", "latency_p95_ceiling_ms", "delivery_success_rate_floor", "at_risk_margin"):
		if key in data:
			setattr(sc, key, float(data[key]))
	return sc


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	lc = LoggingConfig()
	if "level" in data:
		lc.level = str(data["level"]).upper()
	if "json_format" in data:
		lc.json_format = bool(data["json_format"])
	return lc


def load_config(path: str | Path) -> RuntimeConfig:
	"""Load a mission-runtime.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed RuntimeConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	rc = RuntimeConfig()
	if "storage" in data:
		rc.storage = _build_storage(data["storage"])
	if "scheduler" in data:
		rc.scheduler = _build_scheduler(data["scheduler"])
	if "reschedule" in data:
		rc.reschedule = _build_reschedule(data["reschedule"])
	if "calendar" in data:
		rc.calendar = _build_calendar(data["calendar"])
	if "delivery" in data:
		rc.delivery = _build_delivery(data["delivery"])
	if "autofix" in data:
		rc.autofix = _build_autofix(data["autofix"])
	if "slo" in data:
		rc.slo = _build_slo(data["slo"])
	if "logging" in data:
		rc.logging = _build_logging(data["logging"])
	# Allow env vars as fallback for credentials
	if not rc.delivery.telegram.bot_token:
		rc.delivery.telegram.bot_token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
	if not rc.calendar.api_token:
		rc.calendar.api_token = os.environ.get("CALENDAR_API_TOKEN", "")
	return rc


_TELEGRAM_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


def validate_config(config: RuntimeConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded RuntimeConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	data_dir = config.storage.resolved_path
	if data_dir.exists() and not os.access(data_dir, os.W_OK):
		issues.append(("error", f"storage.data_dir is not writable: {data_dir}"))
	elif data_dir.exists() and not data_dir.is_dir():
		issues.append(("error", f"storage.data_dir is not a directory: {data_dir}"))

	try:
		ZoneInfo(config.scheduler.default_timezone)
	except (ZoneInfoNotFoundError, ValueError):
		issues.append(("error", f"scheduler.default_timezone is unknown: {config.scheduler.default_timezone}"))

	tg = config.delivery.telegram
	if tg.bot_token and not _TELEGRAM_TOKEN_RE.match(tg.bot_token):
		issues.append(("error", "telegram bot_token format invalid (expected digits:alphanumeric)"))
	if not tg.bot_token:
		issues.append(("warning", "telegram bot_token is empty; telegram outputs will fail"))

	if config.calendar.base_url and not config.calendar.base_url.startswith(("http://", "https://")):
		issues.append(("error", f"calendar.base_url must be http(s): {config.calendar.base_url}"))

	threshold = config.autofix.low_risk_confidence_threshold
	if threshold < 0.5:
		issues.append(("warning", f"autofix low_risk_confidence_threshold is low: {threshold}"))

	for name in ("success_rate_floor", "delivery_success_rate_floor"):
		value = getattr(config.slo, name)
		if not 0.0 <= value <= 1.0:
			issues.append(("error", f"slo.{name} must be between 0 and 1: {value}"))

	if config.scheduler.execution_timeout >= config.scheduler.tick_interval * 10:
		issues.append(("warning", f"execution_timeout is long relative to tick_interval: {config.scheduler.execution_timeout}s"))

	return issues
