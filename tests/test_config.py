"""Tests for config loading."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from mission_runtime.config import RuntimeConfig, load_config, validate_config
from mission_runtime.constants import (
	DEFAULT_MAX_ATTEMPTS_PER_RUN_KEY,
	DEFAULT_TIMEZONE,
	MAX_ATTEMPTS_PER_RUN_KEY,
	MAX_TICK_INTERVAL,
	MIN_RETRY_BASE_SECONDS,
	SLO_MAX_LOOKBACK_DAYS,
)


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "mission-runtime.toml"
	toml.write_text(f"""\
[storage]
data_dir = "{tmp_path / 'data'}"

[scheduler]
tick_interval = 60
window_minutes = 15
max_runs_per_tick = 5
max_runs_per_owner_per_tick = 2
execution_timeout = 90
default_timezone = "Europe/Berlin"

[reschedule]
past_buffer_seconds = 300
conflict_window_hours = 6

[calendar]
base_url = "https://calendar.example.com/"
api_token = "cal-secret"
timeout = 5

[delivery]
timeout = 8
circuit_breaker_max_failures = 5

[delivery.telegram]
bot_token = "123:abc"
parse_mode = "HTML"

[delivery.discord]
enabled = false

[autofix]
low_risk_confidence_threshold = 0.9
default_ai_integration = "openai"

[slo]
lookback_days = 14
success_rate_floor = 0.9

[logging]
level = "debug"
json_format = true
""")
	return toml


class TestLoadConfig:
	def test_full_config(self, full_config: Path, tmp_path: Path) -> None:
		config = load_config(full_config)
		assert config.storage.resolved_path == tmp_path / "data"
		assert config.scheduler.tick_interval == 60
		assert config.scheduler.window_minutes == 15
		assert config.scheduler.max_runs_per_owner_per_tick == 2
		assert config.scheduler.default_timezone == "Europe/Berlin"
		assert config.reschedule.past_buffer_seconds == 300
		assert config.reschedule.conflict_window_hours == 6
		assert config.calendar.base_url == "https://calendar.example.com"
		assert config.calendar.timeout == 5
		assert config.delivery.telegram.parse_mode == "HTML"
		assert config.delivery.discord.enabled is False
		assert config.delivery.circuit_breaker_max_failures == 5
		assert config.autofix.low_risk_confidence_threshold == 0.9
		assert config.autofix.default_ai_integration == "openai"
		assert config.slo.lookback_days == 14
		assert config.slo.success_rate_floor == 0.9
		assert config.logging.level == "DEBUG"
		assert config.logging.json_format is True

	def test_empty_file_gives_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
		toml = tmp_path / "mission-runtime.toml"
		toml.write_text("")
		config = load_config(toml)
		assert config.scheduler.default_timezone == DEFAULT_TIMEZONE
		assert config.scheduler.window_minutes == 10
		assert config.autofix.low_risk_confidence_threshold == 0.85
		assert config.delivery.telegram.bot_token == ""

	def test_values_are_clamped(self, tmp_path: Path) -> None:
		toml = tmp_path / "mission-runtime.toml"
		toml.write_text("""\
[scheduler]
tick_interval = 99999
max_runs_per_tick = 0

[slo]
lookback_days = 365

[autofix]
low_risk_confidence_threshold = 4.0
""")
		config = load_config(toml)
		assert config.scheduler.tick_interval == MAX_TICK_INTERVAL
		assert config.scheduler.max_runs_per_tick == 1
		assert config.slo.lookback_days == SLO_MAX_LOOKBACK_DAYS
		assert config.autofix.low_risk_confidence_threshold == 1.0

	def test_retry_settings(self, tmp_path: Path) -> None:
		toml = tmp_path / "mission-runtime.toml"
		toml.write_text("[scheduler]\nmax_attempts_per_run_key = 50\nretry_base_seconds = 1\nretry_max_seconds = 5\n")
		config = load_config(toml)
		assert config.scheduler.max_attempts_per_run_key == MAX_ATTEMPTS_PER_RUN_KEY
		assert config.scheduler.retry_base_seconds == MIN_RETRY_BASE_SECONDS
		assert config.scheduler.retry_max_seconds == MIN_RETRY_BASE_SECONDS

		toml.write_text("[scheduler]\nretry_base_seconds = 600\nretry_max_seconds = 120\n")
		config = load_config(toml)
		assert config.scheduler.retry_max_seconds == 600
		assert config.scheduler.max_attempts_per_run_key == DEFAULT_MAX_ATTEMPTS_PER_RUN_KEY

	def test_env_fallback_for_credentials(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "999:env")
		monkeypatch.setenv("CALENDAR_API_TOKEN", "cal-env")
		toml = tmp_path / "mission-runtime.toml"
		toml.write_text("[delivery.telegram]\nparse_mode = \"Markdown\"\n")
		config = load_config(toml)
		assert config.delivery.telegram.bot_token == "999:env"
		assert config.calendar.api_token == "cal-env"

	def test_file_value_wins_over_env(self, full_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "999:env")
		assert load_config(full_config).delivery.telegram.bot_token == "123:abc"

	def test_missing_file(self, tmp_path: Path) -> None:
		with pytest.raises(FileNotFoundError):
			load_config(tmp_path / "nope.toml")

	def test_invalid_toml(self, tmp_path: Path) -> None:
		toml = tmp_path / "mission-runtime.toml"
		toml.write_text("[scheduler\n")
		with pytest.raises(tomllib.TOMLDecodeError):
			load_config(toml)


class TestValidateConfig:
	def _valid(self, tmp_path: Path) -> RuntimeConfig:
		config = RuntimeConfig()
		config.storage.data_dir = str(tmp_path)
		config.delivery.telegram.bot_token = "123:abc"
		return config

	def test_valid_config_has_no_issues(self, tmp_path: Path) -> None:
		assert validate_config(self._valid(tmp_path)) == []

	def test_unknown_timezone(self, tmp_path: Path) -> None:
		config = self._valid(tmp_path)
		config.scheduler.default_timezone = "Mars/Olympus"
		issues = validate_config(config)
		assert ("error", "scheduler.default_timezone is unknown: Mars/Olympus") in issues

	def test_token_format_and_empty_token(self, tmp_path: Path) -> None:
		config = self._valid(tmp_path)
		config.delivery.telegram.bot_token = "not-a-token"
		assert [lvl for lvl, _ in validate_config(config)] == ["error"]
		config.delivery.telegram.bot_token = ""
		assert [lvl for lvl, _ in validate_config(config)] == ["warning"]

	def test_calendar_url_and_slo_bounds(self, tmp_path: Path) -> None:
		config = self._valid(tmp_path)
		config.calendar.base_url = "ftp://calendar"
		config.slo.success_rate_floor = 1.5
		messages = [msg for _, msg in validate_config(config)]
		assert any("calendar.base_url" in m for m in messages)
		assert any("slo.success_rate_floor" in m for m in messages)

	def test_data_dir_is_a_file(self, tmp_path: Path) -> None:
		config = self._valid(tmp_path)
		target = tmp_path / "file"
		target.write_text("x")
		config.storage.data_dir = str(target)
		assert validate_config(config) == [("error", f"storage.data_dir is not a directory: {target}")]
