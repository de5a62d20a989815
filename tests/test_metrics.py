"""Tests for tick metrics and structured logging."""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Iterator

import pytest

from mission_runtime.metrics import TickMetrics, Timer, _JsonFormatter, setup_logging


class TestTickMetrics:
	def test_defaults(self) -> None:
		m = TickMetrics()
		assert m.runs == 0
		assert m.skipped == {}
		assert m.failure_rate == 0.0

	def test_failure_rate(self) -> None:
		m = TickMetrics(runs=4, succeeded=3, failed=1)
		assert m.failure_rate == 0.25

	def test_count_skip(self) -> None:
		m = TickMetrics()
		m.count_skip("owner_cap")
		m.count_skip("owner_cap")
		m.count_skip("mission_missing")
		assert m.skipped == {"owner_cap": 2, "mission_missing": 1}

	def test_to_dict_and_json(self) -> None:
		m = TickMetrics(duration_s=1.23456, runs=3, failed=1, dead_lettered=1)
		m.count_skip("tick_cap")
		m.count_skip("already_sent")
		d = m.to_dict()
		assert d["duration_s"] == 1.235
		assert d["failure_rate"] == 0.333
		assert json.dumps(d["skipped"]) == '{"already_sent": 1, "tick_cap": 1}'
		assert json.loads(m.to_json())["dead_lettered"] == 1


class TestTimer:
	def test_timer_records_elapsed(self) -> None:
		with Timer() as t:
			time.sleep(0.01)
		assert t.elapsed > 0.0
		assert t.elapsed_ms == t.elapsed * 1000.0

	def test_timer_defaults(self) -> None:
		assert Timer().elapsed == 0.0


class TestJsonFormatter:
	def test_format_basic_record(self) -> None:
		record = logging.LogRecord(
			name="mission_runtime.scheduler",
			level=logging.WARNING,
			pathname="",
			lineno=0,
			msg="Tick skipped (%d skips)",
			args=(2,),
			exc_info=None,
		)
		data = json.loads(_JsonFormatter().format(record))
		assert data["level"] == "WARNING"
		assert data["logger"] == "mission_runtime.scheduler"
		assert data["msg"] == "Tick skipped (2 skips)"
		assert "ts" in data
		assert "exception" not in data

	def test_format_includes_exception(self) -> None:
		try:
			raise RuntimeError("boom")
		except RuntimeError:
			exc_info = sys.exc_info()
		record = logging.LogRecord("x", logging.ERROR, "", 0, "failed", (), exc_info)
		data = json.loads(_JsonFormatter().format(record))
		assert data["exception"] == "boom"
		assert data["exc_type"] == "RuntimeError"


@pytest.fixture()
def package_logger() -> Iterator[logging.Logger]:
	root = logging.getLogger("mission_runtime")
	saved_handlers, saved_level = root.handlers[:], root.level
	root.handlers.clear()
	yield root
	root.handlers[:] = saved_handlers
	root.setLevel(saved_level)


class TestSetupLogging:
	def test_setup_creates_handler(self, package_logger: logging.Logger) -> None:
		setup_logging(level="DEBUG")
		assert len(package_logger.handlers) == 1
		assert package_logger.level == logging.DEBUG

	def test_setup_json_format(self, package_logger: logging.Logger) -> None:
		setup_logging(level="INFO", json_format=True)
		assert isinstance(package_logger.handlers[0].formatter, _JsonFormatter)

	def test_setup_idempotent(self, package_logger: logging.Logger) -> None:
		"""Calling setup_logging twice doesn't add duplicate handlers."""
		setup_logging(level="INFO")
		setup_logging(level="warning")
		assert len(package_logger.handlers) == 1
		assert package_logger.level == logging.WARNING

	def test_unknown_level_falls_back_to_info(self, package_logger: logging.Logger) -> None:
		setup_logging(level="chatty")
		assert package_logger.level == logging.INFO

	def test_second_call_switches_formatter(self, package_logger: logging.Logger) -> None:
		setup_logging()
		setup_logging(json_format=True)
		assert len(package_logger.handlers) == 1
		assert isinstance(package_logger.handlers[0].formatter, _JsonFormatter)
