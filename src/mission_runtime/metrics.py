"""Tick metrics and logging setup for mission-runtime."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO

PACKAGE_LOGGER = "mission_runtime"
TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@dataclass
class TickMetrics:
	"""Counters collected during a single scheduler tick."""

	started_at: str = ""
	duration_s: float = 0.0
	schedules_seen: int = 0
	due: int = 0
	runs: int = 0
	succeeded: int = 0
	failed: int = 0
	dead_lettered: int = 0
	skipped: dict[str, int] = field(default_factory=dict)

	def count_skip(self, reason: str) -> None:
		self.skipped[reason] = self.skipped.get(reason, 0) + 1

	@property
	def failure_rate(self) -> float:
		"""Fraction of runs that failed."""
		if self.runs == 0:
			return 0.0
		return self.failed / self.runs

	def to_dict(self) -> dict[str, object]:
		return {
			"started_at": self.started_at,
			"duration_s": round(self.duration_s, 3),
			"schedules_seen": self.schedules_seen,
			"due": self.due,
			"runs": self.runs,
			"succeeded": self.succeeded,
			"failed": self.failed,
			"dead_lettered": self.dead_lettered,
			"failure_rate": round(self.failure_rate, 3),
			"skipped": dict(sorted(self.skipped.items())),
		}

	def to_json(self) -> str:
		return json.dumps(self.to_dict(), indent=2)


class Timer:
	"""Wall-clock timer; ``elapsed`` is filled in when the block exits."""

	def __init__(self) -> None:
		self._started: float | None = None
		self.elapsed: float = 0.0

	def __enter__(self) -> Timer:
		self._started = time.perf_counter()
		return self

	def __exit__(self, *exc: object) -> None:
		if self._started is not None:
			self.elapsed = time.perf_counter() - self._started

	@property
	def elapsed_ms(self) -> float:
		return self.elapsed * 1000.0


def setup_logging(level: str = "INFO", json_format: bool = False, stream: IO[str] | None = None) -> None:
	"""Attach a single stream handler to the package logger.

	Repeated calls adjust the level and formatter of the existing handler
	rather than stacking new ones. Unknown level names fall back to INFO.
	"""
	package_logger = logging.getLogger(PACKAGE_LOGGER)
	resolved = logging.getLevelName(level.upper())
	package_logger.setLevel(resolved if isinstance(resolved, int) else logging.INFO)

	formatter: logging.Formatter = _JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT)
	if package_logger.handlers:
		for existing in package_logger.handlers:
			existing.setFormatter(formatter)
		return

	handler = logging.StreamHandler(stream)
	handler.setFormatter(formatter)
	package_logger.addHandler(handler)


class _JsonFormatter(logging.Formatter):
	"""One JSON object per record, timestamped in UTC."""

	def format(self, record: logging.LogRecord) -> str:
		ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
		payload: dict[str, object] = {
			"ts": ts.isoformat(timespec="milliseconds"),
			"level": record.levelname,
			"logger": record.name,
			"msg": record.getMessage(),
		}
		if record.exc_info is not None and record.exc_info[1] is not None:
			exc = record.exc_info[1]
			payload["exception"] = str(exc)
			payload["exc_type"] = type(exc).__name__
		return json.dumps(payload)
