"""Append-only JSON-Lines logs with tolerant reads and atomic rewrites."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mission_runtime.kvstore import PathLocks, atomic_write_bytes

logger = logging.getLogger(__name__)


@dataclass
class LogLine:
	"""One non-empty line of a log, kept as the exact bytes read from disk.

	``record`` is None when the line is not valid UTF-8 or not a JSON object.
	"""

	raw: bytes
	record: dict[str, Any] | None

	@property
	def parsed(self) -> bool:
		return self.record is not None


def _parse_line(raw: bytes) -> dict[str, Any] | None:
	try:
		value = json.loads(raw.decode("utf-8"))
	except (UnicodeDecodeError, json.JSONDecodeError, ValueError):
		return None
	return value if isinstance(value, dict) else None


class AppendOnlyLog:
	"""JSONL file operations shared by the journal, dead-letter and telemetry logs.

	Appends and rewrites of the same file are serialized through ``locks``.
	"""

	def __init__(self, locks: PathLocks | None = None) -> None:
		self.locks = locks or PathLocks()

	async def append(self, path: Path, record: dict[str, Any]) -> None:
		line = json.dumps(record, separators=(",", ":")) + "\n"
		async with self.locks.for_path(path):
			path.parent.mkdir(parents=True, exist_ok=True)
			with path.open("a", encoding="utf-8") as f:
				f.write(line)

	def iter_lines(self, path: Path) -> Iterator[LogLine]:
		"""Yield every non-blank line; unparseable lines come back with ``record=None``.

		Lines are decoded one at a time so a corrupt byte only spoils its own line.
		"""
		try:
			data = path.read_bytes()
		except FileNotFoundError:
			return
		for chunk in data.split(b"\n"):
			if not chunk.strip():
				continue
			yield LogLine(raw=chunk, record=_parse_line(chunk))

	def read_records(self, path: Path) -> list[dict[str, Any]]:
		"""Parsed records in file order, skipping lines that fail to parse."""
		records: list[dict[str, Any]] = []
		skipped = 0
		for line in self.iter_lines(path):
			if line.record is None:
				skipped += 1
				continue
			records.append(line.record)
		if skipped:
			logger.warning("Skipped %d unparseable line(s) in %s", skipped, path)
		return records

	async def rewrite(self, path: Path, keep: Callable[[dict[str, Any]], bool]) -> int:
		"""Atomically drop parsed records for which ``keep`` is False.

		Unparseable lines are written back byte for byte. Returns the number of
		records removed; the file is left untouched when nothing matches.
		"""
		async with self.locks.for_path(path):
			lines = list(self.iter_lines(path))
			kept = [line.raw for line in lines if line.record is None or keep(line.record)]
			removed = len(lines) - len(kept)
			if removed == 0:
				return 0
			atomic_write_bytes(path, b"".join(raw + b"\n" for raw in kept))
			return removed
