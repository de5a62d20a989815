"""Transactional key-value storage with atomic commit and last-good retention.

``JsonFileStore`` writes through a temp file and an atomic rename, then keeps
the previous good payload in a sibling ``.bak`` file. ``MemoryStore`` offers the
same interface without touching disk so the stores built on top can run
against either backend.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

logger = logging.getLogger(__name__)

LoadSource = Literal["primary", "backup", "missing"]


@dataclass
class LoadResult:
	"""Payload returned by ``load``; ``data`` is None when nothing usable was found."""

	data: Any = None
	source: LoadSource = "missing"


class PathLocks:
	"""In-process lock registry keyed by resolved path.

	Serializes writers to the same file inside one process. It is owned by the
	store instance that creates it, so separate instances never share state.
	"""

	def __init__(self) -> None:
		self._locks: dict[str, asyncio.Lock] = {}

	def for_path(self, path: Path | str) -> asyncio.Lock:
		key = str(Path(path).resolve())
		lock = self._locks.get(key)
		if lock is None:
			lock = asyncio.Lock()
			self._locks[key] = lock
		return lock

	def __len__(self) -> int:
		return len(self._locks)


class TransactionalStore(Protocol):
	"""Minimal storage contract used by the mission, schedule and override stores."""

	async def load(self, key: Path) -> LoadResult: ...

	async def save(self, key: Path, payload: Any) -> None: ...


def backup_path(path: Path) -> Path:
	return path.with_name(f"{path.name}.bak")


def atomic_write_bytes(path: Path, body: bytes) -> None:
	"""Write ``body`` to a temp file beside ``path`` and rename it into place."""
	path.parent.mkdir(parents=True, exist_ok=True)
	tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{secrets.token_hex(8)}.tmp")
	try:
		with open(tmp_path, "wb") as f:
			f.write(body)
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_path, path)
	except BaseException:
		tmp_path.unlink(missing_ok=True)
		raise


def atomic_write_text(path: Path, body: str) -> None:
	atomic_write_bytes(path, body.encode("utf-8"))


def _read_json(path: Path) -> tuple[Any, str] | None:
	"""Return ``(parsed, raw_text)`` or None if the file is missing, empty or invalid."""
	try:
		raw = path.read_text(encoding="utf-8")
	except (OSError, UnicodeDecodeError) as exc:
		if not isinstance(exc, FileNotFoundError):
			logger.warning("Cannot read store file %s: %s", path, exc)
		return None
	if not raw.strip():
		return None
	try:
		return json.loads(raw), raw
	except (json.JSONDecodeError, ValueError):
		return None


class JsonFileStore:
	"""File-backed ``TransactionalStore`` with ``.bak`` fallback."""

	def __init__(self, locks: PathLocks | None = None) -> None:
		self.locks = locks or PathLocks()

	async def load(self, key: Path) -> LoadResult:
		"""Read the primary file, falling back to its backup. Never raises."""
		primary = _read_json(key)
		if primary is not None:
			return LoadResult(data=primary[0], source="primary")

		backup = _read_json(backup_path(key))
		if backup is not None:
			if key.exists():
				logger.warning("Primary store file %s unreadable, restoring from backup", key)
			try:
				async with self.locks.for_path(key):
					atomic_write_text(key, backup[1])
			except OSError as exc:
				logger.warning("Failed to restore %s from backup: %s", key, exc)
			return LoadResult(data=backup[0], source="backup")

		if key.exists():
			logger.error("Store file %s and its backup are unreadable, using defaults", key)
		return LoadResult()

	async def save(self, key: Path, payload: Any) -> None:
		body = json.dumps(payload, indent=2) + "\n"
		async with self.locks.for_path(key):
			previous = _read_json(key)
			atomic_write_text(key, body)
			# Last good content is retained only once the new primary is in place.
			retained = previous[1] if previous is not None else body
			try:
				atomic_write_text(backup_path(key), retained)
			except OSError as exc:
				logger.warning("Backup write failed for %s: %s", key, exc)


class MemoryStore:
	"""In-memory ``TransactionalStore``; payloads are stored serialized so callers never share objects."""

	def __init__(self) -> None:
		self._data: dict[str, str] = {}
		self._backups: dict[str, str] = {}
		self.locks = PathLocks()

	async def load(self, key: Path) -> LoadResult:
		raw = self._data.get(str(key))
		if raw is None:
			return LoadResult()
		return LoadResult(data=json.loads(raw), source="primary")

	async def save(self, key: Path, payload: Any) -> None:
		async with self.locks.for_path(key):
			previous = self._data.get(str(key))
			self._data[str(key)] = json.dumps(payload)
			if previous is not None:
				self._backups[str(key)] = previous

	def keys(self) -> list[str]:
		return sorted(self._data)
