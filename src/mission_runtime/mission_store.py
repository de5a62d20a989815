"""Per-owner mission persistence."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError

from mission_runtime.constants import MISSION_STORE_SCHEMA_VERSION
from mission_runtime.errors import MissionNotFoundError
from mission_runtime.kvstore import PathLocks, TransactionalStore
from mission_runtime.models import Mission, now_iso
from mission_runtime.path_security import DataLayout, sanitize_owner_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

MISSIONS_FILE = ("state", "missions.json")


class MissionStore:
	"""CRUD over ``user-context/<owner>/state/missions.json``.

	Read-modify-write operations for one owner are serialized through an owner
	lock held by this instance.
	"""

	def __init__(self, layout: DataLayout, store: TransactionalStore) -> None:
		self._layout = layout
		self._store = store
		self._owner_locks = PathLocks()

	def _path(self, owner_id: str) -> Path:
		return self._layout.owner_dir(owner_id).joinpath(*MISSIONS_FILE)

	def _parse(self, payload: Any, owner_id: str) -> list[Mission]:
		rows = payload.get("missions", []) if isinstance(payload, dict) else payload
		if not isinstance(rows, list):
			return []
		missions: list[Mission] = []
		for row in rows:
			try:
				mission = Mission.model_validate(row)
			except ValidationError as exc:
				logger.warning("Dropping invalid mission record for %s: %s", owner_id, exc.errors()[:1])
				continue
			mission.owner_id = owner_id
			missions.append(mission)
		return missions

	async def _load(self, owner_id: str) -> list[Mission]:
		result = await self._store.load(self._path(owner_id))
		if result.data is None:
			return []
		return self._parse(result.data, owner_id)

	async def _save(self, owner_id: str, missions: list[Mission]) -> None:
		await self._store.save(self._path(owner_id), {
			"version": MISSION_STORE_SCHEMA_VERSION,
			"missions": [m.model_dump(mode="json") for m in missions],
			"updated_at": now_iso(),
		})

	async def list_missions(self, owner_id: str) -> list[Mission]:
		return await self._load(sanitize_owner_id(owner_id))

	async def get(self, owner_id: str, mission_id: str) -> Mission | None:
		for mission in await self.list_missions(owner_id):
			if mission.id == mission_id:
				return mission
		return None

	async def upsert(self, mission: Mission) -> Mission:
		owner = sanitize_owner_id(mission.owner_id)
		async with self._owner_locks.for_path(self._path(owner)):
			missions = await self._load(owner)
			stored = mission.model_copy(update={"owner_id": owner}, deep=True)
			for idx, existing in enumerate(missions):
				if existing.id == stored.id:
					missions[idx] = stored
					break
			else:
				missions.append(stored)
			await self._save(owner, missions)
		return stored

	async def update(
		self,
		owner_id: str,
		mission_id: str,
		fn: Callable[[Mission], tuple[Mission | None, T]],
	) -> T:
		"""Run ``fn`` on the stored mission under the owner lock.

		``fn`` returns ``(replacement_or_None, outcome)``; a replacement is
		persisted before the lock is released.

		Raises:
			MissionNotFoundError: If the mission does not exist.
		"""
		owner = sanitize_owner_id(owner_id)
		async with self._owner_locks.for_path(self._path(owner)):
			missions = await self._load(owner)
			for idx, existing in enumerate(missions):
				if existing.id == mission_id:
					break
			else:
				raise MissionNotFoundError(owner, mission_id)
			replacement, outcome = fn(existing)
			if replacement is not None:
				missions[idx] = replacement.model_copy(update={"owner_id": owner})
				await self._save(owner, missions)
			return outcome

	async def delete(self, owner_id: str, mission_id: str) -> bool:
		"""Remove the mission record entirely. Returns False when it was absent."""
		owner = sanitize_owner_id(owner_id)
		async with self._owner_locks.for_path(self._path(owner)):
			missions = await self._load(owner)
			remaining = [m for m in missions if m.id != mission_id]
			if len(remaining) == len(missions):
				return False
			await self._save(owner, remaining)
			return True

	def list_owners(self) -> list[str]:
		return [o for o in self._layout.list_owners() if self._path(o).exists()]
