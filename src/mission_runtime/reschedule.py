"""Reschedule overrides and the reschedule write path.

Overrides live in ``user-context/<owner>/calendar/calendar-overrides.json``,
separate from the mission graph, so calendar drags never bump a mission's
version or race with graph edits.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mission_runtime.calendar import CalendarAggregator
from mission_runtime.config import RescheduleConfig
from mission_runtime.conflict import has_conflict
from mission_runtime.constants import DEFAULT_TIMEZONE, RESCHEDULE_STORE_SCHEMA_VERSION
from mission_runtime.errors import MissionNotFoundError, RescheduleValidationError
from mission_runtime.kvstore import PathLocks, TransactionalStore
from mission_runtime.mission_store import MissionStore
from mission_runtime.models import Mission, RescheduleOverride, now_iso
from mission_runtime.path_security import DataLayout, sanitize_owner_id
from mission_runtime.scheduling import (
	ensure_aware,
	local_parts,
	resolve_effective_trigger,
	resolve_zone,
	trigger_settings,
)

logger = logging.getLogger(__name__)

OVERRIDES_FILE = ("calendar", "calendar-overrides.json")


class RescheduleStore:
	"""Per-owner override records keyed by mission id."""

	def __init__(self, layout: DataLayout, store: TransactionalStore) -> None:
		self._layout = layout
		self._store = store
		self._owner_locks = PathLocks()

	def _path(self, owner_id: str) -> Path:
		return self._layout.owner_dir(owner_id).joinpath(*OVERRIDES_FILE)

	async def _load(self, owner_id: str) -> list[RescheduleOverride]:
		result = await self._store.load(self._path(owner_id))
		data: Any = result.data
		rows = data.get("overrides", []) if isinstance(data, dict) else data
		overrides: list[RescheduleOverride] = []
		for row in rows if isinstance(rows, list) else []:
			try:
				record = RescheduleOverride.model_validate(row)
			except ValidationError:
				logger.warning("Dropping invalid reschedule override for %s", owner_id)
				continue
			record.owner_id = owner_id
			overrides.append(record)
		return overrides

	async def _save(self, owner_id: str, overrides: list[RescheduleOverride]) -> None:
		await self._store.save(self._path(owner_id), {
			"version": RESCHEDULE_STORE_SCHEMA_VERSION,
			"overrides": [o.model_dump(mode="json") for o in overrides],
			"updated_at": now_iso(),
		})

	async def list_overrides(self, owner_id: str) -> list[RescheduleOverride]:
		owner = sanitize_owner_id(owner_id)
		if not owner:
			return []
		return await self._load(owner)

	async def get(self, owner_id: str, mission_id: str) -> RescheduleOverride | None:
		for record in await self.list_overrides(owner_id):
			if record.mission_id == mission_id:
				return record
		return None

	async def upsert(self, override: RescheduleOverride) -> RescheduleOverride:
		owner = sanitize_owner_id(override.owner_id)
		async with self._owner_locks.for_path(self._path(owner)):
			overrides = await self._load(owner)
			stored = override.model_copy(update={"owner_id": owner, "updated_at": now_iso()})
			for idx, existing in enumerate(overrides):
				if existing.mission_id == stored.mission_id:
					stored = stored.model_copy(update={"created_at": existing.created_at})
					overrides[idx] = stored
					break
			else:
				overrides.append(stored)
			await self._save(owner, overrides)
		return stored

	async def delete(self, owner_id: str, mission_id: str) -> bool:
		owner = sanitize_owner_id(owner_id)
		if not owner:
			return False
		async with self._owner_locks.for_path(self._path(owner)):
			overrides = await self._load(owner)
			remaining = [o for o in overrides if o.mission_id != mission_id]
			if len(remaining) == len(overrides):
				return False
			await self._save(owner, remaining)
			return True


@dataclass
class RescheduleResult:
	override: RescheduleOverride
	conflict: bool


def estimate_duration(mission: Mission, config: RescheduleConfig) -> timedelta:
	return timedelta(seconds=config.duration_base_seconds + config.duration_per_node_seconds * len(mission.nodes))


class RescheduleService:
	"""Validates and persists reschedule requests, flagging calendar conflicts.

	The conflict flag is advisory: the override is stored either way.
	"""

	def __init__(
		self,
		missions: MissionStore,
		overrides: RescheduleStore,
		calendar: CalendarAggregator,
		config: RescheduleConfig | None = None,
		calendar_timeout: float = 10.0,
		default_timezone: str = DEFAULT_TIMEZONE,
	) -> None:
		self._missions = missions
		self._overrides = overrides
		self._calendar = calendar
		self._config = config or RescheduleConfig()
		self._calendar_timeout = calendar_timeout
		self._default_timezone = default_timezone

	async def set_override(
		self,
		owner_id: str,
		mission_id: str,
		new_start_at: datetime,
		now: datetime | None = None,
	) -> RescheduleResult:
		"""Store an override for ``mission_id`` at ``new_start_at``.

		Raises:
			RescheduleValidationError: If ``new_start_at`` is too far in the past.
			MissionNotFoundError: If the mission does not exist.
		"""
		now = ensure_aware(now or datetime.now(timezone.utc))
		new_start_at = ensure_aware(new_start_at)
		if new_start_at < now - timedelta(seconds=self._config.past_buffer_seconds):
			raise RescheduleValidationError(
				f"new_start_at {new_start_at.isoformat()} is more than "
				f"{self._config.past_buffer_seconds // 60} minutes in the past"
			)

		owner = sanitize_owner_id(owner_id)
		mission = await self._missions.get(owner, mission_id)
		if mission is None:
			raise MissionNotFoundError(owner, mission_id)

		conflict = await self._check_conflict(owner, mission, new_start_at)

		existing = await self._overrides.get(owner, mission_id)
		if existing is not None:
			original_time = existing.original_time
		else:
			_, tz_name, _ = trigger_settings(mission, None, self._default_timezone)
			day = local_parts(new_start_at, resolve_zone(tz_name, self._default_timezone)).day
			original_time = resolve_effective_trigger(mission, None, None, day, self._default_timezone).trigger_at

		stored = await self._overrides.upsert(RescheduleOverride(
			owner_id=owner,
			mission_id=mission_id,
			new_start_at=new_start_at,
			original_time=original_time,
		))
		logger.info(
			"Rescheduled mission %s for %s to %s (conflict=%s)",
			mission_id, owner, new_start_at.isoformat(), conflict,
		)
		return RescheduleResult(override=stored, conflict=conflict)

	async def _check_conflict(self, owner_id: str, mission: Mission, start_at: datetime) -> bool:
		window = timedelta(hours=self._config.conflict_window_hours)
		end_at = start_at + estimate_duration(mission, self._config)
		try:
			events = await asyncio.wait_for(
				self._calendar.list_events(owner_id, start_at - window, start_at + window),
				timeout=self._calendar_timeout,
			)
		except Exception as exc:
			logger.warning("Calendar aggregation failed for %s, assuming no conflict: %s", owner_id, exc)
			return False
		return has_conflict(events, start_at, end_at, exclude_id=mission.id)

	async def delete_override(self, owner_id: str, mission_id: str) -> bool:
		removed = await self._overrides.delete(owner_id, mission_id)
		if removed:
			logger.info("Removed reschedule override for mission %s", mission_id)
		return removed
