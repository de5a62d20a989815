"""Schema-versioned persistence of notification schedules.

One file per scope: ``user-context/<owner>/state/notification-schedules.json``
for an owner, ``global/state/notification-schedules.json`` otherwise. Payload
shape is ``{version, schedules, updated_at, migrated_at?}``; a legacy bare
JSON array is migrated on first load.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mission_runtime.constants import DEFAULT_TIMEZONE, NOTIFICATION_STORE_SCHEMA_VERSION
from mission_runtime.kvstore import PathLocks, TransactionalStore
from mission_runtime.models import NotificationSchedule, new_uuid, now_iso
from mission_runtime.path_security import DataLayout, sanitize_owner_id

logger = logging.getLogger(__name__)

SCHEDULES_FILE = ("state", "notification-schedules.json")

_DAILY_TIME_RE = re.compile(r"^(\d{2}):(\d{2})$")


@dataclass
class StorePayload:
	schedules: list[NotificationSchedule]
	updated_at: str
	migrated_at: str | None = None

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {
			"version": NOTIFICATION_STORE_SCHEMA_VERSION,
			"schedules": [s.model_dump(mode="json") for s in self.schedules],
			"updated_at": self.updated_at,
		}
		if self.migrated_at:
			data["migrated_at"] = self.migrated_at
		return data


def parse_daily_time(value: str) -> tuple[int, int] | None:
	"""Parse ``HH:MM`` (24h, zero-padded) into ``(hour, minute)``."""
	match = _DAILY_TIME_RE.match(value or "")
	if not match:
		return None
	hour, minute = int(match.group(1)), int(match.group(2))
	if hour > 23 or minute > 59:
		return None
	return hour, minute


def build_schedule(
	message: str,
	time: str,
	owner_id: str = "",
	schedule_id: str | None = None,
	label: str | None = None,
	timezone: str | None = None,
	enabled: bool = True,
	chat_ids: list[str] | None = None,
) -> NotificationSchedule:
	"""Create a fresh schedule with zeroed counters.

	Raises:
		pydantic.ValidationError: If the message is empty.
		ValueError: If ``time`` is not a valid ``HH:MM``.
	"""
	if parse_daily_time(time) is None:
		raise ValueError(f"Invalid daily time: {time!r}")
	stamp = now_iso()
	return NotificationSchedule(
		id=(schedule_id or "").strip() or new_uuid(),
		owner_id=sanitize_owner_id(owner_id),
		label=label or "",
		message=message.strip(),
		time=time,
		timezone=timezone or DEFAULT_TIMEZONE,
		enabled=enabled,
		chat_ids=chat_ids or [],
		created_at=stamp,
		updated_at=stamp,
	)


def _sort_key(schedule: NotificationSchedule) -> tuple[str, str]:
	return (schedule.created_at or "", schedule.id or "")


def normalize_payload(parsed: Any, owner_id: str) -> tuple[StorePayload, bool]:
	"""Validate a raw payload; returns ``(payload, mutated)``.

	``mutated`` is True when the normalized form differs from what was read
	(legacy layout, old version, dropped or reordered records) and should be
	written back.
	"""
	is_legacy = isinstance(parsed, list)
	obj = parsed if isinstance(parsed, dict) else {}
	rows = parsed if is_legacy else obj.get("schedules", [])
	if not isinstance(rows, list):
		rows = []

	schedules: list[NotificationSchedule] = []
	for row in rows:
		if not isinstance(row, dict):
			continue
		try:
			schedule = NotificationSchedule.model_validate(row)
		except ValidationError:
			logger.warning("Dropping invalid notification schedule for %s: %s", owner_id or "global", row.get("id"))
			continue
		if parse_daily_time(schedule.time) is None:
			logger.warning("Dropping notification schedule %s with invalid time %r", schedule.id, schedule.time)
			continue
		schedule.owner_id = owner_id
		schedules.append(schedule)
	schedules.sort(key=_sort_key)

	has_valid_version = obj.get("version") == NOTIFICATION_STORE_SCHEMA_VERSION
	payload = StorePayload(
		schedules=schedules,
		updated_at=obj.get("updated_at") if isinstance(obj.get("updated_at"), str) else now_iso(),
	)
	if is_legacy or not has_valid_version:
		payload.migrated_at = now_iso()
	elif isinstance(obj.get("migrated_at"), str) and obj["migrated_at"].strip():
		payload.migrated_at = obj["migrated_at"]

	source_rows = json.dumps(rows, sort_keys=True, default=str)
	normalized_rows = json.dumps([s.model_dump(mode="json") for s in schedules], sort_keys=True)
	mutated = is_legacy or not has_valid_version or source_rows != normalized_rows
	return payload, mutated


class NotificationStore:
	"""Load, save and update notification schedules for one scope at a time."""

	def __init__(self, layout: DataLayout, store: TransactionalStore) -> None:
		self._layout = layout
		self._store = store
		self._scope_locks = PathLocks()

	def path_for(self, owner_id: str | None) -> Path:
		return self._layout.scoped_file(owner_id, *SCHEDULES_FILE)

	async def load(self, owner_id: str | None) -> list[NotificationSchedule]:
		"""Schedules for a scope; never raises on corrupt or missing files."""
		owner = sanitize_owner_id(owner_id) if owner_id else ""
		path = self.path_for(owner or None)
		result = await self._store.load(path)
		if result.data is None:
			return []
		payload, mutated = normalize_payload(result.data, owner)
		if mutated:
			logger.info("Normalizing notification store %s", path)
			payload.updated_at = now_iso()
			await self._store.save(path, payload.to_dict())
		return payload.schedules

	async def save(self, owner_id: str | None, schedules: list[NotificationSchedule]) -> None:
		owner = sanitize_owner_id(owner_id) if owner_id else ""
		rows = sorted(
			(s.model_copy(update={"owner_id": owner}) for s in schedules),
			key=_sort_key,
		)
		payload = StorePayload(schedules=rows, updated_at=now_iso())
		await self._store.save(self.path_for(owner or None), payload.to_dict())

	def list_owners(self) -> list[str]:
		return [o for o in self._layout.list_owners() if self.path_for(o).exists()]

	async def get(self, owner_id: str | None, schedule_id: str) -> NotificationSchedule | None:
		for schedule in await self.load(owner_id):
			if schedule.id == schedule_id:
				return schedule
		return None

	async def upsert(self, owner_id: str | None, schedule: NotificationSchedule) -> NotificationSchedule:
		async with self._scope_locks.for_path(self.path_for(owner_id)):
			schedules = await self.load(owner_id)
			stored = schedule.model_copy(update={"updated_at": now_iso()})
			for idx, existing in enumerate(schedules):
				if existing.id == schedule.id:
					schedules[idx] = stored.model_copy(update={"created_at": existing.created_at})
					stored = schedules[idx]
					break
			else:
				schedules.append(stored)
			await self.save(owner_id, schedules)
		return stored

	async def update(
		self,
		owner_id: str | None,
		schedule_id: str,
		fn: Callable[[NotificationSchedule], NotificationSchedule | None],
	) -> NotificationSchedule | None:
		"""Apply ``fn`` to one schedule under the scope lock.

		Returns the persisted replacement, or None when the schedule is gone or
		``fn`` declined to change it.
		"""
		async with self._scope_locks.for_path(self.path_for(owner_id)):
			schedules = await self.load(owner_id)
			for idx, existing in enumerate(schedules):
				if existing.id == schedule_id:
					break
			else:
				return None
			replacement = fn(existing.model_copy(deep=True))
			if replacement is None:
				return None
			schedules[idx] = replacement
			await self.save(owner_id, schedules)
			return replacement

	async def delete(self, owner_id: str | None, schedule_id: str) -> bool:
		async with self._scope_locks.for_path(self.path_for(owner_id)):
			schedules = await self.load(owner_id)
			remaining = [s for s in schedules if s.id != schedule_id]
			if len(remaining) == len(schedules):
				return False
			await self.save(owner_id, remaining)
			return True
