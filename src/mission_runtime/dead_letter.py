"""Dead-letter log for failed notification deliveries."""

from __future__ import annotations

import logging
import time
from pathlib import Path

from pydantic import ValidationError

from mission_runtime.applog import AppendOnlyLog
from mission_runtime.constants import DEFAULT_LIMITS
from mission_runtime.models import DeadLetterEntry, new_uuid
from mission_runtime.path_security import DataLayout, sanitize_owner_id

logger = logging.getLogger(__name__)

DEAD_LETTER_FILE = "notification-dead-letter.jsonl"


class DeadLetterLog:
	"""JSONL dead-letter records, one file per owner plus a global file."""

	def __init__(self, layout: DataLayout, log: AppendOnlyLog) -> None:
		self._layout = layout
		self._log = log

	def path_for(self, owner_id: str | None) -> Path:
		if owner_id and sanitize_owner_id(owner_id):
			return self._layout.scoped_file(owner_id, "state", DEAD_LETTER_FILE)
		return self._layout.scoped_file(None, DEAD_LETTER_FILE)

	async def append(self, entry: DeadLetterEntry) -> DeadLetterEntry:
		"""Persist ``entry`` with a fresh id and timestamp."""
		stored = entry.model_copy(update={
			"id": new_uuid(),
			"ts": int(time.time() * 1000),
			"owner_id": sanitize_owner_id(entry.owner_id) or None,
		})
		await self._log.append(
			self.path_for(stored.owner_id),
			stored.model_dump(mode="json", exclude_none=True),
		)
		logger.warning(
			"Dead-lettered schedule %s (%s): %s",
			stored.schedule_id, stored.source, stored.reason,
		)
		return stored

	def list(
		self,
		owner_id: str | None,
		schedule_id: str | None = None,
		limit: int = DEFAULT_LIMITS["dead_letter_list_limit"],
	) -> list[DeadLetterEntry]:
		"""Entries newest first; unparseable lines are skipped."""
		entries: list[DeadLetterEntry] = []
		for record in self._log.read_records(self.path_for(owner_id)):
			if schedule_id and record.get("schedule_id") != schedule_id:
				continue
			try:
				entries.append(DeadLetterEntry.model_validate(record))
			except ValidationError:
				logger.debug("Skipping malformed dead-letter record %s", record.get("id"))
		entries.sort(key=lambda e: e.ts, reverse=True)
		return entries[:max(1, limit)]

	async def purge_for_mission(self, owner_id: str | None, mission_id: str) -> int:
		"""Drop every entry whose ``schedule_id`` is ``mission_id``.

		Lines that do not parse are kept as they are.
		"""
		target = (mission_id or "").strip()
		if not target:
			return 0
		removed = await self._log.rewrite(
			self.path_for(owner_id),
			lambda record: str(record.get("schedule_id") or "") != target,
		)
		if removed:
			logger.info("Purged %d dead-letter entr%s for mission %s", removed, "y" if removed == 1 else "ies", target)
		return removed
