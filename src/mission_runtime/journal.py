"""Operation journal: append-only audit trail of applied diff batches."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from mission_runtime.applog import AppendOnlyLog
from mission_runtime.constants import DEFAULT_LIMITS
from mission_runtime.models import DiffOperation, JournalEntry
from mission_runtime.path_security import DataLayout

logger = logging.getLogger(__name__)

JOURNAL_FILE = ("logs", "mission-journal.jsonl")


class OperationJournal:
	"""One JSONL file per owner under ``logs/mission-journal.jsonl``."""

	def __init__(self, layout: DataLayout, log: AppendOnlyLog) -> None:
		self._layout = layout
		self._log = log

	def _path(self, owner_id: str) -> Path:
		return self._layout.owner_dir(owner_id).joinpath(*JOURNAL_FILE)

	async def record(
		self,
		owner_id: str,
		mission_id: str,
		actor: str,
		operations: list[DiffOperation],
		previous_version: int,
		resulting_version: int,
	) -> JournalEntry:
		entry = JournalEntry(
			owner_id=owner_id,
			mission_id=mission_id,
			actor=actor.strip()[:128] or "unknown",
			operations=[op.model_dump(mode="json") for op in operations],
			previous_version=previous_version,
			resulting_version=resulting_version,
		)
		await self._log.append(self._path(owner_id), entry.model_dump(mode="json"))
		return entry

	def list_for_mission(
		self, owner_id: str, mission_id: str, limit: int = DEFAULT_LIMITS["journal_list_limit"],
	) -> list[JournalEntry]:
		"""Entries for one mission, newest first."""
		entries: list[JournalEntry] = []
		for record in self._log.read_records(self._path(owner_id)):
			if record.get("mission_id") != mission_id:
				continue
			try:
				entries.append(JournalEntry.model_validate(record))
			except ValidationError:
				logger.warning("Skipping malformed journal entry for mission %s", mission_id)
		entries.reverse()
		return entries[:max(1, limit)]

	async def purge_for_mission(self, owner_id: str, mission_id: str) -> int:
		return await self._log.rewrite(
			self._path(owner_id),
			lambda record: record.get("mission_id") != mission_id,
		)
