"""Per-owner history of scheduled run attempts.

The scheduler consults it before each run to decide whether a failed local
day may be retried and how long it has to wait first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from mission_runtime.applog import AppendOnlyLog
from mission_runtime.models import RunRecord, RunStatus
from mission_runtime.path_security import DataLayout

logger = logging.getLogger(__name__)

RUN_LOG_FILE = ("state", "notification-runs.jsonl")


def run_key_for(schedule_id: str, local_day: str) -> str:
	return f"{schedule_id}:{local_day}"


@dataclass
class RunKeyHistory:
	run_key: str
	attempts: int = 0
	latest_status: RunStatus | None = None
	latest_ts: datetime | None = None


class RunLog:
	def __init__(self, layout: DataLayout, log: AppendOnlyLog) -> None:
		self._layout = layout
		self._log = log

	def path_for(self, owner_id: str) -> Path:
		return self._layout.owner_dir(owner_id).joinpath(*RUN_LOG_FILE)

	async def record(self, owner_id: str, record: RunRecord) -> None:
		await self._log.append(self.path_for(owner_id), record.model_dump(mode="json", exclude_none=True))

	def list_records(self, owner_id: str, schedule_id: str | None = None) -> list[RunRecord]:
		records: list[RunRecord] = []
		for raw in self._log.read_records(self.path_for(owner_id)):
			if schedule_id and raw.get("schedule_id") != schedule_id:
				continue
			try:
				records.append(RunRecord.model_validate(raw))
			except ValidationError:
				logger.debug("Skipping malformed run record for %s", raw.get("schedule_id"))
		return records

	def history(self, owner_id: str, schedule_id: str, run_key: str) -> RunKeyHistory:
		"""Attempt count and latest outcome for one run key, in file order."""
		history = RunKeyHistory(run_key=run_key)
		for record in self.list_records(owner_id, schedule_id):
			if record.run_key != run_key:
				continue
			history.attempts += 1
			history.latest_status = record.status
			history.latest_ts = record.ts
		return history

	async def purge_for_mission(self, owner_id: str, mission_id: str) -> int:
		return await self._log.rewrite(
			self.path_for(owner_id),
			lambda record: record.get("schedule_id") != mission_id,
		)
