"""Append-only mission telemetry, the input to SLO evaluation."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from mission_runtime.applog import AppendOnlyLog
from mission_runtime.models import TelemetryEvent, as_utc
from mission_runtime.path_security import DataLayout

logger = logging.getLogger(__name__)

TELEMETRY_FILE = ("logs", "mission-telemetry.jsonl")

# Event types emitted by the scheduler
EVENT_MISSION_RUN = "mission_run"
EVENT_DELIVERY = "delivery"


class TelemetryLog:
	def __init__(self, layout: DataLayout, log: AppendOnlyLog) -> None:
		self._layout = layout
		self._log = log

	def _path(self, owner_id: str) -> Path:
		return self._layout.owner_dir(owner_id).joinpath(*TELEMETRY_FILE)

	async def append(self, event: TelemetryEvent) -> None:
		await self._log.append(self._path(event.owner_id), event.model_dump(mode="json", exclude_none=True))

	def list_events(self, owner_id: str, since: datetime | None = None) -> list[TelemetryEvent]:
		"""Events in file order, optionally only those at or after ``since``."""
		if since is not None:
			since = as_utc(since)
		events: list[TelemetryEvent] = []
		for record in self._log.read_records(self._path(owner_id)):
			try:
				event = TelemetryEvent.model_validate(record)
			except ValidationError:
				logger.debug("Skipping malformed telemetry record")
				continue
			if since is not None and event.ts < since:
				continue
			events.append(event)
		return events

	async def purge_for_mission(self, owner_id: str, mission_id: str) -> int:
		return await self._log.rewrite(
			self._path(owner_id),
			lambda record: record.get("mission_id") != mission_id,
		)
