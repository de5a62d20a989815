"""Calendar aggregator collaborator.

The runtime only needs the events in a window to run the conflict check. The
HTTP implementation talks to an aggregator service that merges the owner's
personal calendars with scheduled missions.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from mission_runtime.config import CalendarConfig
from mission_runtime.models import CalendarEvent

logger = logging.getLogger(__name__)


class CalendarAggregator(Protocol):
	async def list_events(
		self, owner_id: str, window_start: datetime, window_end: datetime,
	) -> list[CalendarEvent]: ...


class StaticCalendarAggregator:
	"""Returns a fixed event list; used when no aggregator endpoint is configured."""

	def __init__(self, events: list[CalendarEvent] | None = None) -> None:
		self.events = list(events or [])

	async def list_events(
		self, owner_id: str, window_start: datetime, window_end: datetime,
	) -> list[CalendarEvent]:
		return [e for e in self.events if e.start_at < window_end and window_start < e.end_at]


class HttpCalendarAggregator:
	"""Calendar aggregator client using httpx."""

	def __init__(self, config: CalendarConfig, client: httpx.AsyncClient | None = None) -> None:
		self._config = config
		self._client = client
		self._owns_client = client is None

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			headers = {"Authorization": f"Bearer {self._config.api_token}"} if self._config.api_token else {}
			self._client = httpx.AsyncClient(timeout=float(self._config.timeout), headers=headers)
		return self._client

	async def list_events(
		self, owner_id: str, window_start: datetime, window_end: datetime,
	) -> list[CalendarEvent]:
		"""Fetch events overlapping the window.

		Raises:
			httpx.HTTPError: On transport failure or a non-2xx response.
		"""
		client = await self._ensure_client()
		resp = await client.get(
			f"{self._config.base_url}/calendar/events",
			params={
				"owner_id": owner_id,
				"start": window_start.isoformat(),
				"end": window_end.isoformat(),
			},
		)
		resp.raise_for_status()
		body: Any = resp.json()
		rows = body.get("events", []) if isinstance(body, dict) else body
		events: list[CalendarEvent] = []
		for row in rows if isinstance(rows, list) else []:
			try:
				events.append(CalendarEvent.model_validate(row))
			except ValidationError:
				logger.debug("Ignoring malformed calendar event: %s", row)
		return events

	async def close(self) -> None:
		if self._client is not None and self._owns_client:
			await self._client.aclose()
			self._client = None
