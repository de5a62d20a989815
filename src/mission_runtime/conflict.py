"""Calendar conflict detection."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from mission_runtime.models import CalendarEvent, as_utc


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
	"""Half-open interval overlap; touching intervals do not overlap."""
	return a_start < b_end and b_start < a_end


def has_conflict(
	events: Iterable[CalendarEvent],
	start_at: datetime,
	end_at: datetime,
	exclude_id: str | None = None,
) -> bool:
	"""True if any event other than ``exclude_id`` overlaps ``[start_at, end_at)``.

	An event is excluded when either its own id or its ``mission_id`` equals
	``exclude_id``, so a mission never conflicts with its own calendar entry.
	"""
	start_at, end_at = as_utc(start_at), as_utc(end_at)
	for event in events:
		if exclude_id and (event.id == exclude_id or event.mission_id == exclude_id):
			continue
		if overlaps(event.start_at, event.end_at, start_at, end_at):
			return True
	return False
