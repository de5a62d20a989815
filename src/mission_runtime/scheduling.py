"""Local-time helpers and effective trigger resolution.

All instants handled here are timezone-aware. A schedule's daily ``HH:MM`` is
interpreted in its own IANA zone; a reschedule override replaces the trigger
only on the local day it falls on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mission_runtime.constants import DEFAULT_TIMEZONE, DEFAULT_TRIGGER_TIME
from mission_runtime.models import Mission, NotificationSchedule, RescheduleOverride
from mission_runtime.notification_store import parse_daily_time

logger = logging.getLogger(__name__)

TriggerSource = Literal["mission", "schedule", "override", "default"]

# Days searched ahead by next_fire_time
_LOOKAHEAD_DAYS = 8


@dataclass
class LocalParts:
	day: date
	hour: int
	minute: int

	@property
	def date_str(self) -> str:
		return self.day.isoformat()


@dataclass
class EffectiveTrigger:
	trigger_at: datetime
	local_day: date
	timezone: str
	source: TriggerSource


def resolve_zone(name: str | None, fallback: str = DEFAULT_TIMEZONE) -> ZoneInfo:
	"""ZoneInfo for ``name``, or ``fallback`` when it is empty or unknown."""
	if name:
		try:
			return ZoneInfo(name)
		except (ZoneInfoNotFoundError, ValueError):
			logger.warning("Unknown timezone %r, using %s", name, fallback)
	return ZoneInfo(fallback)


def ensure_aware(moment: datetime) -> datetime:
	"""Treat naive datetimes as UTC."""
	if moment.tzinfo is None:
		return moment.replace(tzinfo=timezone.utc)
	return moment


def local_parts(moment: datetime, zone: ZoneInfo) -> LocalParts:
	local = ensure_aware(moment).astimezone(zone)
	return LocalParts(day=local.date(), hour=local.hour, minute=local.minute)


def combine_local(day: date, hhmm: str, zone: ZoneInfo) -> datetime:
	"""Instant (UTC) of ``hhmm`` on local ``day`` in ``zone``.

	Raises:
		ValueError: If ``hhmm`` is not a valid ``HH:MM``.
	"""
	parsed = parse_daily_time(hhmm)
	if parsed is None:
		raise ValueError(f"Invalid daily time: {hhmm!r}")
	local = datetime.combine(day, time(parsed[0], parsed[1]), tzinfo=zone)
	return local.astimezone(timezone.utc)


def trigger_settings(
	mission: Mission | None,
	schedule: NotificationSchedule | None,
	default_timezone: str = DEFAULT_TIMEZONE,
) -> tuple[str, str, TriggerSource]:
	"""``(time, timezone, source)`` from the trigger node, else the schedule, else defaults."""
	node = mission.trigger_node if mission is not None else None
	if node is not None:
		node_time = str(node.config.get("time") or "")
		if parse_daily_time(node_time) is not None:
			tz = str(node.config.get("timezone") or (schedule.timezone if schedule else "") or default_timezone)
			return node_time, tz, "mission"
	if schedule is not None and parse_daily_time(schedule.time) is not None:
		return schedule.time, schedule.timezone or default_timezone, "schedule"
	return DEFAULT_TRIGGER_TIME, default_timezone, "default"


def resolve_effective_trigger(
	mission: Mission | None,
	schedule: NotificationSchedule | None,
	override: RescheduleOverride | None,
	local_day: date,
	default_timezone: str = DEFAULT_TIMEZONE,
) -> EffectiveTrigger:
	"""Trigger instant for ``local_day`` with the override applied when it falls on that day."""
	hhmm, tz_name, source = trigger_settings(mission, schedule, default_timezone)
	zone = resolve_zone(tz_name, default_timezone)
	if override is not None:
		override_at = ensure_aware(override.new_start_at)
		if local_parts(override_at, zone).day == local_day:
			return EffectiveTrigger(
				trigger_at=override_at.astimezone(timezone.utc),
				local_day=local_day,
				timezone=zone.key,
				source="override",
			)
	return EffectiveTrigger(
		trigger_at=combine_local(local_day, hhmm, zone),
		local_day=local_day,
		timezone=zone.key,
		source=source,
	)


def is_due(trigger_at: datetime, now: datetime, window_minutes: int) -> bool:
	"""``trigger_at <= now <= trigger_at + window``."""
	now = ensure_aware(now)
	return trigger_at <= now <= trigger_at + timedelta(minutes=window_minutes)


def retry_delay(previous_attempts: int, base_seconds: int, max_seconds: int) -> timedelta:
	"""Exponential backoff: ``base * 2**attempts``, kept within ``[base, max]``."""
	seconds = base_seconds * 2 ** max(0, previous_attempts)
	return timedelta(seconds=max(base_seconds, min(max_seconds, seconds)))


def next_fire_time(
	mission: Mission | None,
	schedule: NotificationSchedule | None,
	override: RescheduleOverride | None,
	now: datetime,
	default_timezone: str = DEFAULT_TIMEZONE,
) -> datetime | None:
	"""Next effective firing instant at or after ``now``.

	Days already marked as sent in ``schedule.last_sent_local_date`` are
	skipped. Returns None only if nothing fires within the lookahead.
	"""
	now = ensure_aware(now)
	_, tz_name, _ = trigger_settings(mission, schedule, default_timezone)
	zone = resolve_zone(tz_name, default_timezone)
	today = local_parts(now, zone).day
	sent_on = schedule.last_sent_local_date if schedule is not None else None
	for offset in range(-1, _LOOKAHEAD_DAYS):
		day = today + timedelta(days=offset)
		if sent_on == day.isoformat():
			continue
		effective = resolve_effective_trigger(mission, schedule, override, day, default_timezone)
		if effective.trigger_at >= now:
			return effective.trigger_at
	return None
