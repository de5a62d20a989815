"""Tests for local-time helpers and effective trigger resolution."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from mission_runtime.models import RescheduleOverride
from mission_runtime.notification_store import build_schedule, parse_daily_time
from mission_runtime.scheduling import (
	combine_local,
	is_due,
	local_parts,
	next_fire_time,
	resolve_effective_trigger,
	resolve_zone,
	retry_delay,
	trigger_settings,
)

from conftest import make_mission, make_trigger_node


def _utc(*args: int) -> datetime:
	return datetime(*args, tzinfo=timezone.utc)


def _override(new_start_at: datetime) -> RescheduleOverride:
	return RescheduleOverride(
		owner_id="alice",
		mission_id="m1",
		new_start_at=new_start_at,
		original_time=_utc(2025, 6, 1, 9, 0),
	)


class TestParseDailyTime:
	@pytest.mark.parametrize(
		("value", "expected"),
		[("09:00", (9, 0)), ("23:59", (23, 59)), ("00:00", (0, 0)), ("24:00", None), ("9:00", None), ("", None)],
	)
	def test_values(self, value: str, expected: tuple[int, int] | None) -> None:
		assert parse_daily_time(value) == expected


class TestZones:
	def test_unknown_zone_falls_back(self) -> None:
		assert resolve_zone("Mars/Olympus", "UTC").key == "UTC"
		assert resolve_zone("", "Europe/Berlin").key == "Europe/Berlin"

	def test_local_parts_crosses_date_line(self) -> None:
		parts = local_parts(_utc(2025, 6, 1, 2, 30), resolve_zone("America/New_York"))
		assert parts.date_str == "2025-05-31"
		assert (parts.hour, parts.minute) == (22, 30)

	def test_combine_local_handles_dst(self) -> None:
		zone = resolve_zone("America/New_York")
		assert combine_local(date(2025, 1, 15), "09:00", zone) == _utc(2025, 1, 15, 14, 0)
		assert combine_local(date(2025, 7, 15), "09:00", zone) == _utc(2025, 7, 15, 13, 0)


class TestTriggerSettings:
	def test_mission_node_wins(self) -> None:
		schedule = build_schedule("hi", "18:00", owner_id="alice", timezone="Europe/Paris")
		assert trigger_settings(make_mission(), schedule, "UTC") == ("09:00", "UTC", "mission")

	def test_schedule_used_without_trigger_node(self) -> None:
		schedule = build_schedule("hi", "18:00", owner_id="alice", timezone="Europe/Paris")
		mission = make_mission(nodes=[], connections=[])
		assert trigger_settings(mission, schedule, "UTC") == ("18:00", "Europe/Paris", "schedule")

	def test_defaults(self) -> None:
		assert trigger_settings(None, None, "UTC") == ("09:00", "UTC", "default")

	def test_invalid_node_time_ignored(self) -> None:
		mission = make_mission(nodes=[make_trigger_node(time="late")], connections=[])
		assert trigger_settings(mission, None, "UTC")[2] == "default"


class TestEffectiveTrigger:
	def test_base_trigger(self) -> None:
		effective = resolve_effective_trigger(make_mission(), None, None, date(2025, 6, 1), "UTC")
		assert effective.trigger_at == _utc(2025, 6, 1, 9, 0)
		assert effective.source == "mission"

	def test_override_applies_on_its_own_day_only(self) -> None:
		override = _override(_utc(2025, 6, 1, 14, 15))
		mission = make_mission()
		same_day = resolve_effective_trigger(mission, None, override, date(2025, 6, 1), "UTC")
		next_day = resolve_effective_trigger(mission, None, override, date(2025, 6, 2), "UTC")
		assert same_day.trigger_at == _utc(2025, 6, 1, 14, 15)
		assert same_day.source == "override"
		assert next_day.trigger_at == _utc(2025, 6, 2, 9, 0)
		assert next_day.source == "mission"


class TestIsDue:
	def test_window_bounds(self) -> None:
		trigger = _utc(2025, 6, 1, 9, 0)
		assert not is_due(trigger, _utc(2025, 6, 1, 8, 59), 10)
		assert is_due(trigger, trigger, 10)
		assert is_due(trigger, _utc(2025, 6, 1, 9, 10), 10)
		assert not is_due(trigger, _utc(2025, 6, 1, 9, 11), 10)


class TestRetryDelay:
	def test_doubles_per_attempt(self) -> None:
		assert retry_delay(0, 60, 900) == timedelta(seconds=60)
		assert retry_delay(1, 60, 900) == timedelta(minutes=2)
		assert retry_delay(2, 60, 900) == timedelta(minutes=4)

	def test_capped_at_max(self) -> None:
		assert retry_delay(6, 60, 900) == timedelta(minutes=15)

	def test_never_below_base(self) -> None:
		assert retry_delay(-1, 60, 900) == timedelta(seconds=60)
		assert retry_delay(3, 60, 30) == timedelta(seconds=60)


class TestNextFireTime:
	def test_today_before_trigger(self) -> None:
		assert next_fire_time(make_mission(), None, None, _utc(2025, 6, 1, 8, 0), "UTC") == _utc(2025, 6, 1, 9, 0)

	def test_after_trigger_rolls_to_tomorrow(self) -> None:
		assert next_fire_time(make_mission(), None, None, _utc(2025, 6, 1, 9, 30), "UTC") == _utc(2025, 6, 2, 9, 0)

	def test_skips_day_already_sent(self) -> None:
		schedule = build_schedule("hi", "09:00", owner_id="alice", timezone="UTC")
		schedule.last_sent_local_date = "2025-06-01"
		assert next_fire_time(make_mission(), schedule, None, _utc(2025, 6, 1, 8, 0), "UTC") == _utc(2025, 6, 2, 9, 0)

	def test_override_then_removal_restores_base_time(self) -> None:
		mission = make_mission()
		now = _utc(2025, 6, 1, 8, 0)
		override = _override(_utc(2025, 6, 1, 16, 0))
		assert next_fire_time(mission, None, override, now, "UTC") == _utc(2025, 6, 1, 16, 0)
		assert next_fire_time(mission, None, None, now, "UTC") == _utc(2025, 6, 1, 9, 0)
