"""Tests for the tick-based scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from mission_runtime.config import RuntimeConfig
from mission_runtime.delivery import DeliveryResult, ExecutionResult
from mission_runtime.models import Mission, MissionNode, MissionStatus, NotificationSchedule
from mission_runtime.notification_store import build_schedule
from mission_runtime.runtime import MissionRuntime
from mission_runtime.scheduler import ScheduleState
from mission_runtime.telemetry import EVENT_DELIVERY, EVENT_MISSION_RUN

from conftest import FakeExecutor, make_trigger_node


def _at(day: int, hour: int, minute: int) -> datetime:
	return datetime(2025, 6, day, hour, minute, tzinfo=timezone.utc)


async def _create(rt: MissionRuntime, owner: str = "alice", label: str = "Digest", **trigger: object) -> Mission:
	return await rt.create_mission(
		owner,
		label,
		nodes=[make_trigger_node(**trigger), MissionNode(id="n2", type="action", label="Work")],
	)


class GatedExecutor:
	"""Blocks inside the first call until ``release`` is set."""

	def __init__(self) -> None:
		self.started = asyncio.Event()
		self.release = asyncio.Event()

	async def __call__(self, schedule: NotificationSchedule, mission: Mission | None) -> ExecutionResult:
		self.started.set()
		await self.release.wait()
		return ExecutionResult(ok=True)


class SelectiveExecutor:
	"""Raises for one mission label, succeeds for the rest."""

	def __init__(self, failing_label: str) -> None:
		self.failing_label = failing_label
		self.ran: list[str] = []

	async def __call__(self, schedule: NotificationSchedule, mission: Mission | None) -> ExecutionResult:
		if schedule.label == self.failing_label:
			raise RuntimeError("boom")
		self.ran.append(schedule.label)
		return ExecutionResult(ok=True)


class FlakyExecutor:
	"""Fails the first ``failures`` calls, then succeeds."""

	def __init__(self, failures: int) -> None:
		self.failures = failures
		self.calls = 0

	async def __call__(self, schedule: NotificationSchedule, mission: Mission | None) -> ExecutionResult:
		self.calls += 1
		if self.calls <= self.failures:
			return ExecutionResult(ok=False, error="HTTP 502")
		return ExecutionResult(ok=True)


class TestDueEvaluation:
	@pytest.mark.asyncio
	async def test_runs_once_per_local_day(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		mission = await _create(runtime)

		first = await runtime.tick(_at(1, 9, 2))
		again = await runtime.tick(_at(1, 9, 5))
		next_day = await runtime.tick(_at(2, 9, 1))

		assert first.metrics.runs == 1
		assert again.metrics.runs == 0
		assert next_day.metrics.runs == 1
		assert [m.id for _, m in executor.calls if m] == [mission.id, mission.id]
		schedule = await runtime.notifications.get("alice", mission.id)
		assert schedule is not None
		assert schedule.last_sent_local_date == "2025-06-02"
		assert (schedule.run_count, schedule.success_count, schedule.failure_count) == (2, 2, 0)
		assert schedule.last_run_status == "success"

	@pytest.mark.asyncio
	async def test_not_due_outside_window(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		await _create(runtime)
		await runtime.tick(_at(1, 8, 59))
		await runtime.tick(_at(1, 9, 11))
		assert executor.calls == []

	@pytest.mark.asyncio
	async def test_window_crossing_midnight_still_fires(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		await _create(runtime, time="23:55")
		report = await runtime.tick(_at(2, 0, 3))
		assert report.metrics.runs == 1
		assert report.outcomes[0].local_date == "2025-06-01"

	@pytest.mark.asyncio
	async def test_local_timezone_respected(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		await _create(runtime, timezone="America/New_York")
		assert (await runtime.tick(_at(1, 9, 1))).metrics.runs == 0
		# 09:00 EDT is 13:00 UTC
		assert (await runtime.tick(_at(1, 13, 1))).metrics.runs == 1

	@pytest.mark.asyncio
	async def test_paused_mission_skipped(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		mission = await _create(runtime)
		await runtime.missions.upsert(mission.model_copy(update={"status": MissionStatus.PAUSED}))

		report = await runtime.tick(_at(1, 9, 1))

		assert executor.calls == []
		assert report.metrics.skipped == {"mission_paused": 1}

	@pytest.mark.asyncio
	async def test_schedule_without_mission_skipped(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		await runtime.notifications.upsert("alice", build_schedule(
			"orphan", "09:00", owner_id="alice", schedule_id="ghost", timezone="UTC", chat_ids=["1"],
		))
		report = await runtime.tick(_at(1, 9, 1))
		assert executor.calls == []
		assert report.metrics.skipped == {"mission_missing": 1}

	@pytest.mark.asyncio
	async def test_disabled_schedule_not_evaluated(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		await _create(runtime)
		await runtime.create_mission("alice", "Paused", nodes=[make_trigger_node()], status=MissionStatus.PAUSED)
		report = await runtime.tick(_at(1, 9, 1))
		assert report.metrics.schedules_seen == 1
		assert report.metrics.runs == 1

	@pytest.mark.asyncio
	async def test_reschedule_override_moves_trigger(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		mission = await _create(runtime)
		await runtime.set_reschedule_override("alice", mission.id, _at(1, 15, 0), now=_at(1, 8, 0))

		assert (await runtime.tick(_at(1, 9, 2))).metrics.runs == 0
		report = await runtime.tick(_at(1, 15, 1))
		assert report.metrics.runs == 1
		assert report.outcomes[0].trigger_source == "override"
		# Next day falls back to the mission's own time
		assert (await runtime.tick(_at(2, 9, 1))).metrics.runs == 1

	@pytest.mark.asyncio
	async def test_deleting_override_restores_base_trigger(self, runtime: MissionRuntime, executor: FakeExecutor) -> None:
		mission = await _create(runtime)
		await runtime.set_reschedule_override("alice", mission.id, _at(1, 15, 0), now=_at(1, 8, 0))
		await runtime.delete_reschedule_override("alice", mission.id)
		report = await runtime.tick(_at(1, 9, 2))
		assert report.metrics.runs == 1
		assert report.outcomes[0].trigger_source == "mission"


class TestCaps:
	@pytest.mark.asyncio
	async def test_per_owner_cap(self, config: RuntimeConfig, executor: FakeExecutor) -> None:
		config.scheduler.max_runs_per_owner_per_tick = 1
		rt = MissionRuntime(config, executor=executor)
		await _create(rt, label="One")
		await _create(rt, label="Two")

		first = await rt.tick(_at(1, 9, 1))
		second = await rt.tick(_at(1, 9, 2))

		assert first.metrics.runs == 1
		assert first.metrics.skipped == {"owner_cap": 1}
		assert second.metrics.runs == 1
		assert len(executor.calls) == 2

	@pytest.mark.asyncio
	async def test_per_tick_cap(self, config: RuntimeConfig, executor: FakeExecutor) -> None:
		config.scheduler.max_runs_per_tick = 1
		rt = MissionRuntime(config, executor=executor)
		await _create(rt, owner="alice")
		await _create(rt, owner="bob")

		report = await rt.tick(_at(1, 9, 1))

		assert report.metrics.runs == 1
		assert report.metrics.skipped == {"tick_cap": 1}


class TestFailureIsolation:
	@pytest.mark.asyncio
	async def test_failed_delivery_is_dead_lettered(self, config: RuntimeConfig) -> None:
		executor = FakeExecutor(result=ExecutionResult(
			ok=False,
			deliveries=[
				DeliveryResult(channel_id="100", ok=False, error="HTTP 500", status=500),
				DeliveryResult(channel_id="200", ok=True, status=200),
			],
			error="100: HTTP 500",
		))
		rt = MissionRuntime(config, executor=executor)
		mission = await _create(rt)

		report = await rt.tick(_at(1, 9, 1))

		assert report.metrics.failed == 1
		assert report.metrics.dead_lettered == 1
		entries = rt.list_dead_letter("alice")
		assert len(entries) == 1
		entry = entries[0]
		assert entry.schedule_id == mission.id
		assert entry.source == "scheduler"
		assert entry.run_key == f"{mission.id}:2025-06-01"
		assert entry.attempt == 1
		assert (entry.output_ok_count, entry.output_fail_count) == (1, 1)
		assert entry.reason == "100: HTTP 500"
		assert entry.metadata is not None
		assert entry.metadata["day_stamp"] == "2025-06-01"
		assert entry.metadata["trigger_source"] == "mission"

		schedule = await rt.notifications.get("alice", mission.id)
		assert schedule is not None
		assert schedule.failure_count == 1
		assert schedule.last_run_status == "error"
		assert rt.scheduler.state.schedule_states[mission.id] == ScheduleState.IDLE

		events = rt.telemetry.list_events("alice")
		assert [(e.event_type, e.outcome) for e in events] == [
			(EVENT_MISSION_RUN, "failure"),
			(EVENT_DELIVERY, "failure"),
			(EVENT_DELIVERY, "success"),
		]

	@pytest.mark.asyncio
	async def test_failed_run_retried_after_backoff(self, config: RuntimeConfig) -> None:
		executor = FlakyExecutor(failures=1)
		rt = MissionRuntime(config, executor=executor)
		mission = await _create(rt)

		first = await rt.tick(_at(1, 9, 1))
		waiting = await rt.tick(_at(1, 9, 2))
		retried = await rt.tick(_at(1, 9, 3))
		after = await rt.tick(_at(1, 9, 8))

		assert first.outcomes[0].status == "error"
		assert first.outcomes[0].retry_pending is True
		assert waiting.metrics.runs == 0
		assert waiting.metrics.skipped == {"retry_backoff": 1}
		assert retried.outcomes[0].status == "success"
		assert retried.outcomes[0].attempt == 2
		assert after.metrics.runs == 0
		assert executor.calls == 2

		schedule = await rt.notifications.get("alice", mission.id)
		assert schedule is not None
		assert schedule.last_sent_local_date == "2025-06-01"
		assert (schedule.success_count, schedule.failure_count) == (1, 1)
		entries = rt.list_dead_letter("alice")
		assert [(e.run_key, e.attempt) for e in entries] == [(f"{mission.id}:2025-06-01", 1)]

	@pytest.mark.asyncio
	async def test_retries_stop_at_attempt_limit(self, config: RuntimeConfig) -> None:
		executor = FakeExecutor(result=ExecutionResult(ok=False, error="down"))
		rt = MissionRuntime(config, executor=executor)
		mission = await _create(rt)

		# Backoff after n attempts is 60s * 2**n: 2 then 4 minutes
		for minute in (1, 3, 7, 9):
			await rt.tick(_at(1, 9, minute))

		assert len(executor.calls) == 3
		assert sorted(e.attempt or 0 for e in rt.list_dead_letter("alice")) == [1, 2, 3]
		history = rt.runs.history("alice", mission.id, f"{mission.id}:2025-06-01")
		assert history.attempts == 3
		assert history.latest_status == "error"
		schedule = await rt.notifications.get("alice", mission.id)
		assert schedule is not None
		assert schedule.last_sent_local_date == "2025-06-01"
		assert schedule.failure_count == 3

	@pytest.mark.asyncio
	async def test_single_attempt_limit_never_retries(self, config: RuntimeConfig) -> None:
		config.scheduler.max_attempts_per_run_key = 1
		executor = FakeExecutor(result=ExecutionResult(ok=False, error="down"))
		rt = MissionRuntime(config, executor=executor)
		await _create(rt)

		report = await rt.tick(_at(1, 9, 1))
		await rt.tick(_at(1, 9, 5))

		assert report.outcomes[0].retry_pending is False
		assert len(executor.calls) == 1
		assert len(rt.list_dead_letter("alice")) == 1

	@pytest.mark.asyncio
	async def test_retry_ends_with_due_window(self, config: RuntimeConfig) -> None:
		executor = FakeExecutor(result=ExecutionResult(ok=False, error="down"))
		rt = MissionRuntime(config, executor=executor)
		await _create(rt)

		await rt.tick(_at(1, 9, 9))
		late = await rt.tick(_at(1, 9, 12))

		assert late.metrics.runs == 0
		assert len(executor.calls) == 1

	@pytest.mark.asyncio
	async def test_owner_store_failure_does_not_stop_other_owners(
		self, config: RuntimeConfig, executor: FakeExecutor, monkeypatch: pytest.MonkeyPatch,
	) -> None:
		rt = MissionRuntime(config, executor=executor)
		await _create(rt, owner="alice")
		bob_mission = await _create(rt, owner="bob")
		list_missions = rt.missions.list_missions

		async def failing_for_alice(owner_id: str) -> list[Mission]:
			if owner_id == "alice":
				raise OSError("disk unavailable")
			return await list_missions(owner_id)

		monkeypatch.setattr(rt.missions, "list_missions", failing_for_alice)

		report = await rt.tick(_at(1, 9, 1))

		assert report.metrics.skipped == {"owner_error": 1}
		assert [(o.owner_id, o.schedule_id) for o in report.outcomes] == [("bob", bob_mission.id)]
		assert rt.scheduler.state.last_tick_error is None

	@pytest.mark.asyncio
	async def test_undecodable_mission_file_skips_only_that_owner(
		self, config: RuntimeConfig, executor: FakeExecutor,
	) -> None:
		rt = MissionRuntime(config, executor=executor)
		await _create(rt, owner="alice")
		bob_mission = await _create(rt, owner="bob")
		missions_file = rt.layout.owner_dir("alice") / "state" / "missions.json"
		missions_file.write_bytes(b"\xff\xfe")
		missions_file.with_name(f"{missions_file.name}.bak").write_bytes(b"\xff\xfe")

		report = await rt.tick(_at(1, 9, 1))

		assert report.metrics.skipped == {"mission_missing": 1}
		assert [o.owner_id for o in report.outcomes] == ["bob"]
		assert executor.calls[0][1] is not None and executor.calls[0][1].id == bob_mission.id

	@pytest.mark.asyncio
	async def test_executor_exception_does_not_stop_tick(self, config: RuntimeConfig) -> None:
		executor = SelectiveExecutor(failing_label="Broken")
		rt = MissionRuntime(config, executor=executor)
		broken = await _create(rt, label="Broken")
		await _create(rt, label="Healthy")

		report = await rt.tick(_at(1, 9, 1))

		assert report.metrics.runs == 2
		assert report.metrics.succeeded == 1
		assert report.metrics.failed == 1
		assert executor.ran == ["Healthy"]
		entries = rt.list_dead_letter("alice")
		assert [e.schedule_id for e in entries] == [broken.id]
		assert entries[0].reason == "executor error: boom"
		assert rt.scheduler.state.last_tick_error is None

	@pytest.mark.asyncio
	async def test_execution_timeout(self, config: RuntimeConfig) -> None:
		config.scheduler.execution_timeout = 0.05  # type: ignore[assignment]

		async def slow(schedule: NotificationSchedule, mission: Mission | None) -> ExecutionResult:
			await asyncio.sleep(5)
			return ExecutionResult(ok=True)

		rt = MissionRuntime(config, executor=slow)
		await _create(rt)
		report = await rt.tick(_at(1, 9, 1))

		assert report.metrics.failed == 1
		assert "timed out" in rt.list_dead_letter("alice")[0].reason


class TestTickLoop:
	@pytest.mark.asyncio
	async def test_overlapping_tick_is_skipped(self, config: RuntimeConfig) -> None:
		gated = GatedExecutor()
		rt = MissionRuntime(config, executor=gated)
		await _create(rt)

		first = asyncio.create_task(rt.tick(_at(1, 9, 1)))
		await asyncio.wait_for(gated.started.wait(), timeout=5)
		overlapped = await rt.tick(_at(1, 9, 1))
		gated.release.set()
		completed = await first

		assert overlapped.skipped_overlap is True
		assert completed.metrics.runs == 1
		assert rt.scheduler.state.overlap_skip_count == 1
		assert rt.scheduler.state.total_tick_count == 1
		assert rt.scheduler.state.tick_in_flight is False

	@pytest.mark.asyncio
	async def test_run_until_stopped(self, config: RuntimeConfig, executor: FakeExecutor) -> None:
		rt = MissionRuntime(config, executor=executor, clock=lambda: _at(1, 7, 0))
		task = asyncio.create_task(rt.scheduler.run())
		await asyncio.sleep(0.05)
		assert rt.scheduler.state.running is True
		rt.scheduler.stop()
		await asyncio.wait_for(task, timeout=5)
		assert rt.scheduler.state.running is False
		assert rt.scheduler.state.total_tick_count >= 1
		assert rt.scheduler.state.last_tick_started_at == _at(1, 7, 0)

	@pytest.mark.asyncio
	async def test_separate_runtimes_do_not_share_state(self, config: RuntimeConfig, tmp_path: Path) -> None:
		other = RuntimeConfig()
		other.storage.data_dir = str(tmp_path / "other")
		a = MissionRuntime(config, executor=FakeExecutor())
		b = MissionRuntime(other, executor=FakeExecutor())
		a.scheduler.state.tick_in_flight = True
		report = await b.tick(_at(1, 9, 0))
		assert report.skipped_overlap is False
		assert a.scheduler.state.total_tick_count == 0
