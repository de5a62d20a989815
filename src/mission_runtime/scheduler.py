"""Tick-based mission scheduler.

Each tick walks every owner's enabled notification schedules, resolves the
effective trigger (mission trigger node, overlaid by a reschedule override on
its own day), and runs whatever is due through the injected executor. Failures
stay inside the schedule (or owner) that produced them: they are dead-lettered,
counted and logged, and the tick moves on.

A local day is claimed before it runs. When the run fails the claim is handed
back, and later ticks inside the due window retry it with exponential backoff
until the per-run-key attempt limit is reached.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from mission_runtime.config import SchedulerConfig
from mission_runtime.dead_letter import DeadLetterLog
from mission_runtime.delivery import ExecutionResult, ScheduleExecutor
from mission_runtime.metrics import TickMetrics, Timer
from mission_runtime.mission_store import MissionStore
from mission_runtime.models import (
	DeadLetterEntry,
	Mission,
	MissionStatus,
	NotificationSchedule,
	RescheduleOverride,
	RunRecord,
	TelemetryEvent,
)
from mission_runtime.notification_store import NotificationStore
from mission_runtime.reschedule import RescheduleStore
from mission_runtime.run_log import RunKeyHistory, RunLog, run_key_for
from mission_runtime.scheduling import (
	EffectiveTrigger,
	ensure_aware,
	is_due,
	local_parts,
	resolve_effective_trigger,
	resolve_zone,
	retry_delay,
	trigger_settings,
)
from mission_runtime.telemetry import EVENT_DELIVERY, EVENT_MISSION_RUN, TelemetryLog

logger = logging.getLogger(__name__)


class ScheduleState(str, Enum):
	IDLE = "idle"
	DUE = "due"
	RUNNING = "running"
	ERROR = "error"


@dataclass
class SchedulerState:
	"""Snapshot of the loop; owned by one Scheduler instance."""

	running: bool = False
	tick_in_flight: bool = False
	total_tick_count: int = 0
	overlap_skip_count: int = 0
	last_tick_started_at: datetime | None = None
	last_tick_finished_at: datetime | None = None
	last_tick_duration_ms: float = 0.0
	last_tick_error: str | None = None
	schedule_states: dict[str, ScheduleState] = field(default_factory=dict)


@dataclass
class ScheduleOutcome:
	schedule_id: str
	owner_id: str
	local_date: str
	status: str  # "success" | "error"
	trigger_source: str = ""
	attempt: int = 1
	reason: str | None = None
	retry_pending: bool = False


@dataclass
class TickReport:
	now: datetime
	skipped_overlap: bool = False
	metrics: TickMetrics = field(default_factory=TickMetrics)
	outcomes: list[ScheduleOutcome] = field(default_factory=list)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class Scheduler:
	"""Runs due schedules once per local day each, retrying failed days."""

	def __init__(
		self,
		notifications: NotificationStore,
		missions: MissionStore,
		overrides: RescheduleStore,
		dead_letters: DeadLetterLog,
		telemetry: TelemetryLog,
		runs: RunLog,
		executor: ScheduleExecutor,
		config: SchedulerConfig | None = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._notifications = notifications
		self._missions = missions
		self._overrides = overrides
		self._dead_letters = dead_letters
		self._telemetry = telemetry
		self._runs = runs
		self._executor = executor
		self.config = config or SchedulerConfig()
		self._clock = clock
		self.state = SchedulerState()
		self._stop_event = asyncio.Event()

	async def tick(self, now: datetime | None = None) -> TickReport:
		"""Evaluate every enabled schedule once.

		A tick that starts while another is in flight is skipped and counted.
		"""
		now = ensure_aware(now or self._clock())
		if self.state.tick_in_flight:
			self.state.overlap_skip_count += 1
			logger.warning("Tick skipped: previous tick still running (%d skips)", self.state.overlap_skip_count)
			return TickReport(now=now, skipped_overlap=True)

		self.state.tick_in_flight = True
		self.state.last_tick_started_at = now
		report = TickReport(now=now)
		report.metrics.started_at = now.isoformat()
		timer = Timer()
		try:
			with timer:
				await self._tick(now, report)
			self.state.last_tick_error = None
		except Exception as exc:
			self.state.last_tick_error = str(exc)
			logger.exception("Scheduler tick failed")
		finally:
			self.state.tick_in_flight = False
			self.state.total_tick_count += 1
			self.state.last_tick_finished_at = self._clock()
			self.state.last_tick_duration_ms = timer.elapsed_ms
			report.metrics.duration_s = timer.elapsed
		if report.metrics.due or report.metrics.skipped:
			logger.info("Tick complete: %s", report.metrics.to_dict())
		return report

	async def _tick(self, now: datetime, report: TickReport) -> None:
		for owner_id in self._notifications.list_owners():
			if report.metrics.runs >= self.config.max_runs_per_tick:
				report.metrics.count_skip("tick_cap")
				break
			try:
				await self._tick_owner(owner_id, now, report)
			except Exception:
				logger.exception("Tick for owner %s failed, continuing with the next owner", owner_id)
				report.metrics.count_skip("owner_error")

	async def _tick_owner(self, owner_id: str, now: datetime, report: TickReport) -> None:
		schedules = sorted(
			(s for s in await self._notifications.load(owner_id) if s.enabled),
			key=lambda s: s.id,
		)
		if not schedules:
			return
		missions = {m.id: m for m in await self._missions.list_missions(owner_id)}
		overrides = {o.mission_id: o for o in await self._overrides.list_overrides(owner_id)}
		owner_runs = 0
		for schedule in schedules:
			report.metrics.schedules_seen += 1
			try:
				ran = await self._evaluate(
					owner_id, schedule, missions.get(schedule.id), overrides.get(schedule.id),
					now, report, owner_runs,
				)
			except Exception:
				logger.exception("Schedule %s for %s failed during evaluation", schedule.id, owner_id)
				self.state.schedule_states[schedule.id] = ScheduleState.IDLE
				continue
			if ran:
				owner_runs += 1

	def _due_trigger(
		self,
		schedule: NotificationSchedule,
		mission: Mission | None,
		override: RescheduleOverride | None,
		now: datetime,
	) -> EffectiveTrigger | None:
		_, tz_name, _ = trigger_settings(mission, schedule, self.config.default_timezone)
		zone = resolve_zone(tz_name, self.config.default_timezone)
		today = local_parts(now, zone).day
		# Yesterday is checked too so a late-evening window crossing midnight still fires.
		for day in (today - timedelta(days=1), today):
			if schedule.last_sent_local_date == day.isoformat():
				continue
			effective = resolve_effective_trigger(mission, schedule, override, day, self.config.default_timezone)
			if is_due(effective.trigger_at, now, self.config.window_minutes):
				return effective
		return None

	async def _evaluate(
		self,
		owner_id: str,
		schedule: NotificationSchedule,
		mission: Mission | None,
		override: RescheduleOverride | None,
		now: datetime,
		report: TickReport,
		owner_runs: int,
	) -> bool:
		effective = self._due_trigger(schedule, mission, override, now)
		if effective is None:
			return False

		if mission is None:
			logger.info("Skipping schedule %s: mission missing", schedule.id)
			report.metrics.count_skip("mission_missing")
			return False
		if mission.status != MissionStatus.ACTIVE:
			logger.info("Skipping schedule %s: mission %s", schedule.id, mission.status.value)
			report.metrics.count_skip(f"mission_{mission.status.value}")
			return False
		if report.metrics.runs >= self.config.max_runs_per_tick:
			report.metrics.count_skip("tick_cap")
			return False
		if owner_runs >= self.config.max_runs_per_owner_per_tick:
			report.metrics.count_skip("owner_cap")
			return False

		report.metrics.due += 1
		self.state.schedule_states[schedule.id] = ScheduleState.DUE
		local_date = effective.local_day.isoformat()
		history = self._runs.history(owner_id, schedule.id, run_key_for(schedule.id, local_date))
		blocked = self._retry_gate(history, now)
		if blocked is not None:
			report.metrics.count_skip(blocked)
			self.state.schedule_states[schedule.id] = ScheduleState.IDLE
			return False
		claimed = await self._claim(owner_id, schedule.id, local_date)
		if claimed is None:
			report.metrics.count_skip("already_sent")
			self.state.schedule_states[schedule.id] = ScheduleState.IDLE
			return False

		report.metrics.runs += 1
		attempt = history.attempts + 1
		outcome = await self._execute(owner_id, claimed, mission, effective, now, report, attempt)
		if outcome.status == "error" and attempt < self.config.max_attempts_per_run_key:
			outcome.retry_pending = await self._release(owner_id, schedule.id, local_date, schedule.last_sent_local_date)
		report.outcomes.append(outcome)
		self.state.schedule_states[schedule.id] = ScheduleState.IDLE
		return True

	def _retry_gate(self, history: RunKeyHistory, now: datetime) -> str | None:
		"""Skip reason when this run key may not run yet, else None."""
		if history.latest_status == "success":
			return "already_sent"
		if history.latest_status != "error":
			return None
		if history.attempts >= self.config.max_attempts_per_run_key:
			return "retries_exhausted"
		delay = retry_delay(history.attempts, self.config.retry_base_seconds, self.config.retry_max_seconds)
		if history.latest_ts is not None and now < history.latest_ts + delay:
			return "retry_backoff"
		return None

	async def _claim(self, owner_id: str, schedule_id: str, local_date: str) -> NotificationSchedule | None:
		"""Persist ``last_sent_local_date`` before running; None if another run claimed the day."""

		def _mark(current: NotificationSchedule) -> NotificationSchedule | None:
			if current.last_sent_local_date == local_date:
				return None
			current.last_sent_local_date = local_date
			return current

		return await self._notifications.update(owner_id, schedule_id, _mark)

	async def _release(self, owner_id: str, schedule_id: str, local_date: str, previous: str | None) -> bool:
		"""Hand a failed day back so a later tick can retry it."""

		def _unmark(current: NotificationSchedule) -> NotificationSchedule | None:
			if current.last_sent_local_date != local_date:
				return None
			current.last_sent_local_date = previous
			return current

		try:
			released = await self._notifications.update(owner_id, schedule_id, _unmark)
		except OSError as exc:
			logger.error("Failed to release %s for retry: %s", schedule_id, exc)
			return False
		return released is not None

	async def _execute(
		self,
		owner_id: str,
		schedule: NotificationSchedule,
		mission: Mission,
		effective: EffectiveTrigger,
		now: datetime,
		report: TickReport,
		attempt: int = 1,
	) -> ScheduleOutcome:
		self.state.schedule_states[schedule.id] = ScheduleState.RUNNING
		local_date = effective.local_day.isoformat()
		timer = Timer()
		with timer:
			try:
				result = await asyncio.wait_for(
					self._executor(schedule, mission),
					timeout=self.config.execution_timeout,
				)
			except asyncio.TimeoutError:
				result = ExecutionResult(ok=False, error=f"execution timed out after {self.config.execution_timeout}s")
			except Exception as exc:
				logger.exception("Executor raised for schedule %s", schedule.id)
				result = ExecutionResult(ok=False, error=f"executor error: {exc}")

		outcome = ScheduleOutcome(
			schedule_id=schedule.id,
			owner_id=owner_id,
			local_date=local_date,
			status="success" if result.ok else "error",
			trigger_source=effective.source,
			attempt=attempt,
			reason=result.error,
		)
		await self._record_attempt(owner_id, RunRecord(
			ts=now,
			schedule_id=schedule.id,
			run_key=run_key_for(schedule.id, local_date),
			attempt=attempt,
			status="success" if result.ok else "error",
			error=result.error,
			duration_ms=timer.elapsed_ms,
		))
		if result.ok:
			report.metrics.succeeded += 1
			logger.info("Schedule %s ran for %s (%s, attempt %d)", schedule.id, local_date, effective.source, attempt)
		else:
			report.metrics.failed += 1
			self.state.schedule_states[schedule.id] = ScheduleState.ERROR
			if await self._dead_letter(owner_id, schedule, result, effective, attempt):
				report.metrics.dead_lettered += 1

		await self._record_run(owner_id, schedule.id, result.ok, now)
		await self._emit_telemetry(owner_id, mission.id, result, timer.elapsed_ms, now)
		return outcome

	async def _record_attempt(self, owner_id: str, record: RunRecord) -> None:
		try:
			await self._runs.record(owner_id, record)
		except OSError as exc:
			logger.error("Failed to log run %s attempt %d: %s", record.run_key, record.attempt, exc)

	async def _dead_letter(
		self,
		owner_id: str,
		schedule: NotificationSchedule,
		result: ExecutionResult,
		effective: EffectiveTrigger,
		attempt: int,
	) -> bool:
		local_date = effective.local_day.isoformat()
		try:
			await self._dead_letters.append(DeadLetterEntry(
				schedule_id=schedule.id,
				owner_id=owner_id,
				label=schedule.label,
				source="scheduler",
				run_key=run_key_for(schedule.id, local_date),
				attempt=attempt,
				reason=result.error or "delivery failed",
				output_ok_count=result.ok_count,
				output_fail_count=result.fail_count,
				metadata={
					"mode": "daily",
					"day_stamp": local_date,
					"trigger_source": effective.source,
					"timezone": effective.timezone,
				},
			))
		except OSError as exc:
			logger.error("Failed to dead-letter schedule %s: %s", schedule.id, exc)
			return False
		return True

	async def _record_run(self, owner_id: str, schedule_id: str, ok: bool, now: datetime) -> None:
		def _count(current: NotificationSchedule) -> NotificationSchedule:
			current.run_count += 1
			if ok:
				current.success_count += 1
			else:
				current.failure_count += 1
			current.last_run_at = now.isoformat()
			current.last_run_status = "success" if ok else "error"
			return current

		try:
			await self._notifications.update(owner_id, schedule_id, _count)
		except OSError as exc:
			logger.error("Failed to update run counters for %s: %s", schedule_id, exc)

	async def _emit_telemetry(
		self, owner_id: str, mission_id: str, result: ExecutionResult, duration_ms: float, now: datetime,
	) -> None:
		events = [TelemetryEvent(
			ts=now,
			owner_id=owner_id,
			event_type=EVENT_MISSION_RUN,
			mission_id=mission_id,
			duration_ms=duration_ms,
			outcome="success" if result.ok else "failure",
		)]
		for delivery in result.deliveries:
			events.append(TelemetryEvent(
				ts=now,
				owner_id=owner_id,
				event_type=EVENT_DELIVERY,
				mission_id=mission_id,
				outcome="success" if delivery.ok else "failure",
			))
		try:
			for event in events:
				await self._telemetry.append(event)
		except OSError as exc:
			logger.warning("Failed to write telemetry for %s: %s", mission_id, exc)

	async def run(self) -> None:
		"""Tick every ``tick_interval`` seconds until ``stop`` is called."""
		self.state.running = True
		self._stop_event.clear()
		logger.info("Scheduler started (interval=%ds)", self.config.tick_interval)
		try:
			while self.state.running:
				await self.tick()
				try:
					await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.tick_interval)
				except asyncio.TimeoutError:
					pass
		finally:
			self.state.running = False
			logger.info("Scheduler stopped after %d ticks", self.state.total_tick_count)

	def stop(self) -> None:
		"""Signal the loop to exit after the current tick."""
		self.state.running = False
		self._stop_event.set()
