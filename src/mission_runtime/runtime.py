"""Runtime facade: one constructed instance owning every store and service.

Nothing here is module-level state, so several runtimes (for example one per
test) can coexist in a process.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from mission_runtime import autofix
from mission_runtime.applog import AppendOnlyLog
from mission_runtime.calendar import CalendarAggregator, HttpCalendarAggregator, StaticCalendarAggregator
from mission_runtime.config import RuntimeConfig
from mission_runtime.constants import DEFAULT_LIMITS, DEFAULT_TRIGGER_TIME
from mission_runtime.dead_letter import DeadLetterLog
from mission_runtime.delivery import DeliveryDispatcher, NotificationExecutor, ScheduleExecutor, build_dispatcher
from mission_runtime.diff import DiffResult, DiffService, validate_graph
from mission_runtime.errors import MissionNotFoundError, MissionValidationError
from mission_runtime.journal import OperationJournal
from mission_runtime.kvstore import JsonFileStore, TransactionalStore
from mission_runtime.mission_store import MissionStore
from mission_runtime.models import (
	DeadLetterEntry,
	JournalEntry,
	Mission,
	MissionConnection,
	MissionNode,
	MissionStatus,
	NotificationSchedule,
	SetStatusOp,
	UpdateNodeOp,
	as_utc,
	now_iso,
)
from mission_runtime.notification_store import NotificationStore, build_schedule, parse_daily_time
from mission_runtime.path_security import DataLayout, sanitize_owner_id
from mission_runtime.reschedule import RescheduleResult, RescheduleService, RescheduleStore
from mission_runtime.run_log import RunLog
from mission_runtime.scheduler import Scheduler, TickReport
from mission_runtime.slo import SloReport, clamp_lookback, evaluate
from mission_runtime.telemetry import TelemetryLog

logger = logging.getLogger(__name__)

# Soft deletes race with concurrent edits; re-read and retry this many times.
_SOFT_DELETE_ATTEMPTS = 3

# Step field -> node config key, used when writing autofix results back
_STEP_CONFIG_KEYS = {
	"ai_integration": "integration",
	"ai_prompt": "prompt",
	"output_channel": "channel",
	"output_recipients": "recipients",
	"fetch_query": "query",
	"condition_field": "field",
}


@dataclass
class PurgeResult:
	"""Per-part outcome of a delete cascade: "ok", "error" or "skipped"."""

	reschedule_override: str = "ok"
	dead_letter: str = "ok"
	telemetry: str = "ok"
	run_log: str = "ok"
	schedule: str = "ok"
	journal: str = "skipped"

	@property
	def ok(self) -> bool:
		return "error" not in (
			self.reschedule_override, self.dead_letter, self.telemetry, self.run_log, self.schedule, self.journal,
		)


@dataclass
class FixApplication:
	autofix: autofix.AutofixResult
	diff: DiffResult | None = None


def _targets_from_mission(mission: Mission) -> list[str]:
	targets: list[str] = []
	for node in mission.nodes:
		if node.type != "schedule-trigger" and node.type != "output" and not node.type.endswith("-output"):
			continue
		for key in ("chat_ids", "webhook_urls"):
			value = node.config.get(key)
			if isinstance(value, list):
				targets.extend(str(v).strip() for v in value if str(v).strip())
	return list(dict.fromkeys(targets))


class MissionRuntime:
	"""Operations exposed to the API layer, over owner-scoped storage."""

	def __init__(
		self,
		config: RuntimeConfig,
		store: TransactionalStore | None = None,
		calendar: CalendarAggregator | None = None,
		executor: ScheduleExecutor | None = None,
		classify: Callable[[float, float], autofix.Disposition] = autofix.default_classify,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self.config = config
		self.layout = DataLayout(config.storage.resolved_path)
		store = store or JsonFileStore()
		log = AppendOnlyLog()

		self.missions = MissionStore(self.layout, store)
		self.journal = OperationJournal(self.layout, log)
		self.diffs = DiffService(self.missions, self.journal)
		self.overrides = RescheduleStore(self.layout, store)
		self.notifications = NotificationStore(self.layout, store)
		self.dead_letters = DeadLetterLog(self.layout, log)
		self.telemetry = TelemetryLog(self.layout, log)
		self.runs = RunLog(self.layout, log)

		if calendar is None:
			calendar = HttpCalendarAggregator(config.calendar) if config.calendar.base_url else StaticCalendarAggregator()
		self.calendar = calendar
		self.reschedule = RescheduleService(
			self.missions,
			self.overrides,
			calendar,
			config=config.reschedule,
			calendar_timeout=float(config.calendar.timeout),
			default_timezone=config.scheduler.default_timezone,
		)

		self.dispatcher: DeliveryDispatcher | None = None
		if executor is None:
			self.dispatcher = build_dispatcher(config.delivery)
			executor = NotificationExecutor(self.dispatcher)
		scheduler_kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}
		self.scheduler = Scheduler(
			self.notifications,
			self.missions,
			self.overrides,
			self.dead_letters,
			self.telemetry,
			self.runs,
			executor,
			config=config.scheduler,
			**scheduler_kwargs,
		)
		self.autofix_policy = autofix.AutofixPolicy.from_config(config.autofix, classify)
		self._clock = clock or (lambda: datetime.now(timezone.utc))

	# -- Missions --

	async def create_mission(
		self,
		owner_id: str,
		label: str,
		nodes: list[MissionNode | dict[str, Any]] | None = None,
		connections: list[MissionConnection | dict[str, Any]] | None = None,
		status: MissionStatus = MissionStatus.ACTIVE,
	) -> Mission:
		"""Create and persist a mission at version 1.

		Raises:
			InvalidOwnerError: If ``owner_id`` sanitizes to nothing.
			MissionValidationError: If the graph is structurally invalid.
		"""
		owner = sanitize_owner_id(owner_id)
		self.layout.owner_dir(owner)
		mission = Mission.model_validate({
			"owner_id": owner,
			"label": label.strip(),
			"nodes": nodes or [],
			"connections": connections or [],
			"status": status,
		})
		issues = validate_graph(mission)
		if issues:
			raise MissionValidationError(
				f"Mission graph is invalid ({len(issues)} issue(s))",
				[f"{i.path}: {i.message}" for i in issues],
			)
		stored = await self.missions.upsert(mission)
		await self._sync_schedule(stored)
		logger.info("Created mission %s for %s", stored.id, owner)
		return stored

	async def get_mission(self, owner_id: str, mission_id: str) -> Mission:
		"""Raises MissionNotFoundError if absent."""
		mission = await self.missions.get(owner_id, mission_id)
		if mission is None:
			raise MissionNotFoundError(sanitize_owner_id(owner_id), mission_id)
		return mission

	async def list_missions(self, owner_id: str, include_deleted: bool = False) -> list[Mission]:
		missions = await self.missions.list_missions(owner_id)
		if include_deleted:
			return missions
		return [m for m in missions if m.status != MissionStatus.DELETED]

	async def apply_diff(
		self,
		owner_id: str,
		mission_id: str,
		operations: list[Any],
		expected_version: int,
		actor: str = "user",
	) -> DiffResult:
		result = await self.diffs.apply(owner_id, mission_id, operations, expected_version, actor=actor)
		if result.applied and result.mission is not None:
			await self._sync_schedule(result.mission)
		return result

	async def delete_mission(
		self, owner_id: str, mission_id: str, hard: bool = False, actor: str = "user",
	) -> PurgeResult:
		"""Soft delete (status ``deleted``) or hard delete, then clean derived data.

		Raises:
			MissionNotFoundError: If the mission does not exist.
		"""
		owner = sanitize_owner_id(owner_id)
		if hard:
			if not await self.missions.delete(owner, mission_id):
				raise MissionNotFoundError(owner, mission_id)
		else:
			await self._soft_delete(owner, mission_id, actor)
		result = await self._purge_derived(owner, mission_id, hard)
		logger.info("%s-deleted mission %s for %s: %s", "Hard" if hard else "Soft", mission_id, owner, result)
		return result

	async def _soft_delete(self, owner_id: str, mission_id: str, actor: str) -> None:
		for _ in range(_SOFT_DELETE_ATTEMPTS):
			current = await self.get_mission(owner_id, mission_id)
			if current.status == MissionStatus.DELETED:
				return
			result = await self.diffs.apply(
				owner_id, mission_id, [SetStatusOp(status=MissionStatus.DELETED)], current.version, actor=actor,
			)
			if result.applied:
				return
		raise MissionValidationError(f"Could not soft-delete mission {mission_id}: version kept changing")

	async def _purge_derived(self, owner_id: str, mission_id: str, hard: bool) -> PurgeResult:
		"""Each part runs even if an earlier one failed."""
		result = PurgeResult()
		try:
			await self.overrides.delete(owner_id, mission_id)
		except Exception as exc:
			result.reschedule_override = "error"
			logger.error("Purge of reschedule override for %s failed: %s", mission_id, exc)
		try:
			await self.dead_letters.purge_for_mission(owner_id, mission_id)
		except Exception as exc:
			result.dead_letter = "error"
			logger.error("Purge of dead letters for %s failed: %s", mission_id, exc)
		try:
			await self.telemetry.purge_for_mission(owner_id, mission_id)
		except Exception as exc:
			result.telemetry = "error"
			logger.error("Purge of telemetry for %s failed: %s", mission_id, exc)
		try:
			await self.runs.purge_for_mission(owner_id, mission_id)
		except Exception as exc:
			result.run_log = "error"
			logger.error("Purge of run history for %s failed: %s", mission_id, exc)
		try:
			if hard:
				await self.notifications.delete(owner_id, mission_id)
			else:
				await self.notifications.update(owner_id, mission_id, _disable)
		except Exception as exc:
			result.schedule = "error"
			logger.error("Schedule cleanup for %s failed: %s", mission_id, exc)
		if hard:
			try:
				await self.journal.purge_for_mission(owner_id, mission_id)
				result.journal = "ok"
			except Exception as exc:
				result.journal = "error"
				logger.error("Purge of journal for %s failed: %s", mission_id, exc)
		return result

	async def _sync_schedule(self, mission: Mission) -> NotificationSchedule | None:
		"""Mirror the mission's trigger node into its notification schedule."""
		owner = mission.owner_id
		trigger = mission.trigger_node
		if trigger is None:
			if await self.notifications.delete(owner, mission.id):
				logger.info("Removed schedule for mission %s (no trigger node)", mission.id)
			return None

		cfg = trigger.config
		time_value = str(cfg.get("time") or "")
		if parse_daily_time(time_value) is None:
			time_value = DEFAULT_TRIGGER_TIME
		fields = {
			"label": mission.label,
			"message": str(cfg.get("message") or mission.label or "Scheduled mission").strip(),
			"time": time_value,
			"timezone": str(cfg.get("timezone") or self.config.scheduler.default_timezone),
			"enabled": mission.status == MissionStatus.ACTIVE,
			"chat_ids": _targets_from_mission(mission),
		}
		existing = await self.notifications.get(owner, mission.id)
		if existing is None:
			schedule = build_schedule(
				message=fields["message"],
				time=fields["time"],
				owner_id=owner,
				schedule_id=mission.id,
				label=fields["label"],
				timezone=fields["timezone"],
				enabled=fields["enabled"],
				chat_ids=fields["chat_ids"],
			)
		else:
			schedule = existing.model_copy(update=fields)
		return await self.notifications.upsert(owner, schedule)

	# -- Reschedule --

	async def set_reschedule_override(
		self, owner_id: str, mission_id: str, new_start_at: datetime, now: datetime | None = None,
	) -> RescheduleResult:
		return await self.reschedule.set_override(owner_id, mission_id, new_start_at, now=now or self._clock())

	async def delete_reschedule_override(self, owner_id: str, mission_id: str) -> bool:
		return await self.reschedule.delete_override(owner_id, mission_id)

	# -- Dead letters, journal, telemetry --

	def list_dead_letter(
		self,
		owner_id: str,
		schedule_id: str | None = None,
		limit: int = DEFAULT_LIMITS["dead_letter_list_limit"],
	) -> list[DeadLetterEntry]:
		return self.dead_letters.list(owner_id, schedule_id=schedule_id, limit=limit)

	async def purge_for_mission(self, owner_id: str, mission_id: str) -> int:
		return await self.dead_letters.purge_for_mission(owner_id, mission_id)

	def list_journal(
		self, owner_id: str, mission_id: str, limit: int = DEFAULT_LIMITS["journal_list_limit"],
	) -> list[JournalEntry]:
		return self.journal.list_for_mission(owner_id, mission_id, limit=limit)

	def evaluate_slos(
		self, owner_id: str, lookback_days: int | None = None, now: datetime | None = None,
	) -> SloReport:
		now = as_utc(now) if now is not None else self._clock()
		days = clamp_lookback(lookback_days, self.config.slo.lookback_days)
		events = self.telemetry.list_events(owner_id, since=now - timedelta(days=days))
		return evaluate(events, self.config.slo, now=now, lookback_days=days)

	# -- Autofix --

	async def preview_fixes(self, owner_id: str, mission_id: str) -> autofix.AutofixResult:
		mission = await self.get_mission(owner_id, mission_id)
		return autofix.preview(autofix.summary_from_mission(mission), self.autofix_policy)

	async def apply_fixes(
		self,
		owner_id: str,
		mission_id: str,
		approved_fix_ids: list[str] | None = None,
		actor: str = "autofix",
	) -> FixApplication:
		"""Apply eligible fixes and commit the node changes as one diff."""
		mission = await self.get_mission(owner_id, mission_id)
		before = autofix.summary_from_mission(mission)
		result = autofix.apply(before, approved_fix_ids, self.autofix_policy)
		operations = _fix_operations(before, result.summary)
		if not operations:
			return FixApplication(autofix=result)
		diff = await self.apply_diff(owner_id, mission_id, operations, mission.version, actor=actor)
		return FixApplication(autofix=result, diff=diff)

	# -- Scheduler --

	async def tick(self, now: datetime | None = None) -> TickReport:
		return await self.scheduler.tick(now)

	async def close(self) -> None:
		if self.dispatcher is not None:
			await self.dispatcher.close()
		close = getattr(self.calendar, "close", None)
		if close is not None:
			await close()


def _disable(schedule: NotificationSchedule) -> NotificationSchedule | None:
	if not schedule.enabled:
		return None
	schedule.enabled = False
	schedule.updated_at = now_iso()
	return schedule


def _fix_operations(before: autofix.WorkflowSummary, after: autofix.WorkflowSummary) -> list[UpdateNodeOp]:
	ops: list[UpdateNodeOp] = []
	for old, new in zip(before.steps, after.steps):
		config: dict[str, Any] = {}
		for step_field, config_key in _STEP_CONFIG_KEYS.items():
			if getattr(old, step_field) != getattr(new, step_field):
				config[config_key] = getattr(new, step_field)
		label = new.title if new.title != old.title else None
		if config or label is not None:
			ops.append(UpdateNodeOp(node_id=new.id, config=config, label=label))
	return ops
