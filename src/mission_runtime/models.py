"""Data models for mission-runtime state.

Persisted records and caller-supplied payloads are pydantic models so they are
validated on the way in; in-process results live next to the code that
produces them as dataclasses.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from mission_runtime.constants import DEFAULT_TIMEZONE, SCHEDULE_TRIGGER_NODE


def now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
	return uuid4().hex[:12]


def new_uuid() -> str:
	return str(uuid4())


def as_utc(value: datetime) -> datetime:
	"""Naive datetimes from collaborators and old records are read as UTC."""
	return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


# -- Mission graph --


class MissionStatus(str, Enum):
	ACTIVE = "active"
	PAUSED = "paused"
	DELETED = "deleted"


class NodePosition(BaseModel):
	x: float = 0.0
	y: float = 0.0


class MissionNode(BaseModel, extra="ignore"):
	"""A single node of a mission graph."""

	id: str
	type: str
	label: str = ""
	config: dict[str, Any] = Field(default_factory=dict)
	position: NodePosition = Field(default_factory=NodePosition)


class MissionConnection(BaseModel, extra="ignore"):
	"""Directed edge between two nodes of the same mission."""

	id: str = Field(default_factory=new_id)
	from_node_id: str
	to_node_id: str


class Mission(BaseModel, extra="ignore"):
	"""A stored, owner-scoped automation graph."""

	id: str = Field(default_factory=new_id)
	owner_id: str
	label: str = ""
	nodes: list[MissionNode] = Field(default_factory=list)
	connections: list[MissionConnection] = Field(default_factory=list)
	version: int = Field(default=1, ge=1)
	status: MissionStatus = MissionStatus.ACTIVE
	created_at: str = Field(default_factory=now_iso)
	updated_at: str = Field(default_factory=now_iso)

	def find_node(self, node_id: str) -> MissionNode | None:
		for node in self.nodes:
			if node.id == node_id:
				return node
		return None

	@property
	def trigger_node(self) -> MissionNode | None:
		"""First schedule-trigger node, if the mission has one."""
		for node in self.nodes:
			if node.type == SCHEDULE_TRIGGER_NODE:
				return node
		return None


# -- Diff operations --


class AddNodeOp(BaseModel):
	type: Literal["addNode"] = "addNode"
	node: MissionNode


class RemoveNodeOp(BaseModel):
	type: Literal["removeNode"] = "removeNode"
	node_id: str


class UpdateNodeOp(BaseModel):
	type: Literal["updateNode"] = "updateNode"
	node_id: str
	config: dict[str, Any] = Field(default_factory=dict)
	label: str | None = None


class MoveNodeOp(BaseModel):
	type: Literal["moveNode"] = "moveNode"
	node_id: str
	position: NodePosition


class AddConnectionOp(BaseModel):
	type: Literal["addConnection"] = "addConnection"
	connection: MissionConnection


class RemoveConnectionOp(BaseModel):
	type: Literal["removeConnection"] = "removeConnection"
	connection_id: str


class SetStatusOp(BaseModel):
	type: Literal["setStatus"] = "setStatus"
	status: MissionStatus


class UpdateLabelOp(BaseModel):
	type: Literal["updateLabel"] = "updateLabel"
	label: str


DiffOperation = Annotated[
	Union[
		AddNodeOp,
		RemoveNodeOp,
		UpdateNodeOp,
		MoveNodeOp,
		AddConnectionOp,
		RemoveConnectionOp,
		SetStatusOp,
		UpdateLabelOp,
	],
	Field(discriminator="type"),
]

DIFF_OPERATIONS_ADAPTER: TypeAdapter[list[DiffOperation]] = TypeAdapter(list[DiffOperation])


# -- Calendar --


class RescheduleOverride(BaseModel, extra="ignore"):
	"""A trigger-time override layered over a mission without touching its graph."""

	owner_id: str
	mission_id: str
	new_start_at: datetime
	original_time: datetime
	created_at: str = Field(default_factory=now_iso)
	updated_at: str = Field(default_factory=now_iso)

	@field_validator("new_start_at", "original_time")
	@classmethod
	def _aware(cls, value: datetime) -> datetime:
		return as_utc(value)


class CalendarEvent(BaseModel, extra="ignore"):
	"""An aggregated calendar event as returned by the calendar collaborator."""

	id: str
	start_at: datetime
	end_at: datetime
	mission_id: str | None = None
	kind: str = "personal"
	title: str = ""

	@field_validator("start_at", "end_at")
	@classmethod
	def _aware(cls, value: datetime) -> datetime:
		return as_utc(value)


# -- Notifications --


RunStatus = Literal["success", "error", "skipped"]


class NotificationSchedule(BaseModel, extra="ignore"):
	"""A persisted daily notification schedule."""

	id: str = Field(default_factory=new_uuid)
	owner_id: str = ""
	label: str = "Scheduled notification"
	message: str = Field(min_length=1)
	time: str = Field(min_length=1)
	timezone: str = DEFAULT_TIMEZONE
	enabled: bool = True
	chat_ids: list[str] = Field(default_factory=list)
	created_at: str = Field(default_factory=now_iso)
	updated_at: str = Field(default_factory=now_iso)
	last_sent_local_date: str | None = None
	run_count: int = 0
	success_count: int = 0
	failure_count: int = 0
	last_run_at: str | None = None
	last_run_status: RunStatus | None = None

	@field_validator("run_count", "success_count", "failure_count", mode="before")
	@classmethod
	def _non_negative(cls, value: Any) -> int:
		try:
			return max(0, int(value))
		except (TypeError, ValueError):
			return 0

	@field_validator("chat_ids", mode="before")
	@classmethod
	def _clean_chat_ids(cls, value: Any) -> list[str]:
		if not isinstance(value, list):
			return []
		return [str(c).strip() for c in value if str(c).strip()]

	@field_validator("label", mode="before")
	@classmethod
	def _default_label(cls, value: Any) -> str:
		label = str(value or "").strip()
		return label or "Scheduled notification"

	@field_validator("last_run_status", mode="before")
	@classmethod
	def _known_status(cls, value: Any) -> str | None:
		return value if value in ("success", "error", "skipped") else None


class DeadLetterEntry(BaseModel, extra="ignore"):
	"""A durable record of a failed delivery attempt."""

	id: str = Field(default_factory=new_uuid)
	ts: int = 0
	schedule_id: str
	owner_id: str | None = None
	label: str | None = None
	source: Literal["scheduler", "trigger"] = "scheduler"
	run_key: str | None = None
	attempt: int | None = None
	reason: str
	output_ok_count: int = 0
	output_fail_count: int = 0
	metadata: dict[str, Any] | None = None


class RunRecord(BaseModel, extra="ignore"):
	"""One scheduled execution attempt; ``run_key`` is ``<schedule_id>:<local_day>``."""

	ts: datetime
	schedule_id: str
	run_key: str
	attempt: int = Field(default=1, ge=1)
	status: RunStatus
	error: str | None = None
	duration_ms: float | None = Field(default=None, ge=0)

	@field_validator("ts")
	@classmethod
	def _aware(cls, value: datetime) -> datetime:
		return as_utc(value)


# -- Telemetry and journal --


class TelemetryEvent(BaseModel, extra="ignore"):
	ts: datetime
	owner_id: str
	event_type: str
	mission_id: str | None = None
	duration_ms: float | None = Field(default=None, ge=0)
	outcome: Literal["success", "failure", "skipped"]

	@field_validator("ts")
	@classmethod
	def _aware(cls, value: datetime) -> datetime:
		return as_utc(value)


class JournalEntry(BaseModel, extra="ignore"):
	"""Audit record of one applied diff batch."""

	id: str = Field(default_factory=new_uuid)
	ts: str = Field(default_factory=now_iso)
	owner_id: str
	mission_id: str
	actor: str
	operations: list[dict[str, Any]] = Field(default_factory=list)
	previous_version: int
	resulting_version: int
