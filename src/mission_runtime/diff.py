"""Mission graph diff engine with optimistic concurrency.

``apply_diff`` is pure: it works on a deep copy and either returns the fully
mutated mission or reports why the whole batch was refused. ``DiffService``
adds the read-compare-save against the mission store and the journal append.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import ValidationError

from mission_runtime.errors import DiffValidationError
from mission_runtime.journal import OperationJournal
from mission_runtime.mission_store import MissionStore
from mission_runtime.models import (
	DIFF_OPERATIONS_ADAPTER,
	AddConnectionOp,
	AddNodeOp,
	DiffOperation,
	Mission,
	MoveNodeOp,
	RemoveConnectionOp,
	RemoveNodeOp,
	SetStatusOp,
	UpdateLabelOp,
	UpdateNodeOp,
)

logger = logging.getLogger(__name__)

DiffOutcome = Literal["applied", "version_conflict", "invalid"]


@dataclass
class DiffIssue:
	code: str
	operation_index: int | None
	path: str
	message: str

	def to_dict(self) -> dict[str, Any]:
		return {
			"code": self.code,
			"operation_index": self.operation_index,
			"path": self.path,
			"message": self.message,
		}


@dataclass
class DiffResult:
	"""Outcome of a diff batch.

	``mission`` is the committed mission when applied, the current stored
	mission on a version conflict, and None when the batch was invalid.
	``journaled`` is False when the batch committed but its journal entry
	could not be written.
	"""

	result: DiffOutcome
	mission: Mission | None = None
	applied_count: int = 0
	issues: list[DiffIssue] = field(default_factory=list)
	journaled: bool = False

	@property
	def applied(self) -> bool:
		return self.result == "applied"


class _OperationRejected(Exception):
	def __init__(self, code: str, path: str, message: str) -> None:
		super().__init__(message)
		self.code = code
		self.path = path
		self.message = message


def parse_operations(raw: Any) -> list[DiffOperation]:
	"""Validate a raw operations payload into typed operations.

	Raises:
		DiffValidationError: On an unknown ``type``, missing fields, or a
			payload that is not a non-empty list.
	"""
	if not isinstance(raw, list) or not raw:
		raise DiffValidationError("operations must be a non-empty list")
	try:
		return DIFF_OPERATIONS_ADAPTER.validate_python(raw)
	except ValidationError as exc:
		first = exc.errors()[0]
		loc = ".".join(str(p) for p in first.get("loc", ()))
		raise DiffValidationError(f"Invalid operation at {loc}: {first.get('msg', 'invalid')}") from exc


def _apply_one(mission: Mission, op: DiffOperation) -> None:
	if isinstance(op, AddNodeOp):
		node_id = op.node.id.strip()
		if not node_id:
			raise _OperationRejected("missing_node_id", "node.id", "Node id is required")
		if mission.find_node(node_id) is not None:
			raise _OperationRejected("duplicate_node_id", "node.id", f"Node {node_id!r} already exists")
		mission.nodes.append(op.node.model_copy(update={"id": node_id}, deep=True))

	elif isinstance(op, RemoveNodeOp):
		if mission.find_node(op.node_id) is None:
			raise _OperationRejected("node_not_found", "node_id", f"Node {op.node_id!r} does not exist")
		mission.nodes = [n for n in mission.nodes if n.id != op.node_id]
		mission.connections = [
			c for c in mission.connections
			if c.from_node_id != op.node_id and c.to_node_id != op.node_id
		]

	elif isinstance(op, UpdateNodeOp):
		node = mission.find_node(op.node_id)
		if node is None:
			raise _OperationRejected("node_not_found", "node_id", f"Node {op.node_id!r} does not exist")
		node.config = {**node.config, **op.config}
		if op.label is not None:
			node.label = op.label

	elif isinstance(op, MoveNodeOp):
		node = mission.find_node(op.node_id)
		if node is None:
			raise _OperationRejected("node_not_found", "node_id", f"Node {op.node_id!r} does not exist")
		node.position = op.position.model_copy()

	elif isinstance(op, AddConnectionOp):
		conn = op.connection
		if any(c.id == conn.id for c in mission.connections):
			raise _OperationRejected("duplicate_connection_id", "connection.id", f"Connection {conn.id!r} already exists")
		for attr in ("from_node_id", "to_node_id"):
			endpoint = getattr(conn, attr)
			if mission.find_node(endpoint) is None:
				raise _OperationRejected(
					"connection_endpoint_missing", f"connection.{attr}", f"Node {endpoint!r} does not exist",
				)
		mission.connections.append(conn.model_copy())

	elif isinstance(op, RemoveConnectionOp):
		before = len(mission.connections)
		mission.connections = [c for c in mission.connections if c.id != op.connection_id]
		if len(mission.connections) == before:
			raise _OperationRejected(
				"connection_not_found", "connection_id", f"Connection {op.connection_id!r} does not exist",
			)

	elif isinstance(op, SetStatusOp):
		mission.status = op.status

	elif isinstance(op, UpdateLabelOp):
		label = op.label.strip()
		if not label:
			raise _OperationRejected("empty_label", "label", "Label must not be empty")
		mission.label = label


def validate_graph(mission: Mission) -> list[DiffIssue]:
	"""Structural check of a whole mission graph."""
	issues: list[DiffIssue] = []
	seen_nodes: set[str] = set()
	for idx, node in enumerate(mission.nodes):
		if not node.id:
			issues.append(DiffIssue("missing_node_id", None, f"nodes[{idx}].id", "Node id is required"))
		elif node.id in seen_nodes:
			issues.append(DiffIssue("duplicate_node_id", None, f"nodes[{idx}].id", f"Duplicate node id {node.id!r}"))
		seen_nodes.add(node.id)

	seen_conns: set[str] = set()
	for idx, conn in enumerate(mission.connections):
		if conn.id in seen_conns:
			issues.append(DiffIssue(
				"duplicate_connection_id", None, f"connections[{idx}].id", f"Duplicate connection id {conn.id!r}",
			))
		seen_conns.add(conn.id)
		for attr in ("from_node_id", "to_node_id"):
			if getattr(conn, attr) not in seen_nodes:
				issues.append(DiffIssue(
					"connection_endpoint_missing", None, f"connections[{idx}].{attr}",
					f"Connection {conn.id!r} references unknown node {getattr(conn, attr)!r}",
				))
	return issues


def apply_diff(
	mission: Mission,
	operations: list[DiffOperation],
	expected_version: int,
	now: datetime | None = None,
) -> DiffResult:
	"""Apply ``operations`` in order, all or nothing.

	The input mission is never mutated.
	"""
	if mission.version != expected_version:
		return DiffResult(
			result="version_conflict",
			mission=mission,
			issues=[DiffIssue(
				"version_conflict", None, "expected_version",
				f"Expected version {expected_version}, current version is {mission.version}",
			)],
		)

	working = mission.model_copy(deep=True)
	for idx, op in enumerate(operations):
		try:
			_apply_one(working, op)
		except _OperationRejected as exc:
			return DiffResult(
				result="invalid",
				issues=[DiffIssue(exc.code, idx, f"operations[{idx}].{exc.path}", exc.message)],
			)

	structural = validate_graph(working)
	if structural:
		return DiffResult(result="invalid", issues=structural)

	stamp = now or datetime.now(timezone.utc)
	working.version = mission.version + 1
	working.updated_at = stamp.isoformat()
	return DiffResult(result="applied", mission=working, applied_count=len(operations))


class DiffService:
	"""Applies diffs against the stored mission and journals each committed batch."""

	def __init__(self, missions: MissionStore, journal: OperationJournal) -> None:
		self._missions = missions
		self._journal = journal

	async def apply(
		self,
		owner_id: str,
		mission_id: str,
		operations: list[DiffOperation] | list[dict[str, Any]],
		expected_version: int,
		actor: str = "user",
	) -> DiffResult:
		"""Read, compare and save under the owner lock.

		Raises:
			DiffValidationError: If ``operations`` are malformed.
			MissionNotFoundError: If the mission does not exist.
		"""
		ops = operations if operations and not isinstance(operations[0], dict) else parse_operations(operations)

		def _mutate(current: Mission) -> tuple[Mission | None, DiffResult]:
			result = apply_diff(current, ops, expected_version)
			return (result.mission if result.applied else None), result

		result = await self._missions.update(owner_id, mission_id, _mutate)
		if not result.applied:
			logger.info(
				"Diff for mission %s rejected: %s (%s)",
				mission_id, result.result, ", ".join(i.code for i in result.issues),
			)
			return result

		assert result.mission is not None
		# The mission is saved at this point; a journal failure leaves the batch committed
		try:
			await self._journal.record(
				owner_id=result.mission.owner_id,
				mission_id=mission_id,
				actor=actor,
				operations=ops,
				previous_version=expected_version,
				resulting_version=result.mission.version,
			)
			result.journaled = True
		except OSError:
			logger.error(
				"Mission %s committed at v%d but its journal entry was not written",
				mission_id, result.mission.version, exc_info=True,
			)
		logger.info("Applied %d operation(s) to mission %s -> v%d", result.applied_count, mission_id, result.mission.version)
		return result
