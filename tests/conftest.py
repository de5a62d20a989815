"""Shared pytest fixtures and factory functions for mission-runtime tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from mission_runtime.applog import AppendOnlyLog
from mission_runtime.config import RuntimeConfig, StorageConfig
from mission_runtime.delivery import DeliveryResult, ExecutionResult
from mission_runtime.kvstore import JsonFileStore
from mission_runtime.models import Mission, MissionConnection, MissionNode, NotificationSchedule
from mission_runtime.path_security import DataLayout
from mission_runtime.runtime import MissionRuntime


class FakeExecutor:
	"""Records every call; returns ``result`` or raises ``exc``."""

	def __init__(self, result: ExecutionResult | None = None, exc: Exception | None = None) -> None:
		self.result = result or ExecutionResult(ok=True, deliveries=[DeliveryResult(channel_id="100", ok=True)])
		self.exc = exc
		self.calls: list[tuple[NotificationSchedule, Mission | None]] = []

	async def __call__(self, schedule: NotificationSchedule, mission: Mission | None) -> ExecutionResult:
		self.calls.append((schedule, mission))
		if self.exc is not None:
			raise self.exc
		return self.result


@pytest.fixture()
def config(tmp_path: Path) -> RuntimeConfig:
	"""RuntimeConfig storing everything under tmp_path, in UTC."""
	cfg = RuntimeConfig()
	cfg.storage = StorageConfig(data_dir=str(tmp_path / "data"))
	cfg.scheduler.default_timezone = "UTC"
	return cfg


@pytest.fixture()
def layout(tmp_path: Path) -> DataLayout:
	return DataLayout(tmp_path / "data")


@pytest.fixture()
def file_store() -> JsonFileStore:
	return JsonFileStore()


@pytest.fixture()
def applog() -> AppendOnlyLog:
	return AppendOnlyLog()


@pytest.fixture()
def executor() -> FakeExecutor:
	return FakeExecutor()


@pytest.fixture()
def runtime(config: RuntimeConfig, executor: FakeExecutor) -> MissionRuntime:
	return MissionRuntime(config, executor=executor)


def make_trigger_node(**config_overrides: Any) -> MissionNode:
	"""A schedule-trigger node firing at 09:00 UTC to chat 100."""
	cfg: dict[str, Any] = {
		"time": "09:00",
		"timezone": "UTC",
		"chat_ids": ["100"],
		"message": "Daily briefing",
	}
	cfg.update(config_overrides)
	return MissionNode(id="trigger", type="schedule-trigger", label="Every morning", config=cfg)


def make_mission(**overrides: Any) -> Mission:
	"""Create a Mission with a trigger and one action node, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "m1",
		"owner_id": "alice",
		"label": "Morning digest",
		"nodes": [
			make_trigger_node(),
			MissionNode(id="n2", type="action", label="Summarize"),
		],
		"connections": [MissionConnection(id="c1", from_node_id="trigger", to_node_id="n2")],
	}
	defaults.update(overrides)
	return Mission(**defaults)
