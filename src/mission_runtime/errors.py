"""Exception types raised across the runtime.

Version conflicts are not exceptions: they come back as a ``DiffResult`` so the
caller can re-read and retry.
"""

from __future__ import annotations


class MissionRuntimeError(Exception):
	"""Base class for every error this package raises on purpose."""


class InvalidOwnerError(MissionRuntimeError):
	"""Owner id is empty after sanitization."""


class MissionNotFoundError(MissionRuntimeError):
	def __init__(self, owner_id: str, mission_id: str) -> None:
		super().__init__(f"Mission {mission_id!r} not found for owner {owner_id!r}")
		self.owner_id = owner_id
		self.mission_id = mission_id


class DiffValidationError(MissionRuntimeError):
	"""Diff payload could not be parsed into operations."""


class RescheduleValidationError(MissionRuntimeError):
	"""Requested reschedule time was rejected before any write."""


class MissionValidationError(MissionRuntimeError):
	"""A mission graph is structurally invalid."""

	def __init__(self, message: str, issues: list[str] | None = None) -> None:
		super().__init__(message)
		self.issues = issues or []
