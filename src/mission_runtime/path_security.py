"""Owner-scoped data paths with traversal protection."""

from __future__ import annotations

import re
from pathlib import Path

from mission_runtime.constants import MAX_OWNER_ID_LEN
from mission_runtime.errors import InvalidOwnerError

_UNSAFE_CHARS = re.compile(r"[^a-z0-9_-]")
_DASH_RUNS = re.compile(r"-+")

USER_CONTEXT_DIR = "user-context"
GLOBAL_DIR = "global"


def sanitize_owner_id(value: object) -> str:
	"""Normalize an owner id to a filesystem-safe directory name.

	Returns an empty string when nothing usable is left.
	"""
	normalized = str(value if value is not None else "").strip().lower()
	normalized = _UNSAFE_CHARS.sub("-", normalized)
	normalized = _DASH_RUNS.sub("-", normalized).strip("-")
	return normalized[:MAX_OWNER_ID_LEN]


def validate_data_path(path: Path, base: Path) -> Path:
	"""Check that ``path`` resolves inside ``base``.

	Raises:
		ValueError: If the path contains null bytes or escapes ``base``.
	"""
	if "\x00" in str(path):
		raise ValueError("Path validation failed: invalid path")
	resolved = path.resolve()
	if not resolved.is_relative_to(base.resolve()):
		raise ValueError("Path validation failed: path outside data directory")
	return resolved


class DataLayout:
	"""Resolves where each store keeps its files under a single data root.

	Owner files live under ``<root>/user-context/<owner>/``; records without an
	owner go to ``<root>/global/``.
	"""

	def __init__(self, root: Path) -> None:
		self.root = Path(root)

	@property
	def user_context_root(self) -> Path:
		return self.root / USER_CONTEXT_DIR

	def owner_dir(self, owner_id: str) -> Path:
		scoped = sanitize_owner_id(owner_id)
		if not scoped:
			raise InvalidOwnerError(f"Invalid owner id: {owner_id!r}")
		return validate_data_path(self.user_context_root / scoped, self.root)

	def scoped_file(self, owner_id: str | None, *parts: str) -> Path:
		"""Owner-scoped file, or the global equivalent when ``owner_id`` is empty."""
		if owner_id is None or not sanitize_owner_id(owner_id):
			return validate_data_path(self.root.joinpath(GLOBAL_DIR, *parts), self.root)
		return validate_data_path(self.owner_dir(owner_id).joinpath(*parts), self.root)

	def list_owners(self) -> list[str]:
		"""Owner directory names currently present on disk, sorted."""
		if not self.user_context_root.is_dir():
			return []
		return sorted(
			entry.name for entry in self.user_context_root.iterdir()
			if entry.is_dir() and sanitize_owner_id(entry.name) == entry.name
		)
