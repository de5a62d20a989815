"""Tests for the transactional JSON store and the append-only log."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mission_runtime.applog import AppendOnlyLog
from mission_runtime.kvstore import JsonFileStore, MemoryStore, PathLocks, backup_path


class TestJsonFileStore:
	@pytest.mark.asyncio
	async def test_missing_file_loads_as_missing(self, tmp_path: Path) -> None:
		result = await JsonFileStore().load(tmp_path / "absent.json")
		assert result.data is None
		assert result.source == "missing"

	@pytest.mark.asyncio
	async def test_save_then_load(self, tmp_path: Path) -> None:
		store = JsonFileStore()
		key = tmp_path / "state" / "doc.json"
		await store.save(key, {"a": 1})
		result = await store.load(key)
		assert result.data == {"a": 1}
		assert result.source == "primary"

	@pytest.mark.asyncio
	async def test_first_save_writes_backup_of_new_content(self, tmp_path: Path) -> None:
		store = JsonFileStore()
		key = tmp_path / "doc.json"
		await store.save(key, {"a": 1})
		assert json.loads(backup_path(key).read_text()) == {"a": 1}

	@pytest.mark.asyncio
	async def test_backup_keeps_previous_content(self, tmp_path: Path) -> None:
		store = JsonFileStore()
		key = tmp_path / "doc.json"
		await store.save(key, {"v": 1})
		await store.save(key, {"v": 2})
		assert json.loads(key.read_text()) == {"v": 2}
		assert json.loads(backup_path(key).read_text()) == {"v": 1}

	@pytest.mark.asyncio
	async def test_corrupt_primary_falls_back_to_backup_and_restores(self, tmp_path: Path) -> None:
		store = JsonFileStore()
		key = tmp_path / "doc.json"
		await store.save(key, {"v": 1})
		await store.save(key, {"v": 2})
		key.write_text("{not json")

		result = await store.load(key)
		assert result.source == "backup"
		assert result.data == {"v": 1}
		# Primary is rewritten from the backup
		assert json.loads(key.read_text()) == {"v": 1}

	@pytest.mark.asyncio
	async def test_undecodable_primary_falls_back_to_backup(self, tmp_path: Path) -> None:
		store = JsonFileStore()
		key = tmp_path / "doc.json"
		await store.save(key, {"v": 1})
		await store.save(key, {"v": 2})
		key.write_bytes(b'{"version": 2, "items": [\xff\xfe')

		result = await store.load(key)
		assert result.source == "backup"
		assert result.data == {"v": 1}
		assert json.loads(key.read_text()) == {"v": 1}

	@pytest.mark.asyncio
	async def test_undecodable_primary_and_backup_load_as_missing(self, tmp_path: Path) -> None:
		key = tmp_path / "doc.json"
		key.write_bytes(b"\xff\xfe")
		backup_path(key).write_bytes(b"\xff\xfe")
		result = await JsonFileStore().load(key)
		assert result.data is None
		assert result.source == "missing"

	@pytest.mark.asyncio
	async def test_both_corrupt_loads_as_missing(self, tmp_path: Path) -> None:
		key = tmp_path / "doc.json"
		key.write_text("garbage")
		backup_path(key).write_text("")
		result = await JsonFileStore().load(key)
		assert result.data is None

	@pytest.mark.asyncio
	async def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
		store = JsonFileStore()
		key = tmp_path / "doc.json"
		for i in range(3):
			await store.save(key, {"i": i})
		assert sorted(p.name for p in tmp_path.iterdir()) == ["doc.json", "doc.json.bak"]


class TestMemoryStore:
	@pytest.mark.asyncio
	async def test_payloads_are_copied(self, tmp_path: Path) -> None:
		store = MemoryStore()
		payload = {"items": [1]}
		await store.save(tmp_path / "k", payload)
		payload["items"].append(2)
		result = await store.load(tmp_path / "k")
		assert result.data == {"items": [1]}
		assert store.keys() == [str(tmp_path / "k")]


class TestPathLocks:
	def test_same_path_same_lock(self, tmp_path: Path) -> None:
		locks = PathLocks()
		assert locks.for_path(tmp_path / "a") is locks.for_path(tmp_path / "x" / ".." / "a")
		assert locks.for_path(tmp_path / "a") is not locks.for_path(tmp_path / "b")
		assert len(locks) == 2

	def test_instances_do_not_share_locks(self, tmp_path: Path) -> None:
		assert PathLocks().for_path(tmp_path) is not PathLocks().for_path(tmp_path)


class TestAppendOnlyLog:
	@pytest.mark.asyncio
	async def test_append_and_read(self, tmp_path: Path) -> None:
		log = AppendOnlyLog()
		path = tmp_path / "logs" / "events.jsonl"
		await log.append(path, {"n": 1})
		await log.append(path, {"n": 2})
		assert log.read_records(path) == [{"n": 1}, {"n": 2}]

	def test_read_missing_file(self, tmp_path: Path) -> None:
		assert AppendOnlyLog().read_records(tmp_path / "none.jsonl") == []

	def test_unparseable_lines_skipped_on_read(self, tmp_path: Path) -> None:
		path = tmp_path / "events.jsonl"
		path.write_text('{"n": 1}\nnot json\n[1, 2]\n\n{"n": 2}\n')
		log = AppendOnlyLog()
		assert log.read_records(path) == [{"n": 1}, {"n": 2}]
		lines = list(log.iter_lines(path))
		assert len(lines) == 4
		assert [line.parsed for line in lines] == [True, False, False, True]

	@pytest.mark.asyncio
	async def test_rewrite_keeps_unparseable_lines(self, tmp_path: Path) -> None:
		path = tmp_path / "events.jsonl"
		path.write_text('{"n": 1}\nbroken line\n{"n": 2}\n')
		log = AppendOnlyLog()
		removed = await log.rewrite(path, lambda r: r["n"] != 1)
		assert removed == 1
		assert path.read_text() == 'broken line\n{"n": 2}\n'

	@pytest.mark.asyncio
	async def test_rewrite_keeps_unparseable_lines_byte_exact(self, tmp_path: Path) -> None:
		path = tmp_path / "events.jsonl"
		path.write_bytes(b'\t not json  \r\n{"n": 1}\n')
		assert await AppendOnlyLog().rewrite(path, lambda r: False) == 1
		assert path.read_bytes() == b"\t not json  \r\n"

	@pytest.mark.asyncio
	async def test_rewrite_without_matches_leaves_file(self, tmp_path: Path) -> None:
		path = tmp_path / "events.jsonl"
		path.write_text('{"n": 1}\n')
		mtime = path.stat().st_mtime_ns
		assert await AppendOnlyLog().rewrite(path, lambda r: True) == 0
		assert path.stat().st_mtime_ns == mtime

	@pytest.mark.asyncio
	async def test_rewrite_missing_file(self, tmp_path: Path) -> None:
		assert await AppendOnlyLog().rewrite(tmp_path / "none.jsonl", lambda r: False) == 0
