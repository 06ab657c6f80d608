"""Tests for record store backends, status records and log tails."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from cmdsman.supervisor.errors import IOFailure
from cmdsman.supervisor.log_store import LogStore
from cmdsman.supervisor.models import CommandState, RuntimeStatus
from cmdsman.supervisor.status_store import StatusStore
from cmdsman.supervisor.store import JsonFileRecordStore, MemoryRecordStore, SqliteRecordStore


class RecordStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_json_store_writes_atomically(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = JsonFileRecordStore(Path(tmpdir))
            await store.initialize()
            await store.set("abc-info", {"state": "stopped"})
            await store.set("abc-info", {"state": "running", "pid": 12})
            self.assertEqual(await store.get("abc-info"), {"state": "running", "pid": 12})
            leftovers = [p.name for p in Path(tmpdir).iterdir() if p.name.endswith(".tmp")]
            self.assertEqual(leftovers, [])
            self.assertEqual(await store.list_keys(), ["abc-info"])

    async def test_json_store_corrupt_record_is_io_failure(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "bad.json").write_text("{not json", encoding="utf-8")
            store = JsonFileRecordStore(Path(tmpdir))
            with self.assertRaises(IOFailure):
                await store.get("bad")

    async def test_sqlite_store_upserts(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteRecordStore(Path(tmpdir) / "records.db")
            await store.initialize()
            self.assertIsNone(await store.get("commands"))
            await store.set("commands", {"a": {"command": "ls"}})
            await store.set("commands", {"b": {"command": "pwd"}})
            self.assertEqual(await store.get("commands"), {"b": {"command": "pwd"}})
            self.assertEqual(await store.list_keys(), ["commands"])

    async def test_memory_store_copies_values(self) -> None:
        store = MemoryRecordStore()
        value = {"nested": {"n": 1}}
        await store.set("k", value)
        value["nested"]["n"] = 2
        self.assertEqual(await store.get("k"), {"nested": {"n": 1}})


class StatusStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_read_lazily_creates_stopped_record(self) -> None:
        backing = MemoryRecordStore()
        statuses = StatusStore(backing)
        status = await statuses.read("cmd")
        self.assertEqual(status.state, CommandState.STOPPED)
        self.assertIsNone(status.pid)
        self.assertIsNotNone(await backing.get("cmd-info"))

    async def test_write_is_full_overwrite(self) -> None:
        statuses = StatusStore(MemoryRecordStore())
        await statuses.write("cmd", RuntimeStatus(state=CommandState.RUNNING, pid=42, iteration=3))
        await statuses.write("cmd", RuntimeStatus(state=CommandState.COMPLETE))
        status = await statuses.read("cmd")
        self.assertEqual(status.state, CommandState.COMPLETE)
        self.assertIsNone(status.iteration)


class LogStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_tail_of_missing_log_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(await LogStore(Path(tmpdir)).tail("nothing", 100), "")

    async def test_append_then_tail(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            logs = LogStore(Path(tmpdir))
            await logs.append("cmd", b"a\n")
            await logs.append("cmd", b"b\n")
            self.assertEqual(await logs.tail("cmd", 100), "a\nb\n")

    async def test_tail_bounds_lines_across_blocks(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            logs = LogStore(Path(tmpdir))
            body = "".join(f"line {i:05d} " + "x" * 40 + "\n" for i in range(2000))
            await logs.append("cmd", body.encode("utf-8"))
            tail = await logs.tail("cmd", 3)
            self.assertEqual(tail.splitlines(), [body.splitlines()[i] for i in (-3, -2, -1)])

    async def test_tail_counts_trailing_partial_line(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            logs = LogStore(Path(tmpdir))
            await logs.append("cmd", b"one\ntwo\nthree")
            self.assertEqual(await logs.tail("cmd", 2), "two\nthree")
            self.assertEqual(await logs.tail("cmd", 0), "")

    async def test_truncate_empties_log(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            logs = LogStore(Path(tmpdir))
            await logs.append("cmd", b"old output\n")
            await logs.truncate("cmd")
            self.assertEqual(await logs.tail("cmd"), "")
            await logs.append("cmd", b"fresh\n")
            self.assertEqual(await logs.tail("cmd"), "fresh\n")


if __name__ == "__main__":
    unittest.main()
