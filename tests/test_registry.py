"""Tests for command registry persistence and soft delete semantics."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from cmdsman.supervisor.errors import DuplicateId, NotFound
from cmdsman.supervisor.models import CommandDefinition
from cmdsman.supervisor.registry import CommandRegistry, validate_command_id
from cmdsman.supervisor.store import JsonFileRecordStore, MemoryRecordStore


def _definition(command: str = "echo hi", group: str = "tools") -> CommandDefinition:
    return CommandDefinition(command=command, directory="/tmp", group=group)


class CommandRegistryTests(unittest.IsolatedAsyncioTestCase):
    """Validate register/update/delete behavior over an in-memory store."""

    async def asyncSetUp(self) -> None:
        self.store = MemoryRecordStore()
        self.registry = CommandRegistry(self.store)
        await self.registry.load()

    async def test_register_assigns_fresh_ids(self) -> None:
        first = await self.registry.register(_definition())
        second = await self.registry.register(_definition())
        self.assertNotEqual(first, second)
        self.assertEqual(self.registry.get(first).command, "echo hi")

    async def test_register_persists_whole_mapping(self) -> None:
        command_id = await self.registry.register(_definition())
        persisted = await self.store.get("commands")
        assert persisted is not None
        self.assertEqual(persisted[command_id]["group"], "tools")
        self.assertFalse(persisted[command_id]["deleted"])

    async def test_explicit_existing_id_without_update_is_duplicate(self) -> None:
        await self.registry.register(_definition(), command_id="build")
        with self.assertRaises(DuplicateId):
            await self.registry.register(_definition("make"), command_id="build")
        self.assertEqual(self.registry.get("build").command, "echo hi")

    async def test_explicit_existing_id_with_update_preserves_id(self) -> None:
        await self.registry.register(_definition(), command_id="build")
        returned = await self.registry.register(_definition("make all"), update=True, command_id="build")
        self.assertEqual(returned, "build")
        self.assertEqual(self.registry.get("build").command, "make all")
        self.assertEqual(list(self.registry.list()), ["build"])

    async def test_update_unknown_id_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            await self.registry.update("missing", _definition())

    async def test_soft_delete_hides_from_list_but_keeps_definition(self) -> None:
        command_id = await self.registry.register(_definition())
        await self.registry.soft_delete(command_id)
        self.assertNotIn(command_id, self.registry.list())
        self.assertTrue(self.registry.get(command_id).deleted)
        with self.assertRaises(NotFound):
            self.registry.get_active(command_id)

    async def test_soft_delete_unknown_id_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            await self.registry.soft_delete("missing")

    async def test_invalid_explicit_id_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await self.registry.register(_definition(), command_id="../escape")
        with self.assertRaises(ValueError):
            validate_command_id("")


class CommandRegistryReloadTests(unittest.IsolatedAsyncioTestCase):
    """Definitions survive a reload from JSON files, deleted ones included."""

    async def test_reload_from_disk(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = JsonFileRecordStore(Path(tmpdir))
            await store.initialize()
            registry = CommandRegistry(store)
            await registry.load()
            kept = await registry.register(_definition("sleep 1"))
            dropped = await registry.register(_definition("sleep 2"))
            await registry.soft_delete(dropped)

            reloaded = CommandRegistry(JsonFileRecordStore(Path(tmpdir)))
            active = await reloaded.load()
            self.assertEqual(active, [kept])
            self.assertTrue(reloaded.get(dropped).deleted)

    async def test_first_load_creates_empty_record(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = JsonFileRecordStore(Path(tmpdir))
            registry = CommandRegistry(store)
            self.assertEqual(await registry.load(), [])
            self.assertTrue((Path(tmpdir) / "commands.json").exists())


if __name__ == "__main__":
    unittest.main()
