"""Durable command-id to command-definition mapping with soft delete."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid

from pydantic import ValidationError

from .errors import DuplicateId, IOFailure, NotFound
from .models import CommandDefinition
from .store import RecordStore

logger = logging.getLogger("cmdsman.supervisor.registry")

COMMANDS_KEY = "commands"
COMMAND_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,127}$")


def validate_command_id(command_id: str) -> str:
    """Reject ids that cannot name a status record or log file."""
    if not isinstance(command_id, str) or not COMMAND_ID_PATTERN.match(command_id):
        raise ValueError(f"invalid command id: {command_id!r}")
    return command_id


class CommandRegistry:
    """Owns every CommandDefinition; the whole mapping is rewritten on each mutation."""

    def __init__(self, store: RecordStore):
        self._store = store
        self._commands: dict[str, CommandDefinition] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> list[str]:
        """Reload persisted definitions, returning the ids that are not deleted."""
        raw = await self._store.get(COMMANDS_KEY)
        loaded: dict[str, CommandDefinition] = {}
        for command_id, payload in (raw or {}).items():
            try:
                loaded[command_id] = CommandDefinition.model_validate(payload)
            except ValidationError as exc:
                raise IOFailure(f"persisted command '{command_id}' is invalid: {exc}") from exc
        if raw is None:
            await self._store.set(COMMANDS_KEY, {})
        self._commands = loaded
        logger.info("Loaded %d command definitions", len(loaded))
        return [command_id for command_id, cmd in loaded.items() if not cmd.deleted]

    async def _persist(self, commands: dict[str, CommandDefinition]) -> None:
        await self._store.set(
            COMMANDS_KEY,
            {command_id: cmd.model_dump(mode="json") for command_id, cmd in commands.items()},
        )
        self._commands = commands

    async def register(
        self,
        definition: CommandDefinition,
        *,
        update: bool = False,
        command_id: str | None = None,
    ) -> str:
        if update:
            if command_id is None:
                raise ValueError("update requires a command id")
            await self.update(command_id, definition)
            return command_id

        async with self._lock:
            if command_id is None:
                command_id = str(uuid.uuid4())
            validate_command_id(command_id)
            if command_id in self._commands:
                raise DuplicateId(command_id)
            commands = dict(self._commands)
            commands[command_id] = definition.model_copy(update={"deleted": False})
            await self._persist(commands)
        logger.info("Registered command %s in group '%s'", command_id, definition.group)
        return command_id

    async def update(self, command_id: str, definition: CommandDefinition) -> CommandDefinition:
        async with self._lock:
            existing = self._commands.get(command_id)
            if existing is None:
                raise NotFound(command_id)
            updated = definition.model_copy(update={"deleted": existing.deleted})
            commands = dict(self._commands)
            commands[command_id] = updated
            await self._persist(commands)
        logger.info("Updated command %s", command_id)
        return updated

    async def soft_delete(self, command_id: str) -> None:
        async with self._lock:
            existing = self._commands.get(command_id)
            if existing is None:
                raise NotFound(command_id)
            commands = dict(self._commands)
            commands[command_id] = existing.model_copy(update={"deleted": True})
            await self._persist(commands)
        logger.info("Soft-deleted command %s", command_id)

    def get(self, command_id: str) -> CommandDefinition:
        """Return the definition, soft-deleted ones included."""
        definition = self._commands.get(command_id)
        if definition is None:
            raise NotFound(command_id)
        return definition

    def get_active(self, command_id: str) -> CommandDefinition:
        definition = self.get(command_id)
        if definition.deleted:
            raise NotFound(command_id)
        return definition

    def list(self) -> dict[str, CommandDefinition]:
        return {
            command_id: definition
            for command_id, definition in self._commands.items()
            if not definition.deleted
        }
