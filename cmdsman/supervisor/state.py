# Runtime state for the supervisor.
# Durable data lives in the record/log stores; this module only tracks
# live process handles and the supervisor instance the HTTP layer uses.

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .command_manager import CommandSupervisor


@dataclass(eq=False)
class ManagedRun:
    """Handles for one spawned process: the process, its readers and exit watcher."""

    command_id: str
    process: asyncio.subprocess.Process
    readers: list[asyncio.Task] = field(default_factory=list)
    watcher: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid


class ProcessTable:
    """
    In-memory map of command id to its live run.
    This is NOT for persistent data, only for runtime handles.
    """

    def __init__(self) -> None:
        self._runs: dict[str, ManagedRun] = {}

    def register(self, command_id: str, run: ManagedRun) -> None:
        self._runs[command_id] = run

    def get(self, command_id: str) -> ManagedRun | None:
        return self._runs.get(command_id)

    def remove(self, command_id: str, run: ManagedRun | None = None) -> None:
        """Drop the entry; when `run` is given only if it is still the current one."""
        current = self._runs.get(command_id)
        if current is None:
            return
        if run is None or current is run:
            del self._runs[command_id]

    def ids(self) -> list[str]:
        return list(self._runs)


_supervisor: CommandSupervisor | None = None


def set_supervisor(supervisor: CommandSupervisor | None) -> None:
    global _supervisor
    _supervisor = supervisor


def get_supervisor() -> CommandSupervisor:
    """FastAPI dependency returning the running supervisor."""
    if _supervisor is None:
        raise RuntimeError("command supervisor is not initialized")
    return _supervisor
