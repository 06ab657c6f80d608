"""Durable per-command RuntimeStatus records."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .errors import IOFailure
from .models import RuntimeStatus
from .store import RecordStore

logger = logging.getLogger("cmdsman.supervisor.status_store")


def status_key(command_id: str) -> str:
    return f"{command_id}-info"


class StatusStore:
    """Whole-record read/write; callers do their own read-modify-write."""

    def __init__(self, store: RecordStore):
        self._store = store

    async def read(self, command_id: str) -> RuntimeStatus:
        """Return the status record, lazily persisting a default stopped one."""
        payload = await self._store.get(status_key(command_id))
        if payload is None:
            status = RuntimeStatus()
            await self.write(command_id, status)
            return status
        try:
            return RuntimeStatus.model_validate(payload)
        except ValidationError as exc:
            raise IOFailure(f"status record for '{command_id}' is invalid: {exc}") from exc

    async def write(self, command_id: str, status: RuntimeStatus) -> None:
        await self._store.set(status_key(command_id), status.model_dump(mode="json"))
        logger.debug("Wrote status %s for %s (pid=%s)", status.state.value, command_id, status.pid)
