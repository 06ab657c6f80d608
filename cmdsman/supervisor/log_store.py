"""Append-only per-command output logs with bounded tail reads."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import IOFailure

logger = logging.getLogger("cmdsman.supervisor.log_store")

DEFAULT_TAIL_LINES = 100
TAIL_BLOCK_SIZE = 8192


class LogStore:
    """One `<id>-log.txt` file per command under the data directory."""

    def __init__(self, root: Path):
        self.root = root

    def _path(self, command_id: str) -> Path:
        return self.root / f"{command_id}-log.txt"

    async def append(self, command_id: str, data: bytes) -> None:
        if not data:
            return
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(self._path(command_id), "ab") as handle:
                handle.write(data)
                handle.flush()
        except OSError as exc:
            raise IOFailure(f"cannot append log for '{command_id}': {exc}") from exc

    async def truncate(self, command_id: str) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(self._path(command_id), "wb"):
                pass
        except OSError as exc:
            raise IOFailure(f"cannot truncate log for '{command_id}': {exc}") from exc
        logger.info("Cleared log for %s", command_id)

    async def tail(self, command_id: str, max_lines: int = DEFAULT_TAIL_LINES) -> str:
        """Return the most recent `max_lines` lines, or "" when there is no log."""
        path = self._path(command_id)
        if max_lines <= 0 or not path.exists():
            return ""
        try:
            data = _read_tail_bytes(path, max_lines)
        except OSError as exc:
            raise IOFailure(f"cannot read log for '{command_id}': {exc}") from exc

        segments = data.split(b"\n")
        trailing = segments.pop()
        lines = [segment + b"\n" for segment in segments]
        if trailing:
            lines.append(trailing)
        return b"".join(lines[-max_lines:]).decode("utf-8", errors="replace")


def _read_tail_bytes(path: Path, max_lines: int) -> bytes:
    # Stop once we hold more newlines than requested lines so the first,
    # possibly partial, line can be dropped.
    with open(path, "rb") as handle:
        handle.seek(0, os.SEEK_END)
        position = handle.tell()
        data = b""
        while position > 0 and data.count(b"\n") <= max_lines:
            step = min(TAIL_BLOCK_SIZE, position)
            position -= step
            handle.seek(position)
            data = handle.read(step) + data
    return data
