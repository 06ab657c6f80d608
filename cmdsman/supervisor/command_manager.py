"""Command process supervisor: spawn, stop, reset and exit reconciliation."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections import defaultdict
from datetime import datetime, timezone

from .broadcaster import EVENT_LOG_CHUNK, EVENT_LOG_RESET, EVENT_STATUS, EventBroadcaster
from .errors import (
    AlreadyRunning,
    CommandError,
    IOFailure,
    NotRunning,
    ResetInProgress,
    SpawnFailed,
    StopTimeout,
)
from .log_store import LogStore
from .models import CommandDefinition, CommandState, CommandView, ProgressReport, RuntimeStatus
from .registry import CommandRegistry
from .settings import SupervisorSettings
from .state import ManagedRun, ProcessTable
from .status_store import StatusStore
from .store import build_record_store

logger = logging.getLogger("cmdsman.supervisor.command_manager")

OUTPUT_CHUNK_SIZE = 4096
READER_DRAIN_SECONDS = 5.0
COMMAND_ID_ENV = "CMDSMAN_ID"
KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


def split_command(command: str) -> list[str]:
    """Split a command string on whitespace; the first token is the executable.

    There is no shell quoting or escaping: an argument cannot contain spaces.
    """
    argv = command.split()
    if not argv:
        raise SpawnFailed("Command string is empty")
    return argv


def pid_exists(pid: int) -> bool:
    """Check whether pid exists in the current process table."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class CommandSupervisor:
    """Owns the lifecycle of every managed command process.

    Status writes that depend on the current record happen under a per-id
    lock, so an exit notification can never overwrite an explicit stop.
    No lock is held while waiting on a process, and locks are never shared
    between ids.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        status_store: StatusStore,
        log_store: LogStore,
        broadcaster: EventBroadcaster,
        *,
        settings: SupervisorSettings | None = None,
        processes: ProcessTable | None = None,
    ):
        self.registry = registry
        self.status_store = status_store
        self.log_store = log_store
        self.broadcaster = broadcaster
        self.settings = settings or SupervisorSettings()
        self.processes = processes or ProcessTable()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._resetting: set[str] = set()

    async def initialize(self) -> None:
        """Reload definitions and mark every active command stopped."""
        active_ids = await self.registry.load()
        for command_id in active_ids:
            # Processes never survive a service restart; recorded pids are stale.
            await self.status_store.write(command_id, RuntimeStatus())
        logger.info("Reset %d command statuses to stopped", len(active_ids))

    # Registry-facing operations

    async def create_command(self, definition: CommandDefinition, command_id: str | None = None) -> str:
        command_id = await self.registry.register(definition, command_id=command_id)
        await self.status_store.write(command_id, RuntimeStatus())
        await self.log_store.truncate(command_id)
        self.broadcaster.publish(command_id, EVENT_LOG_RESET)
        return command_id

    async def update_command(self, command_id: str, definition: CommandDefinition) -> CommandView:
        await self.registry.update(command_id, definition)
        return await self.describe(command_id)

    async def remove_command(self, command_id: str) -> None:
        await self.registry.soft_delete(command_id)

    async def describe(self, command_id: str) -> CommandView:
        definition = self.registry.get(command_id)
        status = await self.status_store.read(command_id)
        return CommandView(id=command_id, info=status, **definition.model_dump())

    async def list_commands(self) -> dict[str, CommandView]:
        views: dict[str, CommandView] = {}
        for command_id, definition in self.registry.list().items():
            status = await self.status_store.read(command_id)
            views[command_id] = CommandView(id=command_id, info=status, **definition.model_dump())
        return views

    # Lifecycle

    async def start(self, command_id: str) -> RuntimeStatus:
        definition = self.registry.get_active(command_id)
        async with self._locks[command_id]:
            status = await self.status_store.read(command_id)
            if status.state is CommandState.RUNNING:
                raise AlreadyRunning(command_id)
            argv = split_command(definition.command)
            process = await self._spawn(command_id, argv, definition.directory)
            running = status.model_copy(
                update={
                    "state": CommandState.RUNNING,
                    "pid": process.pid,
                    "started_at": datetime.now(timezone.utc),
                    "iteration": 0,
                }
            )
            try:
                await self.status_store.write(command_id, running)
            except IOFailure:
                logger.error("Could not record start of %s; killing PID %s", command_id, process.pid)
                await self._discard(process)
                raise

            run = ManagedRun(command_id=command_id, process=process)
            run.readers = [
                asyncio.create_task(self._pump_output(command_id, process.stdout)),
                asyncio.create_task(self._pump_output(command_id, process.stderr)),
            ]
            run.watcher = asyncio.create_task(self._watch_exit(run))
            self.processes.register(command_id, run)

        logger.info("Started command %s (PID: %s) in %s", command_id, process.pid, definition.directory)
        self._publish_status(command_id, running)
        return running

    async def stop(self, command_id: str) -> RuntimeStatus:
        self.registry.get(command_id)
        async with self._locks[command_id]:
            status = await self.status_store.read(command_id)
            if status.pid is None:
                return status
            pid = status.pid
            stopped = status.model_copy(update={"state": CommandState.STOPPED, "pid": None})
            try:
                await self.status_store.write(command_id, stopped)
            except IOFailure as exc:
                logger.error("Could not record stop of %s before signalling: %s", command_id, exc)
        self._publish_status(command_id, stopped)

        try:
            await self._terminate(command_id, pid)
        finally:
            await self._settle_stopped(command_id, pid)
        logger.info("Stopped command %s (PID: %s)", command_id, pid)
        return await self.status_store.read(command_id)

    async def reset(self, command_id: str) -> RuntimeStatus:
        if command_id in self._resetting:
            raise ResetInProgress(command_id)
        self.registry.get_active(command_id)
        self._resetting.add(command_id)
        try:
            await self.stop(command_id)
            await self.log_store.truncate(command_id)
            self.broadcaster.publish(command_id, EVENT_LOG_RESET)
            # Give the OS time to release ports and file handles.
            await asyncio.sleep(self.settings.reset_settle_delay)
            return await self.start(command_id)
        except Exception as exc:
            logger.error("Reset of %s failed: %s", command_id, exc)
            try:
                await self.stop(command_id)
            except CommandError as cleanup_exc:
                logger.error("Cleanup after failed reset of %s failed: %s", command_id, cleanup_exc)
            raise
        finally:
            self._resetting.discard(command_id)

    async def logs(self, command_id: str, max_lines: int | None = None) -> str:
        self.registry.get(command_id)
        if max_lines is None:
            max_lines = self.settings.default_tail_lines
        return await self.log_store.tail(command_id, max_lines)

    async def report_progress(self, command_id: str, report: ProgressReport) -> RuntimeStatus:
        """Merge counters reported by the running process into its status."""
        self.registry.get(command_id)
        async with self._locks[command_id]:
            status = await self.status_store.read(command_id)
            if status.state is not CommandState.RUNNING:
                raise NotRunning(command_id)
            updated = status.model_copy(update=report.model_dump(exclude_unset=True))
            await self.status_store.write(command_id, updated)
        self._publish_status(command_id, updated)
        return updated

    async def shutdown(self) -> None:
        """Stop every process spawned by this service."""
        command_ids = self.processes.ids()
        logger.info("Shutting down %d running commands...", len(command_ids))
        results = await asyncio.gather(
            *(self.stop(command_id) for command_id in command_ids),
            return_exceptions=True,
        )
        for command_id, result in zip(command_ids, results):
            if isinstance(result, Exception):
                logger.error("Failed to stop %s during shutdown: %s", command_id, result)

    # Internals

    async def _spawn(self, command_id: str, argv: list[str], directory: str) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        env[COMMAND_ID_ENV] = command_id
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                cwd=directory,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to spawn command %s: %s", command_id, exc)
            raise SpawnFailed(
                f"Failed to start command, make sure the directory / executable exists: {exc}",
                command_id=command_id,
            ) from exc

    async def _discard(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await self._wait_for_returncode(process)

    async def _wait_for_returncode(self, process: asyncio.subprocess.Process) -> int:
        """Wait for the child itself to exit.

        `Process.wait()` also waits for the stdout/stderr pipes to close, which
        never happens while a background grandchild still holds them.
        """
        while process.returncode is None:
            await asyncio.sleep(self.settings.stop_poll_interval)
        return process.returncode

    async def _pump_output(self, command_id: str, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stream.read(OUTPUT_CHUNK_SIZE)
                if not chunk:
                    break
                try:
                    await self.log_store.append(command_id, chunk)
                except IOFailure as exc:
                    logger.error("Dropped %d log bytes for %s: %s", len(chunk), command_id, exc)
                text = decoder.decode(chunk)
                if text:
                    self.broadcaster.publish(command_id, EVENT_LOG_CHUNK, text)
            text = decoder.decode(b"", final=True)
            if text:
                self.broadcaster.publish(command_id, EVENT_LOG_CHUNK, text)
        except Exception:
            logger.exception("Output reader for %s failed", command_id)

    async def _watch_exit(self, run: ManagedRun) -> None:
        command_id = run.command_id
        try:
            returncode = await self._wait_for_returncode(run.process)
            if run.readers:
                await asyncio.wait(run.readers, timeout=READER_DRAIN_SECONDS)
            logger.info("Command %s (PID: %s) exited with code %s", command_id, run.pid, returncode)

            async with self._locks[command_id]:
                self.processes.remove(command_id, run)
                status = await self.status_store.read(command_id)
                if status.state is not CommandState.RUNNING or status.pid != run.pid:
                    # An explicit stop or reset already owns the record.
                    logger.info("Leaving status of %s as %s", command_id, status.state.value)
                    return
                final_state = CommandState.COMPLETE if returncode == 0 else CommandState.INCOMPLETE
                finished = status.model_copy(update={"state": final_state, "pid": None})
                await self.status_store.write(command_id, finished)
            self._publish_status(command_id, finished)
        except Exception:
            logger.exception("Exit watcher for %s failed", command_id)

    async def _terminate(self, command_id: str, pid: int) -> None:
        run = self.processes.get(command_id)
        if run is not None and run.pid != pid:
            run = None
        if not self._is_alive(pid, run):
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.error("Error killing process %s: %s", pid, exc)
            return

        timeout = self.settings.stop_timeout if self.settings.stop_timeout > 0 else None
        if await self._wait_for_exit(pid, run, timeout):
            return

        logger.warning("Process %s ignored SIGTERM for %.1fs; sending SIGKILL", pid, timeout)
        try:
            os.kill(pid, KILL_SIGNAL)
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.error("Error force-killing process %s: %s", pid, exc)
        if not await self._wait_for_exit(pid, run, self.settings.kill_grace):
            raise StopTimeout(f"Process {pid} is still alive after SIGKILL", command_id=command_id)

    async def _wait_for_exit(self, pid: int, run: ManagedRun | None, timeout: float | None) -> bool:
        """Poll until the process is gone; False if `timeout` seconds pass first."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._is_alive(pid, run):
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(self.settings.stop_poll_interval)
        return True

    @staticmethod
    def _is_alive(pid: int, run: ManagedRun | None) -> bool:
        if run is not None:
            return run.process.returncode is None
        return pid_exists(pid)

    async def _settle_stopped(self, command_id: str, pid: int) -> None:
        async with self._locks[command_id]:
            current = await self.status_store.read(command_id)
            if current.state is CommandState.RUNNING and current.pid != pid:
                # A newer run started after the stop was recorded.
                return
            if current.state is CommandState.STOPPED and current.pid is None:
                return
            await self.status_store.write(
                command_id,
                current.model_copy(update={"state": CommandState.STOPPED, "pid": None}),
            )

    def _publish_status(self, command_id: str, status: RuntimeStatus) -> None:
        self.broadcaster.publish(command_id, EVENT_STATUS, status.model_dump(mode="json"))


async def create_supervisor(settings: SupervisorSettings) -> CommandSupervisor:
    """Build the stores from settings and return an initialized supervisor."""
    record_store = build_record_store(settings)
    await record_store.initialize()
    supervisor = CommandSupervisor(
        CommandRegistry(record_store),
        StatusStore(record_store),
        LogStore(settings.data_dir),
        EventBroadcaster(settings.max_emits),
        settings=settings,
    )
    await supervisor.initialize()
    return supervisor
