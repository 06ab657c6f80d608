"""Command supervisor exception hierarchy."""


class CommandError(Exception):
    """Base error type for supervisor failures surfaced to API callers."""

    status_code = 500
    error_code = "COMMAND_ERROR"

    def __init__(self, message: str, *, command_id: str | None = None):
        super().__init__(message)
        self.command_id = command_id


class NotFound(CommandError):
    """Command id was never registered (or is soft-deleted where that matters)."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, command_id: str):
        super().__init__(f"Command '{command_id}' not found", command_id=command_id)


class DuplicateId(CommandError):
    """Registration collided with an existing command id."""

    status_code = 400
    error_code = "DUPLICATE_ID"

    def __init__(self, command_id: str):
        super().__init__(f"Duplicate command ID '{command_id}'", command_id=command_id)


class AlreadyRunning(CommandError):
    status_code = 409
    error_code = "ALREADY_RUNNING"

    def __init__(self, command_id: str):
        super().__init__(f"Command '{command_id}' already running", command_id=command_id)


class NotRunning(CommandError):
    """Progress was reported for a command without a live run."""

    status_code = 409
    error_code = "NOT_RUNNING"

    def __init__(self, command_id: str):
        super().__init__(f"Command '{command_id}' is not running", command_id=command_id)


class ResetInProgress(CommandError):
    status_code = 409
    error_code = "RESET_IN_PROGRESS"

    def __init__(self, command_id: str):
        super().__init__(
            f"Reset already in progress for command '{command_id}'",
            command_id=command_id,
        )


class SpawnFailed(CommandError):
    """Process could not be started (bad executable, directory or command string)."""

    error_code = "SPAWN_FAILED"


class StopTimeout(CommandError):
    """Process survived SIGTERM and SIGKILL within the configured bounds."""

    error_code = "STOP_TIMEOUT"


class IOFailure(CommandError):
    """Persistence read or write failed."""

    error_code = "IO_FAILURE"
