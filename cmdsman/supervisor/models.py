from pydantic import BaseModel
from typing import Optional
from enum import Enum
from datetime import datetime

class CommandState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"

class CommandDefinition(BaseModel):
    command: str
    directory: str
    group: str = ""
    deleted: bool = False

class RuntimeStatus(BaseModel):
    state: CommandState = CommandState.STOPPED
    pid: Optional[int] = None
    iteration: Optional[int] = None
    total_iterations: Optional[int] = None
    started_at: Optional[datetime] = None
    estimated_seconds_remaining: Optional[float] = None
    results: Optional[int] = None

class CommandView(CommandDefinition):
    id: str
    info: RuntimeStatus

class CommandCreate(BaseModel):
    command: str
    directory: str
    group: str = ""
    id: Optional[str] = None

class CommandUpdate(BaseModel):
    id: str
    command: str
    directory: str
    group: str = ""

class ProgressReport(BaseModel):
    iteration: Optional[int] = None
    total_iterations: Optional[int] = None
    estimated_seconds_remaining: Optional[float] = None
    results: Optional[int] = None
