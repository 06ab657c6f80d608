"""HTTP API endpoints for registering and driving managed commands."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from cmdsman.supervisor.command_manager import CommandSupervisor
from cmdsman.supervisor.models import (
    CommandCreate,
    CommandDefinition,
    CommandUpdate,
    ProgressReport,
)
from cmdsman.supervisor.state import get_supervisor

logger = logging.getLogger("cmdsman.supervisor.api_commands")

router = APIRouter(prefix="/commands")


@router.get("")
async def list_commands(supervisor: CommandSupervisor = Depends(get_supervisor)):
    """List non-deleted commands merged with their runtime status."""
    views = await supervisor.list_commands()
    return {
        "success": True,
        "data": {command_id: view.model_dump(mode="json") for command_id, view in views.items()},
    }


@router.post("", status_code=201)
async def create_command(
    request: CommandCreate,
    supervisor: CommandSupervisor = Depends(get_supervisor),
):
    definition = CommandDefinition(
        command=request.command,
        directory=request.directory,
        group=request.group,
    )
    try:
        command_id = await supervisor.create_command(definition, command_id=request.id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"success": True, "data": {"id": command_id}}


@router.put("")
async def update_command(
    request: CommandUpdate,
    supervisor: CommandSupervisor = Depends(get_supervisor),
):
    logger.info("Updating command %s", request.id)
    definition = CommandDefinition(
        command=request.command,
        directory=request.directory,
        group=request.group,
    )
    view = await supervisor.update_command(request.id, definition)
    return {"success": True, "data": view.model_dump(mode="json")}


@router.get("/logs/{command_id}")
async def get_command_logs(
    command_id: str,
    lines: int | None = Query(default=None, ge=1, le=10000),
    supervisor: CommandSupervisor = Depends(get_supervisor),
):
    """Return the most recent log lines for a command."""
    logs = await supervisor.logs(command_id, lines)
    return {"success": True, "data": logs}


@router.post("/run/{command_id}")
async def run_command(command_id: str, supervisor: CommandSupervisor = Depends(get_supervisor)):
    await supervisor.start(command_id)
    return {"success": True, "message": f"Command '{command_id}' running"}


@router.post("/stop/{command_id}")
async def stop_command(command_id: str, supervisor: CommandSupervisor = Depends(get_supervisor)):
    await supervisor.stop(command_id)
    return {"success": True, "message": f"Command '{command_id}' stopped"}


@router.post("/reset/{command_id}")
async def reset_command(command_id: str, supervisor: CommandSupervisor = Depends(get_supervisor)):
    await supervisor.reset(command_id)
    return {"success": True, "message": f"Command '{command_id}' reset"}


@router.post("/progress/{command_id}")
async def report_progress(
    command_id: str,
    report: ProgressReport,
    supervisor: CommandSupervisor = Depends(get_supervisor),
):
    """Accept iteration/ETA counters from the running process (it knows its CMDSMAN_ID)."""
    status = await supervisor.report_progress(command_id, report)
    return {"success": True, "data": status.model_dump(mode="json")}


@router.get("/{command_id}")
async def get_command(command_id: str, supervisor: CommandSupervisor = Depends(get_supervisor)):
    view = await supervisor.describe(command_id)
    return {"success": True, "data": view.model_dump(mode="json")}


@router.delete("/{command_id}")
async def delete_command(command_id: str, supervisor: CommandSupervisor = Depends(get_supervisor)):
    await supervisor.remove_command(command_id)
    return {"success": True, "message": f"Command '{command_id}' deleted"}
