"""Server-sent event streaming of log chunks and lifecycle events per command."""

import asyncio
import json

from fastapi import APIRouter, Depends, Request
from starlette.responses import StreamingResponse

from cmdsman.supervisor.broadcaster import EVENT_LEFT
from cmdsman.supervisor.command_manager import CommandSupervisor
from cmdsman.supervisor.state import get_supervisor

router = APIRouter()

DISCONNECT_CHECK_SECONDS = 1.0


def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.get("/commands/stream/{command_id}")
async def stream_command_events(
    request: Request,
    command_id: str,
    supervisor: CommandSupervisor = Depends(get_supervisor),
):
    """Join the command's topic and stream its events in SSE format until disconnect."""
    supervisor.registry.get(command_id)
    broadcaster = supervisor.broadcaster
    subscription = broadcaster.join(command_id)

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(
                        subscription.queue.get(), timeout=DISCONNECT_CHECK_SECONDS
                    )
                except asyncio.TimeoutError:
                    continue
                yield format_sse(message.event, message.data)
                if message.event == EVENT_LEFT:
                    break
        finally:
            broadcaster.leave(subscription)

    headers = {
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    }
    return StreamingResponse(event_generator(), headers=headers)
