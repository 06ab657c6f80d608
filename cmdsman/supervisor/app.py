from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import asyncio
import logging
import os
from .api_commands import router as command_router
from .api_stream import router as stream_router
from .command_manager import create_supervisor
from .errors import CommandError
from .settings import load_settings
from .state import get_supervisor, set_supervisor

settings = load_settings()

# Configure logging
_handlers: list[logging.Handler] = [logging.StreamHandler()]
if settings.log_file:
    os.makedirs(os.path.dirname(os.path.abspath(settings.log_file)), exist_ok=True)
    _handlers.append(logging.FileHandler(settings.log_file))
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=_handlers,
)
logger = logging.getLogger("cmdsman.supervisor")

app = FastAPI(title="cmdsman Supervisor")
app.include_router(command_router)
app.include_router(stream_router)


@app.exception_handler(CommandError)
async def command_error_handler(request: Request, exc: CommandError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.error_code, "message": str(exc)},
    )


@app.on_event("startup")
async def startup_event():
    logger.info("Loading commands from %s (%s store)...", settings.data_dir, settings.store_backend)
    supervisor = await create_supervisor(settings)
    set_supervisor(supervisor)
    logger.info("Supervisor ready with %d commands.", len(supervisor.registry.list()))


@app.on_event("shutdown")
async def shutdown_event():
    try:
        supervisor = get_supervisor()
    except RuntimeError:
        return
    logger.info("Stopping running commands...")
    await supervisor.shutdown()
    set_supervisor(None)
    logger.info("Commands stopped.")


@app.get("/health")
async def health_check():
    return {"status": "ok", "version": "0.1.0"}


@app.post("/shutdown")
async def shutdown():
    logger.info("Shutdown requested via API.")
    await get_supervisor().shutdown()
    # Schedule process exit to allow response to be sent
    loop = asyncio.get_running_loop()
    loop.call_later(1, lambda: os._exit(0))
    return {"status": "shutting_down"}
