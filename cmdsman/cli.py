import json
import os
import signal
import socket
import subprocess
import sys
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn

from cmdsman.supervisor.command_manager import pid_exists
from cmdsman.supervisor.settings import CMDSMAN_DIR, load_settings

app = typer.Typer(help="Register shell commands and start, stop, reset and tail them.")

PID_FILE = CMDSMAN_DIR / "supervisor.pid"
LOG_DIR = CMDSMAN_DIR / "logs"


def _supervisor_url() -> str:
    settings = load_settings()
    return f"http://{settings.host}:{settings.port}"


def ensure_dirs():
    CMDSMAN_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def is_port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex((host, port)) == 0


def _request(method: str, path: str, **kwargs) -> dict:
    """Call the supervisor API and exit non-zero on any failure."""
    try:
        response = httpx.request(method, f"{_supervisor_url()}{path}", timeout=30.0, **kwargs)
    except httpx.ConnectError:
        typer.echo("Supervisor is not running.")
        raise typer.Exit(code=1)
    try:
        payload = response.json()
    except ValueError:
        payload = {"success": False, "message": response.text}
    if response.status_code >= 400 or not payload.get("success", False):
        message = payload.get("message") or payload.get("detail") or response.text
        typer.echo(f"Error ({response.status_code}): {message}")
        raise typer.Exit(code=1)
    return payload


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (default from settings)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default from settings)"),
):
    """Run the supervisor in the foreground."""
    settings = load_settings()
    uvicorn.run(
        "cmdsman.supervisor.app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def start():
    """Start the supervisor in the background."""
    ensure_dirs()
    settings = load_settings()

    if PID_FILE.exists():
        try:
            pid = int(PID_FILE.read_text())
            if pid_exists(pid):
                typer.echo(f"Supervisor already running (PID: {pid})")
                return
            typer.echo("Stale PID file found. Removing...")
            PID_FILE.unlink()
        except ValueError:
            PID_FILE.unlink()

    if is_port_in_use(settings.host, settings.port):
        typer.echo(f"Error: Port {settings.port} is already in use by another process.")
        raise typer.Exit(code=1)

    typer.echo("Starting supervisor...")
    cmd = [
        sys.executable, "-m", "uvicorn",
        "cmdsman.supervisor.app:app",
        "--host", settings.host,
        "--port", str(settings.port),
    ]
    log_file = open(LOG_DIR / "supervisor.log", "a")

    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    process = subprocess.Popen(cmd, stdout=log_file, stderr=log_file, **kwargs)
    PID_FILE.write_text(str(process.pid))
    typer.echo(f"Supervisor started (PID: {process.pid})")


@app.command()
def stop():
    """Stop the background supervisor and every command it runs."""
    if not PID_FILE.exists():
        typer.echo("Supervisor not running (no PID file)")
        return

    try:
        pid = int(PID_FILE.read_text())

        try:
            typer.echo("Attempting graceful shutdown...")
            response = httpx.post(f"{_supervisor_url()}/shutdown", timeout=30.0)
            if response.status_code == 200:
                typer.echo(f"Supervisor shutting down gracefully (PID: {pid})...")
                PID_FILE.unlink()
                return
        except (httpx.ConnectError, httpx.TimeoutException):
            typer.echo("Graceful shutdown failed (API unreachable).")

        typer.echo(f"Forcing stop (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)
        typer.echo("Supervisor stopped.")
        PID_FILE.unlink()
    except ProcessLookupError:
        typer.echo("Supervisor process not found. Cleaning up PID file.")
        PID_FILE.unlink()
    except (OSError, ValueError) as e:
        typer.echo(f"Failed to stop supervisor: {e}")
        raise typer.Exit(code=1)


@app.command()
def status():
    """Check supervisor health and summarize commands."""
    try:
        response = httpx.get(f"{_supervisor_url()}/health")
    except httpx.ConnectError:
        typer.echo("Supervisor: NOT RESPONDING (Connection refused)")
        return
    if response.status_code != 200:
        typer.echo("Supervisor: UNHEALTHY (API not responding correctly)")
        return
    typer.echo("Supervisor: RUNNING")
    commands = _request("GET", "/commands")["data"]
    running = [c for c in commands.values() if c["info"]["state"] == "running"]
    typer.echo(f"Commands: {len(commands)} ({len(running)} running)")


@app.command("list")
def list_commands(json_output: bool = typer.Option(False, "--json", help="Print raw JSON")):
    """List registered commands grouped by their display group."""
    commands = _request("GET", "/commands")["data"]
    if json_output:
        typer.echo(json.dumps(commands, indent=2))
        return
    groups: dict[str, list[dict]] = {}
    for view in commands.values():
        groups.setdefault(view.get("group") or "-", []).append(view)
    for group in sorted(groups):
        typer.echo(f"[{group}]")
        for view in groups[group]:
            info = view["info"]
            pid = f" pid={info['pid']}" if info.get("pid") else ""
            progress = ""
            if info.get("iteration") is not None and info.get("total_iterations"):
                progress = f" {info['iteration']}/{info['total_iterations']}"
            typer.echo(f" - {view['id']} [{info['state']}{pid}{progress}] {view['command']} ({view['directory']})")


@app.command()
def add(
    command: str = typer.Argument(..., help="Executable and arguments, split on whitespace"),
    directory: Optional[Path] = typer.Option(None, "--dir", help="Working directory (default: current directory)"),
    group: str = typer.Option("", "--group"),
    command_id: Optional[str] = typer.Option(None, "--id", help="Explicit command id"),
):
    """Register a new command."""
    directory = directory or Path.cwd()
    body = {"command": command, "directory": str(directory.resolve()), "group": group}
    if command_id:
        body["id"] = command_id
    payload = _request("POST", "/commands", json=body)
    typer.echo(f"Command registered (ID: {payload['data']['id']})")


@app.command()
def edit(
    command_id: str,
    command: str = typer.Argument(...),
    directory: Optional[Path] = typer.Option(None, "--dir"),
    group: str = typer.Option("", "--group"),
):
    """Replace an existing command definition, keeping its id."""
    directory = directory or Path.cwd()
    body = {"id": command_id, "command": command, "directory": str(directory.resolve()), "group": group}
    _request("PUT", "/commands", json=body)
    typer.echo(f"Command '{command_id}' updated")


@app.command()
def remove(command_id: str):
    """Soft-delete a command; its status and log stay readable."""
    typer.echo(_request("DELETE", f"/commands/{command_id}")["message"])


@app.command()
def run(command_id: str):
    """Start a command."""
    typer.echo(_request("POST", f"/commands/run/{command_id}")["message"])


@app.command()
def kill(command_id: str):
    """Stop a running command."""
    typer.echo(_request("POST", f"/commands/stop/{command_id}")["message"])


@app.command()
def reset(command_id: str):
    """Stop, clear the log and start a command again."""
    typer.echo(_request("POST", f"/commands/reset/{command_id}")["message"])


@app.command()
def logs(command_id: str, lines: int = typer.Option(100, "--lines", "-n", min=1)):
    """Print the tail of a command's log."""
    typer.echo(_request("GET", f"/commands/logs/{command_id}", params={"lines": lines})["data"], nl=False)


@app.command()
def follow(command_id: str):
    """Stream a command's output live until interrupted or unsubscribed."""
    url = f"{_supervisor_url()}/commands/stream/{command_id}"
    event = ""
    try:
        with httpx.stream("GET", url, timeout=None) as response:
            if response.status_code != 200:
                response.read()
                typer.echo(f"Error ({response.status_code}): {response.text}")
                raise typer.Exit(code=1)
            for line in response.iter_lines():
                if line.startswith("event: "):
                    event = line[len("event: "):]
                elif line.startswith("data: "):
                    data = json.loads(line[len("data: "):])
                    if event == "log-chunk":
                        typer.echo(data, nl=False)
                    elif event == "log-reset":
                        typer.echo("--- log reset ---")
                    elif event == "status":
                        typer.echo(f"--- {data['state']} ---")
                    elif event == "left-subscription":
                        typer.echo(f"--- unsubscribed: {data} ---")
                        return
    except httpx.ConnectError:
        typer.echo("Supervisor is not running.")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        return


if __name__ == "__main__":
    app()
