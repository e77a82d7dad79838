"""llm-selectassistant client - Communicates with the daemon via Unix socket.

Handles:
- Daemon startup if not running
- Hotkey activation (`llm-selectassistant activate`)
- Chat requests with NDJSON streaming and live Markdown rendering
- Session, history and settings management
- A `watch` subscriber that prints presentation events
"""

import json
import socket
import subprocess
import sys
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

import click
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.table import Table

from .config import (
    DAEMON_STARTUP_TIMEOUT,
    PROVIDERS,
    RECV_BUFFER_SIZE,
    REQUEST_TIMEOUT,
    SOCKET_CONNECT_TIMEOUT,
)
from .errors import ErrorCode
from .xdg import get_socket_path

TERMINAL_EVENTS = ("done", "error")


def is_daemon_running() -> bool:
    """Check if daemon is running by testing socket connection."""
    socket_path = get_socket_path()
    if not socket_path.exists():
        return False

    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(SOCKET_CONNECT_TIMEOUT)
        sock.connect(str(socket_path))
        sock.close()
        return True
    except (socket.error, OSError):
        return False


def start_daemon(model: Optional[str] = None) -> bool:
    """Start the daemon in background and wait for its socket.

    Returns:
        True if daemon started successfully, False otherwise.
    """
    cmd = [sys.executable, "-m", "llm_selectassistant", "daemon"]
    if model:
        cmd.extend(["-m", model])

    try:
        subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True
        )
    except OSError:
        return False

    start_time = time.time()
    while time.time() - start_time < DAEMON_STARTUP_TIMEOUT:
        if is_daemon_running():
            return True
        time.sleep(0.1)
    return False


def ensure_daemon(model: Optional[str] = None) -> bool:
    """Ensure daemon is running, starting it if needed."""
    if is_daemon_running():
        return True
    return start_daemon(model)


def iter_events(sock: socket.socket) -> Iterator[dict]:
    """Yield NDJSON events from a connected socket until it closes."""
    buffer = ""
    while True:
        chunk = sock.recv(RECV_BUFFER_SIZE)
        if not chunk:
            break
        buffer += chunk.decode('utf-8')

        while '\n' in buffer:
            line, buffer = buffer.split('\n', 1)
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def send_json_request(request: dict, timeout: float = REQUEST_TIMEOUT) -> Iterator[dict]:
    """Send JSON request to daemon and yield NDJSON events.

    Stops after the terminal done/error event. Transport failures are
    reported as error events.
    """
    socket_path = get_socket_path()

    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        sock.connect(str(socket_path))
        try:
            sock.sendall((json.dumps(request) + '\n').encode('utf-8'))
            sock.shutdown(socket.SHUT_WR)

            for event in iter_events(sock):
                yield event
                if event.get('type') in TERMINAL_EVENTS:
                    return
        finally:
            sock.close()

        yield {"type": "error", "code": ErrorCode.SOCKET_ERROR, "message": "Connection closed by daemon"}

    except (FileNotFoundError, ConnectionRefusedError):
        yield {"type": "error", "code": ErrorCode.DAEMON_UNAVAILABLE, "message": "Daemon is not running"}
    except socket.timeout:
        yield {"type": "error", "code": ErrorCode.TIMEOUT, "message": "Request timed out"}
    except (socket.error, OSError) as e:
        yield {"type": "error", "code": ErrorCode.SOCKET_ERROR, "message": str(e)}


class DaemonCallError(Exception):
    """Raised when a request/response command fails."""


def call(cmd: str, **params: Any) -> Any:
    """Run a request/response command and return its result data.

    Raises:
        DaemonCallError: If the daemon answers with an error event
    """
    result = None
    for event in send_json_request({"cmd": cmd, **params}):
        event_type = event.get("type")
        if event_type == "result":
            result = event.get("data")
        elif event_type == "error":
            raise DaemonCallError(event.get("message", "Unknown error"))
    return result


def stream_chat(
    messages: List[Dict[str, str]],
    context: Optional[str] = None,
    session_id: Optional[int] = None,
) -> Iterator[Tuple[str, Any]]:
    """Submit a chat and yield (event_type, data) tuples."""
    request = {
        "cmd": "ask",
        "messages": messages,
        "context": context or "",
        "session_id": session_id,
    }

    for event in send_json_request(request):
        event_type = event.get("type", "")
        if event_type == "session_created":
            yield ("session_created", event.get("session_id"))
        elif event_type == "chunk":
            yield ("chunk", event.get("content", ""))
        elif event_type == "error":
            yield ("error", event.get("message", "Unknown error"))
            return
        elif event_type == "done":
            yield ("done", None)
            return


def mask_key(key: str) -> str:
    if not key:
        return "(not set)"
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:3]}...{key[-4:]}"


@click.group()
@click.version_option(package_name="llm-selectassistant")
def main():
    """Hotkey-summoned LLM chat assistant with selection context."""


@main.command()
@click.option('-m', '--model', help='Model to use')
@click.option('--debug', is_flag=True, help='Enable debug logging')
def daemon(model: Optional[str], debug: bool):
    """Run the assistant daemon in the foreground."""
    from .daemon import run_daemon
    run_daemon(model_id=model, debug=debug)


def _require_daemon(console: Console) -> None:
    if not ensure_daemon():
        console.print("[red]ERROR: Could not start llm-selectassistant daemon[/]")
        sys.exit(1)


def _run(console: Console, cmd: str, **params: Any) -> Any:
    _require_daemon(console)
    try:
        return call(cmd, **params)
    except DaemonCallError as e:
        console.print(f"[red]Error: {e}[/]")
        sys.exit(1)


@main.command()
def activate():
    """Toggle the assistant (bind this to the global hotkey, e.g. Ctrl+I)."""
    console = Console(stderr=True)
    state = _run(console, "activate")
    console.print(f"[dim]{state}[/]")


@main.command()
def show():
    """Show the assistant without capturing the selection."""
    _run(Console(stderr=True), "show")


@main.command()
def hide():
    """Hide the assistant."""
    _run(Console(stderr=True), "hide")


@main.command()
@click.argument('query_args', nargs=-1, required=True, metavar='QUERY')
@click.option('-s', '--session', 'session_id', type=int, help='Continue an existing session')
@click.option('-c', '--context', help='Context text to include with this message')
@click.option('--with-selection', is_flag=True, help='Capture current selection as context')
@click.option('--no-stream', is_flag=True, help='Render only the final answer')
def ask(
    query_args: Tuple[str, ...],
    session_id: Optional[int],
    context: Optional[str],
    with_selection: bool,
    no_stream: bool,
):
    """Ask a question, optionally continuing a session."""
    console = Console()
    _require_daemon(console)

    if with_selection and not context:
        try:
            context = call("capture") or None
        except DaemonCallError as e:
            console.print(f"[yellow]Selection capture failed: {e}[/]")

    messages = list(_run(console, "get_history", session_id=session_id) or []) if session_id else []
    messages.append({"role": "user", "content": ' '.join(query_args)})

    accumulated_text = ""
    error_message = None

    events = stream_chat(messages, context=context, session_id=session_id)
    if no_stream:
        for event_type, data in events:
            if event_type == "chunk":
                accumulated_text += data
            elif event_type == "session_created":
                console.print(f"[dim]Session {data}[/]")
            elif event_type == "error":
                error_message = data
        if accumulated_text:
            console.print(Markdown(accumulated_text))
    else:
        with Live(refresh_per_second=10, console=console) as live:
            for event_type, data in events:
                if event_type == "chunk":
                    accumulated_text += data
                    live.update(Markdown(accumulated_text))
                elif event_type == "session_created":
                    live.console.print(f"[dim]Session {data}[/]")
                elif event_type == "error":
                    error_message = data

    if error_message:
        console.print(f"[red]Error: {error_message}[/]")
        sys.exit(1)


@main.command()
def sessions():
    """List sessions, most recent first."""
    console = Console()
    rows = _run(console, "list_sessions") or []
    if not rows:
        console.print("[dim]No sessions[/]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Created")
    for row in rows:
        table.add_row(str(row["id"]), row["title"], row["created_at"])
    console.print(table)


@main.command()
@click.argument('session_id', type=int)
def history(session_id: int):
    """Show the messages of a session."""
    console = Console()
    messages = _run(console, "get_history", session_id=session_id) or []
    if not messages:
        console.print("[dim]No messages[/]")
        return
    for message in messages:
        style = "bold cyan" if message["role"] == "user" else "bold green"
        console.print(f"[{style}]{message['role']}[/]")
        console.print(Markdown(message["content"]))
        console.print()


@main.command()
@click.argument('title', required=False)
def new(title: Optional[str]):
    """Create an empty session and print its id."""
    console = Console()
    session_id = _run(console, "create_session", title=title)
    console.print(session_id)


@main.command()
@click.argument('session_id', type=int)
@click.option('-y', '--yes', is_flag=True, help='Do not ask for confirmation')
def delete(session_id: int, yes: bool):
    """Delete a session and its messages."""
    if not yes:
        click.confirm('Delete this chat?', abort=True)
    _run(Console(), "delete_session", session_id=session_id)


@main.command()
@click.option('-y', '--yes', is_flag=True, help='Do not ask for confirmation')
def clear(yes: bool):
    """Delete all sessions and messages."""
    if not yes:
        click.confirm('Clear all chat history?', abort=True)
    _run(Console(), "clear_history")


@main.command()
@click.option('--api-key', help='API key to store')
@click.option('--provider', type=click.Choice(PROVIDERS), help='Provider to use')
def settings(api_key: Optional[str], provider: Optional[str]):
    """Show settings, or update them with --api-key/--provider."""
    console = Console()
    current = _run(console, "get_settings") or {}

    if api_key is None and provider is None:
        console.print(f"API key:  {mask_key(current.get('api_key', ''))}")
        console.print(f"Provider: {current.get('provider', '')}")
        return

    _run(
        console,
        "save_settings",
        api_key=current.get("api_key", "") if api_key is None else api_key,
        provider=provider or current.get("provider", "openai"),
    )
    console.print("[green]Saved[/]")


@main.command()
def status():
    """Show daemon status."""
    console = Console()
    info = _run(console, "status") or {}
    console.print("[bold]llm-selectassistant daemon status:[/]")
    console.print(f"  Surface: {info.get('state')} (focused: {info.get('focused')})")
    console.print(f"  Model: {info.get('model')}")
    console.print(f"  Automation: {info.get('automation')}")
    console.print(f"  Subscribers: {info.get('subscribers', 0)}")
    console.print(f"  Streaming sessions: {len(info.get('streaming', {}))}")


@main.command()
def shutdown():
    """Stop the daemon."""
    console = Console(stderr=True)
    if not is_daemon_running():
        console.print("[dim]Daemon is not running[/]")
        return
    call("shutdown")
    console.print("[dim]Shutting down daemon...[/]")


@main.command()
def watch():
    """Print presentation events (show, hide, captured context) as they happen."""
    console = Console()
    _require_daemon(console)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.connect(str(get_socket_path()))
    try:
        sock.sendall((json.dumps({"cmd": "subscribe"}) + '\n').encode('utf-8'))
        for event in iter_events(sock):
            event_type = event.get("type")
            if event_type == "context_captured":
                content = event.get("content", "")
                console.print(f"[cyan]context[/] ({len(content)} chars)")
                console.print(content, markup=False, highlight=False)
            elif event_type == "show":
                where = f" at {event['x']},{event['y']}" if "x" in event else ""
                console.print(f"[green]show[/]{where}")
            elif event_type == "quit":
                console.print("[dim]quit[/]")
                break
            else:
                console.print(f"[dim]{event_type}[/]")
    except KeyboardInterrupt:
        pass
    finally:
        sock.close()


if __name__ == "__main__":
    main()
