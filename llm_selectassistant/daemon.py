"""llm-selectassistant daemon - Unix socket server hosting the assistant core.

Architecture:
- Listens on Unix socket at $TMPDIR/llm-selectassistant-{UID}/daemon.sock
- One JSON request line per connection, NDJSON events back
- Owns the single activation state machine, triggered by `activate`
  (bound to the global hotkey through the desktop's keyboard shortcuts)
- Presentation layers `subscribe` and receive show/hide/context events
- Chat requests stream session_created/chunk events, then done or error
"""

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional, Set, Tuple

from rich.console import Console

from .activation import ActivationMachine
from .capture import Automation, SelectionCapture, detect_automation
from .config import (
    REQUEST_READ_TIMEOUT,
    SURFACE_HEIGHT,
    SURFACE_WIDTH,
    get_model_id,
)
from .errors import AssistantError, ErrorCode, format_error_event
from .pipeline import ChatPipeline
from .provider import provider_for
from .service import AssistantService
from .settings import SecretStore
from .store import ConversationStore
from .xdg import get_socket_path

logger = logging.getLogger(__name__)

# Requests may carry long histories and up to 100KB of captured context
STREAM_LIMIT = 16 * 1024 * 1024


class SubscriberSurface:
    """Surface implementation that broadcasts to subscribed presentation clients."""

    def __init__(self, size: Tuple[int, int] = (SURFACE_WIDTH, SURFACE_HEIGHT)):
        self.size = size
        self.subscribers: Set[asyncio.StreamWriter] = set()

    def add(self, writer: asyncio.StreamWriter) -> None:
        self.subscribers.add(writer)

    def remove(self, writer: asyncio.StreamWriter) -> None:
        self.subscribers.discard(writer)

    async def broadcast(self, event: dict) -> None:
        line = (json.dumps(event) + '\n').encode('utf-8')
        for writer in list(self.subscribers):
            try:
                writer.write(line)
                await writer.drain()
            except (ConnectionError, OSError) as e:
                logger.debug("Dropping subscriber: %s", e)
                self.subscribers.discard(writer)

    async def show_at(self, position: Optional[Tuple[int, int]]) -> None:
        event: Dict[str, Any] = {"type": "show"}
        if position is not None:
            event["x"], event["y"] = position
        await self.broadcast(event)

    async def hide(self) -> None:
        await self.broadcast({"type": "hide"})

    async def set_context(self, text: str) -> None:
        await self.broadcast({"type": "context_captured", "content": text})

    async def quit(self) -> None:
        await self.broadcast({"type": "quit"})

    def close_all(self) -> None:
        """Disconnect every subscriber."""
        for writer in list(self.subscribers):
            writer.close()
        self.subscribers.clear()


class AssistantDaemon:
    """Unix socket server for llm-selectassistant."""

    def __init__(
        self,
        model_id: Optional[str] = None,
        socket_path: Optional[Path] = None,
        db_path: Optional[Path] = None,
        settings_path: Optional[Path] = None,
        automation: Optional[Automation] = None,
        provider_factory=None,
    ):
        self.socket_path = socket_path or get_socket_path()
        self.model_id = model_id or get_model_id()
        self.server: Optional[asyncio.AbstractServer] = None
        self.running = True
        self.console = Console(stderr=True)

        self.secrets = SecretStore(settings_path)
        self.store = ConversationStore(db_path)
        self.automation = automation or detect_automation()
        self.surface = SubscriberSurface()
        self.capture = SelectionCapture(self.automation)
        self.activation = ActivationMachine(self.surface, self.capture, self.automation)
        self.pipeline = ChatPipeline(
            self.store,
            self.secrets,
            provider_factory=provider_factory or (lambda s: provider_for(s, self.model_id)),
        )
        self.service = AssistantService(
            self.secrets, self.store, self.pipeline, self.activation, self.capture
        )

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle a client connection with JSON protocol."""
        try:
            data = await asyncio.wait_for(reader.readline(), timeout=REQUEST_READ_TIMEOUT)
            if not data:
                return

            try:
                request = json.loads(data.decode('utf-8').strip())
                if not isinstance(request, dict):
                    raise ValueError("request must be a JSON object")
            except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
                await self._emit_error(writer, ErrorCode.PARSE_ERROR, f"Invalid JSON: {e}")
                return

            cmd = request.get('cmd', '')
            logger.debug("Request: %s", cmd)

            if cmd == 'ask':
                await self.handle_ask(request, writer)
            elif cmd == 'subscribe':
                await self.handle_subscribe(reader, writer)
            elif cmd in self.COMMANDS:
                result = await getattr(self, self.COMMANDS[cmd])(request)
                await self._emit(writer, {"type": "result", "data": result})
                await self._emit(writer, {"type": "done"})
            else:
                await self._emit_error(writer, ErrorCode.PARSE_ERROR, f"Unknown command: {cmd}")

        except asyncio.TimeoutError:
            await self._emit_error(writer, ErrorCode.TIMEOUT, "Request timeout")
        except AssistantError as e:
            await self._emit_error(writer, e.code, e.message)
        except (ValueError, TypeError, KeyError) as e:
            await self._emit_error(writer, ErrorCode.PARSE_ERROR, str(e))
        except (ConnectionError, BrokenPipeError):
            logger.debug("Client went away")
        except Exception as e:
            logger.exception("Unexpected error handling request")
            await self._emit_error(writer, ErrorCode.INTERNAL, str(e))
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    # Request/response commands: cmd -> handler method name
    COMMANDS = {
        'get_settings': 'cmd_get_settings',
        'save_settings': 'cmd_save_settings',
        'list_sessions': 'cmd_list_sessions',
        'create_session': 'cmd_create_session',
        'get_history': 'cmd_get_history',
        'delete_session': 'cmd_delete_session',
        'clear_history': 'cmd_clear_history',
        'capture': 'cmd_capture',
        'activate': 'cmd_activate',
        'show': 'cmd_show',
        'hide': 'cmd_hide',
        'close': 'cmd_close',
        'focus': 'cmd_focus',
        'blur': 'cmd_blur',
        'status': 'cmd_status',
        'shutdown': 'cmd_shutdown',
    }

    async def cmd_get_settings(self, request: dict) -> dict:
        return self.service.get_settings()

    async def cmd_save_settings(self, request: dict) -> bool:
        return self.service.save_settings(request.get('api_key', ''), request.get('provider', 'openai'))

    async def cmd_list_sessions(self, request: dict) -> list:
        return self.service.list_sessions()

    async def cmd_create_session(self, request: dict) -> int:
        return self.service.create_session(request.get('title'))

    async def cmd_get_history(self, request: dict) -> list:
        return self.service.get_history(request.get('session_id'))

    async def cmd_delete_session(self, request: dict) -> bool:
        return self.service.delete_session(int(request['session_id']))

    async def cmd_clear_history(self, request: dict) -> bool:
        return self.service.clear_all_history()

    async def cmd_capture(self, request: dict) -> str:
        return await self.service.capture_selection()

    async def cmd_activate(self, request: dict) -> str:
        state = await self.service.activate()
        return state.value

    async def cmd_show(self, request: dict) -> str:
        return (await self.activation.show()).value

    async def cmd_hide(self, request: dict) -> str:
        return (await self.activation.hide()).value

    async def cmd_close(self, request: dict) -> str:
        return (await self.activation.request_close()).value

    async def cmd_focus(self, request: dict) -> str:
        return self.activation.on_focus().value

    async def cmd_blur(self, request: dict) -> str:
        state = await self.activation.on_blur(inspector_open=bool(request.get('inspector_open')))
        return state.value

    async def cmd_status(self, request: dict) -> dict:
        return {
            "state": self.activation.state.value,
            "focused": self.activation.focused,
            "model": self.model_id,
            "automation": type(self.automation).__name__,
            "subscribers": len(self.surface.subscribers),
            "streaming": {str(k): v for k, v in self.pipeline.streaming_sessions().items()},
            "active_workers": len(self.pipeline.workers),
        }

    async def cmd_shutdown(self, request: dict) -> bool:
        self.running = False
        return True

    async def handle_ask(self, request: dict, writer: asyncio.StreamWriter):
        """Stream a chat submission as NDJSON events.

        A client that disconnects mid-stream does not cancel the request;
        remaining events are consumed so the transcript is still persisted.
        """
        messages = request.get('messages') or []
        if not isinstance(messages, list) or not all(
            isinstance(m, dict) and 'role' in m and 'content' in m for m in messages
        ):
            await self._emit_error(writer, ErrorCode.PARSE_ERROR, "messages must be a list of {role, content}")
            return

        session_id = request.get('session_id')
        submission = self.service.submit_chat(
            messages,
            context=request.get('context') or None,
            session_id=int(session_id) if session_id else None,
        )

        connected = True
        async for event in submission:
            if not connected:
                continue
            try:
                await self._emit(writer, event.to_dict())
            except (ConnectionError, OSError):
                logger.debug("Client left during request %s; continuing", submission.request_id)
                connected = False

    async def handle_subscribe(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Register a presentation client until it disconnects."""
        await self._emit(writer, {"type": "subscribed", "state": self.activation.state.value})
        self.surface.add(writer)
        try:
            while self.running:
                line = await reader.readline()
                if not line:
                    break
        finally:
            self.surface.remove(writer)

    async def _emit(self, writer: asyncio.StreamWriter, event: dict):
        """Emit a NDJSON event."""
        line = json.dumps(event) + '\n'
        writer.write(line.encode('utf-8'))
        await writer.drain()

    async def _emit_error(self, writer: asyncio.StreamWriter, code: str, message: str):
        """Emit a terminal error event."""
        try:
            await self._emit(writer, format_error_event(code, message))
        except (ConnectionError, OSError):
            logger.debug("Could not deliver error %s: %s", code, message)

    async def start(self):
        """Prepare storage and start listening."""
        self.store.ensure_schema()

        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        self.server = await asyncio.start_unix_server(
            self.handle_client,
            path=str(self.socket_path),
            limit=STREAM_LIMIT,
        )
        os.chmod(self.socket_path, 0o600)

    async def stop(self):
        """Quit the surface, stop workers and remove the socket."""
        await self.activation.quit()
        await self.pipeline.close()
        self.surface.close_all()

        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

        if self.socket_path.exists():
            self.socket_path.unlink()
        self.store.close()

    async def run(self):
        """Run the daemon server."""
        await self.start()
        self.console.print(
            f"[dim]llm-selectassistant daemon started (socket: {self.socket_path}, "
            f"automation: {type(self.automation).__name__})[/]",
            highlight=False
        )

        try:
            while self.running:
                await asyncio.sleep(0.1)
        finally:
            await self.stop()
            self.console.print("[dim]llm-selectassistant daemon stopped[/]", highlight=False)


def run_daemon(model_id: Optional[str] = None, debug: bool = False) -> None:
    """Configure logging and signals, then run the daemon until stopped."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    daemon = AssistantDaemon(model_id=model_id)

    def signal_handler(sig, frame):
        daemon.running = False

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass
