"""Selection capture for llm-selectassistant.

There is no portable "read the current selection" API, so the selection is
read indirectly: the clipboard is cleared, a copy shortcut is sent to the
focused application, and whatever lands on the clipboard is the selection.

Backends:
- X11: xdotool key events (ctrl+c, then ctrl+Insert as fallback)
- macOS: osascript System Events (keystroke "c", then key code 8)
- Anything else: no-op, capture always yields ""

Clipboard access goes through pyperclip.

The protocol never raises: every automation failure is logged and counted
as "nothing copied" for that attempt.
"""

import asyncio
import enum
import logging
import os
import platform
import shutil
from typing import Optional, Protocol, Tuple

import pyperclip

from .config import (
    AUTOMATION_TIMEOUT,
    CAPTURE_COPY_WAIT,
    CAPTURE_SETTLE_DELAY,
    MAX_CONTEXT_CHARS,
)

logger = logging.getLogger(__name__)


class CopyVariant(enum.Enum):
    """Which copy shortcut to simulate."""
    PRIMARY = "primary"      # Modifier + "c" by character
    ALTERNATE = "alternate"  # Key-code based path for apps ignoring PRIMARY


class Automation(Protocol):
    """OS automation facility used by the capture protocol."""

    async def simulate_copy(self, variant: CopyVariant) -> bool: ...

    async def read_clipboard(self) -> str: ...

    async def write_clipboard(self, text: str) -> None: ...

    async def pointer_position(self) -> Optional[Tuple[int, int]]: ...


async def run_command(*cmd: str, timeout: float = AUTOMATION_TIMEOUT) -> Tuple[bool, str]:
    """Run an automation command without blocking the event loop.

    Returns:
        Tuple of (succeeded, stdout). Missing binaries, timeouts and
        non-zero exits count as failure.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, OSError) as e:
        logger.warning("Automation command %s unavailable: %s", cmd[0], e)
        return False, ""

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Automation command %s timed out", cmd[0])
        return False, ""

    if proc.returncode != 0:
        logger.warning(
            "Automation command %s failed (%s): %s",
            cmd[0], proc.returncode, stderr.decode('utf-8', errors='replace').strip()
        )
        return False, ""
    return True, stdout.decode('utf-8', errors='replace')


class PyperclipClipboard:
    """Clipboard access through pyperclip, run in the default executor."""

    async def read_clipboard(self) -> str:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, pyperclip.paste) or ""
        except pyperclip.PyperclipException as e:
            logger.warning("Clipboard read failed: %s", e)
            return ""

    async def write_clipboard(self, text: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, pyperclip.copy, text)
        except pyperclip.PyperclipException as e:
            logger.warning("Clipboard write failed: %s", e)


class XdotoolAutomation(PyperclipClipboard):
    """X11 automation via xdotool."""

    KEYS = {
        CopyVariant.PRIMARY: "ctrl+c",
        CopyVariant.ALTERNATE: "ctrl+Insert",
    }

    async def simulate_copy(self, variant: CopyVariant) -> bool:
        ok, _ = await run_command("xdotool", "key", "--clearmodifiers", self.KEYS[variant])
        return ok

    async def pointer_position(self) -> Optional[Tuple[int, int]]:
        ok, output = await run_command("xdotool", "getmouselocation", "--shell")
        if not ok:
            return None
        # Parse: X=123\nY=456\nSCREEN=0\nWINDOW=...
        values = {}
        for line in output.splitlines():
            if '=' in line:
                key, _, value = line.partition('=')
                values[key.strip()] = value.strip()
        try:
            return int(values["X"]), int(values["Y"])
        except (KeyError, ValueError):
            return None


class OsascriptAutomation(PyperclipClipboard):
    """macOS automation via AppleScript System Events."""

    SCRIPTS = {
        CopyVariant.PRIMARY: 'tell application "System Events" to keystroke "c" using {command down}',
        CopyVariant.ALTERNATE: 'tell application "System Events" to key code 8 using {command down}',
    }

    async def simulate_copy(self, variant: CopyVariant) -> bool:
        ok, _ = await run_command("osascript", "-e", self.SCRIPTS[variant])
        return ok

    async def pointer_position(self) -> Optional[Tuple[int, int]]:
        return None


class NullAutomation:
    """Fallback for environments without UI automation."""

    async def simulate_copy(self, variant: CopyVariant) -> bool:
        return False

    async def read_clipboard(self) -> str:
        return ""

    async def write_clipboard(self, text: str) -> None:
        return None

    async def pointer_position(self) -> Optional[Tuple[int, int]]:
        return None


def detect_automation() -> Automation:
    """Pick the automation backend for this platform and session type."""
    system = platform.system()
    if system == "Darwin" and shutil.which("osascript"):
        return OsascriptAutomation()
    if system == "Linux":
        session_type = os.environ.get("XDG_SESSION_TYPE", "").lower()
        if session_type == "x11" and shutil.which("xdotool"):
            return XdotoolAutomation()
        logger.info("No X11 automation available (session type %r); capture disabled", session_type)
    return NullAutomation()


class SelectionCapture:
    """Clipboard-swap-and-simulated-copy capture of the OS selection.

    Captures are serialized: the clipboard is a single global resource.
    """

    def __init__(
        self,
        automation: Automation,
        settle_delay: float = CAPTURE_SETTLE_DELAY,
        copy_wait: float = CAPTURE_COPY_WAIT,
        use_fallback: bool = True,
    ):
        self.automation = automation
        self.settle_delay = settle_delay
        self.copy_wait = copy_wait
        self.use_fallback = use_fallback
        self._lock = asyncio.Lock()

    async def _copy_and_read(self, variant: CopyVariant) -> str:
        try:
            copied = await self.automation.simulate_copy(variant)
        except Exception as e:
            logger.warning("Simulated copy (%s) raised: %s", variant.value, e)
            copied = False
        if not copied:
            logger.debug("Simulated copy (%s) reported failure", variant.value)
        await asyncio.sleep(self.copy_wait)
        return await self._read()

    async def _read(self) -> str:
        try:
            return await self.automation.read_clipboard() or ""
        except Exception as e:
            logger.warning("Clipboard read raised: %s", e)
            return ""

    async def _write(self, text: str) -> None:
        try:
            await self.automation.write_clipboard(text)
        except Exception as e:
            logger.warning("Clipboard write raised: %s", e)

    async def capture(self) -> str:
        """Return the currently selected text, or "" if none was captured.

        On success the clipboard keeps the captured text. On failure the
        original clipboard content is restored.
        """
        async with self._lock:
            original = await self._read()
            await self._write("")
            await asyncio.sleep(self.settle_delay)

            text = await self._copy_and_read(CopyVariant.PRIMARY)
            if not text and self.use_fallback:
                text = await self._copy_and_read(CopyVariant.ALTERNATE)

            if not text or not text.strip():
                logger.info("Context capture: No text found, restoring clipboard.")
                await self._write(original)
                return ""

            logger.info("Context capture: Success, length: %d", len(text))
            if len(text) > MAX_CONTEXT_CHARS:
                logger.warning(
                    "Captured selection truncated from %d to %d chars",
                    len(text), MAX_CONTEXT_CHARS
                )
                text = text[:MAX_CONTEXT_CHARS]
            return text
