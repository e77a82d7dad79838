"""Activation state machine for the assistant surface.

There is exactly one surface per process. The hotkey toggles it:

    Hidden  --hotkey-->  capture selection, position at pointer, Visible
    Visible --hotkey (focused)-->  Hidden
    Visible --blur (no inspector attached)-->  Hidden
    any     --hide / close-->  Hidden
    any     --quit-->  Hidden, quitting (hotkeys ignored from then on)

Capture runs before the surface is shown so the simulated copy reaches
the application that had focus when the hotkey was pressed.
"""

import asyncio
import enum
import logging
from typing import Optional, Protocol, Tuple

from .capture import Automation, SelectionCapture
from .config import SURFACE_POINTER_OFFSET_Y

logger = logging.getLogger(__name__)


class ActivationState(enum.Enum):
    HIDDEN = "hidden"
    VISIBLE = "visible"


class Surface(Protocol):
    """The single assistant surface rendered by the presentation layer."""

    size: Tuple[int, int]

    async def show_at(self, position: Optional[Tuple[int, int]]) -> None: ...

    async def hide(self) -> None: ...

    async def set_context(self, text: str) -> None: ...

    async def quit(self) -> None: ...


def position_above_pointer(pointer: Tuple[int, int], size: Tuple[int, int]) -> Tuple[int, int]:
    """Top-left corner that centers the surface horizontally on the pointer."""
    x, y = pointer
    width, _ = size
    return x - width // 2, y - SURFACE_POINTER_OFFSET_Y


class ActivationMachine:
    """Hotkey-driven show/hide of the assistant surface."""

    def __init__(self, surface: Surface, capture: SelectionCapture, automation: Automation):
        self.surface = surface
        self.capture = capture
        self.automation = automation
        self.state = ActivationState.HIDDEN
        self.focused = False
        self.quitting = False
        self._lock = asyncio.Lock()

    @property
    def visible(self) -> bool:
        return self.state is ActivationState.VISIBLE

    async def on_hotkey(self) -> ActivationState:
        """Handle a global hotkey press. Presses are handled one at a time."""
        async with self._lock:
            if self.quitting:
                logger.debug("Hotkey ignored while quitting")
                return self.state

            if self.visible and self.focused:
                await self._hide()
                return self.state

            text = await self.capture.capture()
            if text:
                await self.surface.set_context(text)
            await self._show()
            return self.state

    async def show(self) -> ActivationState:
        """Show the surface without capturing (tray "Show App")."""
        async with self._lock:
            if not self.quitting:
                await self._show()
            return self.state

    async def _show(self) -> None:
        try:
            pointer = await self.automation.pointer_position()
        except Exception as e:
            logger.warning("Pointer position unavailable: %s", e)
            pointer = None

        position = position_above_pointer(pointer, self.surface.size) if pointer else None
        await self.surface.show_at(position)
        self.state = ActivationState.VISIBLE
        self.focused = True
        logger.debug("Surface shown at %s", position)

    async def _hide(self) -> None:
        await self.surface.hide()
        self.state = ActivationState.HIDDEN
        self.focused = False
        logger.debug("Surface hidden")

    def on_focus(self) -> ActivationState:
        if self.visible:
            self.focused = True
        return self.state

    async def on_blur(self, inspector_open: bool = False) -> ActivationState:
        """Focus loss hides the surface unless an inspector holds focus."""
        self.focused = False
        if self.visible and not inspector_open:
            await self._hide()
        return self.state

    async def hide(self) -> ActivationState:
        if self.visible:
            await self._hide()
        return self.state

    async def request_close(self) -> ActivationState:
        """Window close: hide and keep state, unless the process is quitting."""
        if not self.quitting:
            return await self.hide()
        return self.state

    async def quit(self) -> None:
        self.quitting = True
        if self.visible:
            await self._hide()
        await self.surface.quit()
