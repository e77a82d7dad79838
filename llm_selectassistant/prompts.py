"""System prompt and request assembly for the chat pipeline.

The system prompt is rendered from templates/system_prompt.j2. Captured
selection context is injected as a synthetic user turn placed right after
the system prompt and before the real conversation history.
"""

import platform
from pathlib import Path
from typing import Dict, List, Optional

import jinja2

TEMPLATE_DIR = Path(__file__).parent / "templates"

CONTEXT_LABEL = "[CONTEXT FROM USER SELECTION]"

PLATFORM_NAMES = {
    "Darwin": "macOS",
    "Linux": "Linux",
    "Windows": "Windows",
}


def get_system_prompt() -> str:
    """Load and render the system prompt template."""
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(TEMPLATE_DIR),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=False,
    )
    template = env.get_template("system_prompt.j2")
    system = platform.system()
    return template.render(platform=PLATFORM_NAMES.get(system, system or "the desktop"))


def wrap_selection_context(context: str) -> str:
    """Label captured selection text for injection as a user turn.

    Examples:
        >>> wrap_selection_context("x = 1")
        '[CONTEXT FROM USER SELECTION]:\\nx = 1\\n\\nPlease use the above context to help answer my next message.'
    """
    return (
        f"{CONTEXT_LABEL}:\n{context}\n\n"
        "Please use the above context to help answer my next message."
    )


def build_conversation(
    messages: List[Dict[str, str]],
    context: Optional[str] = None,
    system_prompt: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Assemble the provider conversation.

    Order: system prompt, optional context turn, history in original order.
    """
    conversation = [{"role": "system", "content": system_prompt or get_system_prompt()}]
    if context:
        conversation.append({"role": "user", "content": wrap_selection_context(context)})
    conversation.extend(
        {"role": m["role"], "content": m["content"]} for m in messages
    )
    return conversation
