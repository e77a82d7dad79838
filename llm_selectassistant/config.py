"""Configuration constants for llm-selectassistant.

This module contains all static configuration data including:
- Application and provider names
- Selection capture timing
- Surface geometry used when positioning at the pointer
- Session title defaults
- Daemon and client timeouts
"""

import os

APP_NAME = "llm-selectassistant"

# Providers selectable in settings; only "openai" is wired to the pipeline
PROVIDERS = ("openai", "anthropic")
DEFAULT_PROVIDER = "openai"

DEFAULT_MODEL = "gpt-4o"
MODEL_ENV_VAR = "LLM_SELECTASSISTANT_MODEL"

# Selection capture timing (seconds)
CAPTURE_SETTLE_DELAY = 0.2  # Let focus/activation settle before copying
CAPTURE_COPY_WAIT = 0.4  # Time for the target app to fill the clipboard
AUTOMATION_TIMEOUT = 2.0  # xdotool/osascript subprocess timeout

# Captured context size limit (prevents hangs on massive selections)
MAX_CONTEXT_CHARS = 100 * 1024

# Surface geometry for pointer positioning (pixels)
SURFACE_WIDTH = 800
SURFACE_HEIGHT = 600
SURFACE_POINTER_OFFSET_Y = 20

# Session titles
DEFAULT_SESSION_TITLE = "New Chat"
SESSION_TITLE_LENGTH = 30

# Daemon timeouts
DAEMON_STARTUP_TIMEOUT = 5.0  # Max wait for daemon to start
REQUEST_READ_TIMEOUT = 5.0  # Max wait for a client to send its request
REQUEST_TIMEOUT = 300  # Client-side wait for a streamed answer
SOCKET_CONNECT_TIMEOUT = 0.5  # Quick test for daemon availability
RECV_BUFFER_SIZE = 8192
WORKER_IDLE_MINUTES = 5  # Per-session worker cleanup


def get_model_id() -> str:
    """Get the chat model id, honoring the environment override."""
    return os.environ.get(MODEL_ENV_VAR) or DEFAULT_MODEL
