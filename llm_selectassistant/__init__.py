"""llm-selectassistant - hotkey-summoned chat assistant with selection context.

A system-wide LLM chat popup backend that:
- Runs as a small asyncio daemon on a Unix socket
- Captures the current OS text selection when the hotkey fires
- Streams chat responses from the configured provider
- Persists sessions and messages in SQLite

Usage:
    llm-selectassistant daemon         # Start the daemon
    llm-selectassistant activate       # Bind this to the global hotkey
    llm-selectassistant ask "question" # Ask from the terminal
"""

__version__ = "0.1.0"
