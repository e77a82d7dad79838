"""Error codes and exceptions for llm-selectassistant.

Provides shared error codes used in NDJSON events:
- daemon (error events for every command)
- chat pipeline (terminal error event of a submission)
- client (error display)
"""


class ErrorCode:
    """Standard error codes for the daemon protocol.

    These codes are used in NDJSON error events:
    {"type": "error", "code": "PROVIDER_ERROR", "message": "..."}
    """

    # Chat errors
    AUTH_MISSING = "AUTH_MISSING"            # No API key configured
    PROVIDER_ERROR = "PROVIDER_ERROR"        # Upstream model/network failure
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"  # Database write failed
    CANCELLED = "CANCELLED"                  # Session deleted mid-request

    # Client errors
    PARSE_ERROR = "PARSE_ERROR"      # Invalid JSON request or unknown command

    # Server errors
    INTERNAL = "INTERNAL"            # Unexpected server error

    # Communication errors
    TIMEOUT = "TIMEOUT"              # Request timed out
    SOCKET_ERROR = "SOCKET_ERROR"    # Socket communication error
    DAEMON_UNAVAILABLE = "DAEMON_UNAVAILABLE"  # Daemon not running


class AssistantError(Exception):
    """Base exception carrying an error code and a human-readable message."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class AuthMissingError(AssistantError):
    """Raised when no API key is configured."""

    def __init__(self, message: str = "API Key missing. Settings > Add Key."):
        super().__init__(ErrorCode.AUTH_MISSING, message)


class ProviderError(AssistantError):
    """Raised when the model provider fails before or during streaming."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.PROVIDER_ERROR, message)


class StorageUnavailableError(AssistantError):
    """Raised when a write to the conversation store fails."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.STORAGE_UNAVAILABLE, message)


def format_error_event(code: str, message: str) -> dict:
    """Format an error as an NDJSON event dict.

    Examples:
        >>> format_error_event(ErrorCode.TIMEOUT, "Request timed out")
        {'type': 'error', 'code': 'TIMEOUT', 'message': 'Request timed out'}
    """
    return {
        "type": "error",
        "code": code,
        "message": message,
    }
