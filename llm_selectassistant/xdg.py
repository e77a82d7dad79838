"""XDG Base Directory Specification helpers.

Config, database, settings and socket locations for llm-selectassistant.

Socket path format: $TMPDIR/llm-selectassistant-{UID}/daemon.sock
"""
import os
from pathlib import Path

from .config import APP_NAME

SOCKET_FILENAME = "daemon.sock"


def get_config_dir(app_name: str = APP_NAME) -> Path:
    """Get application config directory using XDG spec.

    Args:
        app_name: Application name (e.g., "llm-selectassistant")

    Returns:
        Path to XDG_CONFIG_HOME/app_name or ~/.config/app_name
    """
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / '.config'
    return base / app_name


def get_db_path(app_name: str = APP_NAME) -> Path:
    """Get path to the conversation database.

    Returns:
        Path to XDG_CONFIG_HOME/app_name/chat_history.db
    """
    return get_config_dir(app_name) / 'chat_history.db'


def get_settings_path(app_name: str = APP_NAME) -> Path:
    """Get path to the secret store document (API key, provider)."""
    return get_config_dir(app_name) / 'settings.json'


def get_socket_dir(app_name: str = APP_NAME) -> Path:
    """Get the daemon socket directory with user isolation.

    Returns:
        Path to TMPDIR/app_name-{uid} or /tmp/app_name-{uid}
    """
    tmpdir = os.environ.get('TMPDIR') or os.environ.get('TMP') or os.environ.get('TEMP')
    if tmpdir:
        base = Path(tmpdir)
    else:
        base = Path('/tmp')
    return base / f"{app_name}-{os.getuid()}"


def get_socket_path(app_name: str = APP_NAME) -> Path:
    """Get the daemon socket path.

    Returns:
        Path to TMPDIR/app_name-{uid}/daemon.sock
    """
    return get_socket_dir(app_name) / SOCKET_FILENAME

