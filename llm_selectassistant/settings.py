"""Secret store for llm-selectassistant.

Holds the API key and provider selection in a small JSON document at
~/.config/llm-selectassistant/settings.json (mode 0600). The document is
read on every access and overwritten wholesale on save.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from .config import DEFAULT_PROVIDER, PROVIDERS
from .xdg import get_settings_path

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """User settings exposed to the presentation layer."""
    api_key: str = ""
    provider: str = DEFAULT_PROVIDER

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULTS = Settings().to_dict()


class SecretStore:
    """Key-value persistence for the API key and provider.

    Reads fall back to defaults when the file is missing or corrupt.
    Writes propagate OSError.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or get_settings_path()

    def _load(self) -> dict:
        """Load the stored document, or return defaults."""
        try:
            if self.path.exists():
                data = json.loads(self.path.read_text())
                if isinstance(data, dict):
                    return {**DEFAULTS, **data}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read settings from %s: %s", self.path, e)
        return dict(DEFAULTS)

    def _save(self, data: dict) -> None:
        """Write the whole document with user-only permissions."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f)

    def get(self, key: str) -> Any:
        return self._load().get(key, DEFAULTS.get(key))

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def get_settings(self) -> Settings:
        data = self._load()
        return Settings(
            api_key=data.get("api_key") or "",
            provider=data.get("provider") or DEFAULT_PROVIDER,
        )

    def save_settings(self, settings: Settings) -> None:
        """Overwrite stored settings.

        Raises:
            ValueError: If the provider is not one of PROVIDERS
        """
        if settings.provider not in PROVIDERS:
            raise ValueError(
                f"Unknown provider {settings.provider!r} (expected one of {', '.join(PROVIDERS)})"
            )
        self._save(settings.to_dict())
