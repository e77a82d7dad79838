"""Boundary operations exposed to the presentation layer.

AssistantService wires the secret store, conversation store, chat
pipeline and activation machine together. The daemon maps NDJSON
commands onto these methods one-to-one.
"""

import logging
from typing import Dict, List, Optional

from .activation import ActivationMachine, ActivationState
from .capture import SelectionCapture
from .pipeline import ChatPipeline, ChatSubmission
from .settings import SecretStore, Settings
from .store import ConversationStore

logger = logging.getLogger(__name__)


class AssistantService:
    """Request/response and event-stream operations of the assistant core."""

    def __init__(
        self,
        secrets: SecretStore,
        store: ConversationStore,
        pipeline: ChatPipeline,
        activation: ActivationMachine,
        capture: SelectionCapture,
    ):
        self.secrets = secrets
        self.store = store
        self.pipeline = pipeline
        self.activation = activation
        self.capture = capture

    # Settings

    def get_settings(self) -> dict:
        return self.secrets.get_settings().to_dict()

    def save_settings(self, api_key: str, provider: str) -> bool:
        self.secrets.save_settings(Settings(api_key=api_key or "", provider=provider))
        logger.info("Settings saved (provider=%s, key %s)", provider, "set" if api_key else "empty")
        return True

    # Sessions and history

    def list_sessions(self) -> List[dict]:
        return [s.to_dict() for s in self.store.list_sessions()]

    def create_session(self, title: Optional[str] = None) -> int:
        return self.store.create_session(title)

    def get_history(self, session_id: Optional[int]) -> List[Dict[str, str]]:
        return self.store.get_history(session_id)

    def delete_session(self, session_id: int) -> bool:
        """Cancel in-flight requests for the session, then delete it."""
        self.pipeline.cancel_session(session_id)
        self.store.delete_session(session_id)
        return True

    def clear_all_history(self) -> bool:
        self.pipeline.cancel_all()
        self.store.clear_all()
        return True

    # Chat

    def submit_chat(
        self,
        messages: List[Dict[str, str]],
        context: Optional[str] = None,
        session_id: Optional[int] = None,
    ) -> ChatSubmission:
        return self.pipeline.submit(messages, context=context or None, session_id=session_id)

    # Activation

    async def activate(self) -> ActivationState:
        return await self.activation.on_hotkey()

    async def capture_selection(self) -> str:
        return await self.capture.capture()
