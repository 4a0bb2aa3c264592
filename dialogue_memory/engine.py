from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List

from .memory.coordinator import TierCoordinator
from .memory.recall import ExpandHint
from .memory.types import ContextBundle, ConversationSession, ConversationTurn
from .recognition.processor import RecognitionProcessor
from .recognition.types import RecognitionDiagnostics, RecognitionOutput


logger = logging.getLogger("dialogue_memory")


@dataclass(slots=True)
class TurnContext:
    session_id: str
    turns: ContextBundle
    recognition: RecognitionOutput
    diagnostics: RecognitionDiagnostics | None = None


class DialogueMemoryEngine:
    """Single entry point for the response pipeline: memory in, recognition out."""

    def __init__(
        self,
        store,
        coordinator: TierCoordinator,
        processor: RecognitionProcessor,
        *,
        session_idle_timeout_seconds: int = 1800,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.processor = processor
        self.session_idle_timeout_seconds = max(0, int(session_idle_timeout_seconds))
        self._session_users: dict[str, str] = {}
        self._previous_outputs: dict[str, RecognitionOutput] = {}

    async def start(self) -> None:
        await self.store.init()
        await self.processor.start()
        logger.info(
            "[engine] started store=%s recognition=%s model=%s",
            getattr(self.store, "backend_name", "unknown"),
            self.processor.backend_name,
            self.processor.model_name or "-",
        )

    async def close(self) -> None:
        await self.processor.close()

    async def start_session(self, user_id: str) -> ConversationSession:
        session = await self.store.get_or_create_session(user_id)
        self._session_users[session.id] = session.user_id
        await self.coordinator.restore_session(session.id)
        return session

    async def _user_for(self, session_id: str) -> str:
        known = self._session_users.get(session_id)
        if known:
            return known
        session = await self.store.get_session(session_id)
        if session is None:
            raise ValueError(f"Unknown session: {session_id}")
        self._session_users[session_id] = session.user_id
        return session.user_id

    async def assemble_context_and_recognize(
        self,
        session_id: str,
        user_message: str,
        *,
        expand_hint: ExpandHint | None = None,
        token_budget: int | None = None,
    ) -> TurnContext:
        bundle = await self.coordinator.assemble_context(
            session_id,
            user_message,
            token_budget,
            expand_hint,
            user_id=self._session_users.get(session_id),
        )
        recognition = await self.processor.recognize(
            user_message,
            bundle,
            self._previous_outputs.get(session_id),
        )
        self._previous_outputs[session_id] = recognition
        return TurnContext(
            session_id=session_id,
            turns=bundle,
            recognition=recognition,
            diagnostics=self.processor.last_diagnostics,
        )

    async def complete_turn(self, session_id: str, user_message: str, ai_response: str) -> ConversationTurn:
        user_id = await self._user_for(session_id)
        return await self.coordinator.record_exchange(session_id, user_id, user_message, ai_response)

    async def end_session(self, session_id: str) -> int:
        archived = await self.coordinator.end_session(session_id)
        self._previous_outputs.pop(session_id, None)
        self._session_users.pop(session_id, None)
        return archived

    async def expire_idle_sessions(self, *, now: datetime | None = None) -> List[str]:
        ended = await self.coordinator.expire_idle_sessions(self.session_idle_timeout_seconds, now=now)
        for session_id in ended:
            self._previous_outputs.pop(session_id, None)
            self._session_users.pop(session_id, None)
        return ended
