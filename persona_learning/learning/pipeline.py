from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..errors import InvalidUserId, LearningError, StreamInterrupted, UnknownSession
from ..identity import is_valid_user_id
from ..models import Outcome, TurnRecord
from ..services.streaming import StreamEvent
from .analysis import ConversationAnalyzer
from .context import ContextBuilder
from .knowledge import KnowledgeSynthesizer
from .user_memory import UserMemoryService

logger = logging.getLogger("persona_learning")


@dataclass(slots=True)
class OperationResult:
    ok: bool
    value: Any = None
    error_kind: str = ""
    error: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: LearningError) -> "OperationResult":
        return cls(ok=False, error_kind=exc.kind, error=str(exc))


def _require_user_id(user_id: str) -> None:
    if not is_valid_user_id(user_id):
        raise InvalidUserId(user_id)


def _session_duration_seconds(started_at: float, transcript: Sequence[TurnRecord], now: float) -> int:
    last_activity = transcript[-1].created_at.timestamp() if transcript else now
    return max(0, int(last_activity - started_at))


class LearningPipeline:
    """Caller-facing surface: session lifecycle, streamed turns, and learning capture on session end."""

    def __init__(
        self,
        *,
        store: Any,
        analyzer: ConversationAnalyzer,
        synthesizer: KnowledgeSynthesizer,
        user_memory: UserMemoryService,
        context_builder: ContextBuilder,
        llm: Any | None = None,
        learning_enabled: bool = True,
        chat_temperature: float | None = None,
    ) -> None:
        self.store = store
        self.analyzer = analyzer
        self.synthesizer = synthesizer
        self.user_memory = user_memory
        self.context_builder = context_builder
        self.llm = llm
        self.learning_enabled = learning_enabled
        self.chat_temperature = chat_temperature

    async def start_session(self, user_id: str, persona_id: str) -> OperationResult:
        try:
            _require_user_id(user_id)
            session_id = await self.store.get_or_create_session(user_id, persona_id)
        except LearningError as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(session_id)

    async def _build_messages(self, session_id: str, persona_id: str, user_id: str) -> List[Dict[str, str]]:
        system_text = await self.context_builder.build_context(persona_id, user_id)
        history = await self.store.list_messages(session_id)
        messages = [{"role": "system", "content": system_text}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in history if turn.role != "system")
        return messages

    async def submit_turn(self, user_id: str, persona_id: str, content: str) -> AsyncIterator[StreamEvent]:
        """Persist the user turn, stream the reply, then persist the reply (or its partial text).

        The terminal event is yielded only after the agent turn has been written.
        """
        try:
            _require_user_id(user_id)
            session_id = await self.store.get_or_create_session(user_id, persona_id)
            await self.store.append_message(session_id, "user", content)
            messages = await self._build_messages(session_id, persona_id, user_id)
        except LearningError as exc:
            yield StreamEvent.failed("", str(exc), exc.kind)
            return

        if self.llm is None:
            event = StreamEvent.failed("", "No completion client configured", StreamInterrupted.kind)
            event.session_id = session_id
            yield event
            return

        terminal: Optional[StreamEvent] = None
        async for event in self.llm.stream_chat(messages, temperature=self.chat_temperature):
            event.session_id = session_id
            if event.is_terminal:
                terminal = event
                continue
            yield event

        if terminal is None:
            terminal = StreamEvent.failed("", "Completion stream produced no terminal event", StreamInterrupted.kind)
            terminal.session_id = session_id

        if terminal.text:
            try:
                await self.store.append_message(session_id, "agent", terminal.text)
            except LearningError as exc:
                logger.warning("Failed to persist agent turn for session %s: %s", session_id, exc)
                failed = StreamEvent.failed(terminal.text, str(exc), exc.kind)
                failed.session_id = session_id
                yield failed
                return
        if terminal.kind == "error":
            logger.warning(
                "Turn for session %s ended with %s (%s chars kept): %s",
                session_id,
                terminal.error_kind,
                len(terminal.text),
                terminal.error,
            )
        yield terminal

    async def end_session(self, session_id: str) -> OperationResult:
        """End a session and capture its Outcome; sessions without turns end with no Outcome.

        Only an existing Outcome short-circuits. A session that was ended earlier
        without capture (learning disabled at the time) is captured on a later
        call once learning is enabled, since a session still yields at most one Outcome.
        """
        try:
            session = await self.store.get_session(session_id)
            if session is None:
                raise UnknownSession(session_id)

            existing = await self.store.get_outcome_for_session(session_id)
            if existing is not None:
                return OperationResult.success(existing)

            transcript = await self.store.list_messages(session_id)
            persona = await self.store.require_persona(session.persona_id)
            if not transcript or not (self.learning_enabled and persona.learning_enabled):
                await self.store.end_session(session_id)
                logger.info(
                    "Session %s ended without learning capture (turns=%s learning=%s)",
                    session_id,
                    len(transcript),
                    self.learning_enabled and persona.learning_enabled,
                )
                return OperationResult.success(None)

            analysis = await self.analyzer.analyze(transcript)
            outcome: Outcome = await self.store.capture_experience(
                persona_id=session.persona_id,
                user_id=session.user_id,
                session_id=session_id,
                analysis=analysis,
                transcript=transcript,
                duration_seconds=_session_duration_seconds(session.started_at.timestamp(), transcript, time.time()),
            )
        except LearningError as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(outcome)

    async def get_learning_summary(self, persona_id: str) -> OperationResult:
        try:
            await self.store.require_persona(persona_id)
            summary = await self.synthesizer.get_learning_summary(persona_id)
        except LearningError as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(summary)

    async def get_technique_metrics(self, persona_id: str, limit: int | None = None) -> OperationResult:
        try:
            await self.store.require_persona(persona_id)
            metrics = await self.store.list_technique_metrics(persona_id, limit=limit)
        except LearningError as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(metrics)

    async def build_context(self, persona_id: str, user_id: str | None = None) -> OperationResult:
        try:
            if user_id is not None:
                _require_user_id(user_id)
            await self.store.require_persona(persona_id)
            text = await self.context_builder.build_context(persona_id, user_id)
        except LearningError as exc:
            return OperationResult.failure(exc)
        return OperationResult.success(text)

    async def reap_idle_sessions(self, idle_seconds: float) -> OperationResult:
        """End every session idle longer than ``idle_seconds`` through the normal end-session path."""
        try:
            idle = await self.store.list_idle_sessions(idle_seconds)
        except LearningError as exc:
            return OperationResult.failure(exc)

        ended: List[str] = []
        for session in idle:
            result = await self.end_session(session.session_id)
            if result.ok:
                ended.append(session.session_id)
            else:
                logger.warning("Idle reaper could not end session %s: %s", session.session_id, result.error)
        if ended:
            logger.info("Idle reaper ended %s session(s)", len(ended))
        return OperationResult.success(ended)
