from __future__ import annotations


class LearningError(Exception):
    """Base class for failures surfaced by the learning pipeline."""

    kind = "learning_error"


class UnknownSession(LearningError):
    kind = "unknown_session"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown chat session: {session_id}")
        self.session_id = session_id


class SessionClosed(LearningError):
    kind = "session_closed"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Chat session already ended: {session_id}")
        self.session_id = session_id


class UnknownPersona(LearningError):
    kind = "unknown_persona"

    def __init__(self, persona_id: str) -> None:
        super().__init__(f"Unknown persona: {persona_id}")
        self.persona_id = persona_id


class AnalysisUnavailable(LearningError):
    """External transcript analysis failed; always recovered by the heuristic analyzer."""

    kind = "analysis_unavailable"


class StreamInterrupted(LearningError):
    kind = "stream_interrupted"

    def __init__(self, message: str, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text


class StoreUnavailable(LearningError):
    kind = "store_unavailable"


class InvalidUserId(LearningError):
    kind = "invalid_user_id"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Malformed user id: {user_id!r}")
        self.user_id = user_id
