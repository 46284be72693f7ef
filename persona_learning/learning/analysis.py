from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from typing import Any, List, Protocol, Sequence

from ..errors import AnalysisUnavailable
from ..models import AnalysisDiagnostics, AnalyzedBy, ConversationAnalysis, TurnRecord
from ..prompts.analysis import (
    ANALYSIS_SCHEMA_HINT,
    ANALYSIS_SYSTEM_PROMPT,
    build_analysis_user_prompt,
    format_transcript_lines,
)
from ..scoring import DEFAULT_TECHNIQUE, clamp_sentiment

logger = logging.getLogger("persona_learning")

POSITIVE_LEXICON = re.compile(r"\b(amazing|wow|incredible|unbelievable|awesome|cool)\b", re.IGNORECASE)
HEURISTIC_MATCH_SENTIMENT = 0.7
HEURISTIC_BASE_SENTIMENT = 0.5
HEURISTIC_KEY_MOMENTS = ("Interaction completed",)
HEURISTIC_WHAT_WORKED = ("Maintained character",)
HEURISTIC_LESSON = "Standard interaction"

_MAX_LIST_ITEMS = 12
_MAX_ITEM_CHARS = 400


class _JsonChatBackend(Protocol):
    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, object] | None: ...


def heuristic_analysis(transcript: Sequence[TurnRecord]) -> ConversationAnalysis:
    """Deterministic judgement from user-authored turns; pure text scanning."""
    matched = any(POSITIVE_LEXICON.search(turn.content or "") for turn in transcript if turn.role == "user")
    sentiment = HEURISTIC_MATCH_SENTIMENT if matched else HEURISTIC_BASE_SENTIMENT
    return ConversationAnalysis(
        sentiment=sentiment,
        technique_used=DEFAULT_TECHNIQUE,
        what_worked=list(HEURISTIC_WHAT_WORKED),
        what_did_not_work=[],
        lesson_learned=HEURISTIC_LESSON,
        key_moments=list(HEURISTIC_KEY_MOMENTS),
        suggested_improvements=[],
        mentalist_success=sentiment >= 0.7,
        analyzed_by=AnalyzedBy.HEURISTIC,
    )


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _parse_sentiment(raw: Any) -> float:
    if isinstance(raw, bool) or raw is None:
        raise AnalysisUnavailable("analysis payload has no numeric sentiment")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise AnalysisUnavailable(f"analysis sentiment is not numeric: {raw!r}") from exc
    if not math.isfinite(value):
        raise AnalysisUnavailable(f"analysis sentiment is not finite: {raw!r}")
    return clamp_sentiment(value)


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    cleaned = re.sub(r"\s+", " ", str(value)).strip()
    return cleaned[:_MAX_ITEM_CHARS]


def _parse_text_list(raw: Any) -> List[str]:
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    cleaned = [_clean_text(item) for item in items if not isinstance(item, (dict, list))]
    return [item for item in cleaned if item][:_MAX_LIST_ITEMS]


def parse_analysis_payload(payload: Any) -> ConversationAnalysis:
    """Validate an external judgement; anything malformed raises AnalysisUnavailable."""
    if not isinstance(payload, dict):
        raise AnalysisUnavailable("analysis payload is not a JSON object")

    sentiment = _parse_sentiment(_first_present(payload, "sentiment", "user_sentiment"))
    technique = _clean_text(_first_present(payload, "technique_used", "trick_performed")) or DEFAULT_TECHNIQUE
    success_raw = payload.get("mentalist_success")
    mentalist_success = success_raw if isinstance(success_raw, bool) else sentiment >= 0.7

    return ConversationAnalysis(
        sentiment=sentiment,
        technique_used=technique,
        what_worked=_parse_text_list(payload.get("what_worked")),
        what_did_not_work=_parse_text_list(_first_present(payload, "what_did_not_work", "what_didnt_work")),
        lesson_learned=_clean_text(payload.get("lesson_learned")),
        key_moments=_parse_text_list(payload.get("key_moments")),
        suggested_improvements=_parse_text_list(payload.get("suggested_improvements")),
        mentalist_success=mentalist_success,
        analyzed_by=AnalyzedBy.EXTERNAL,
    )


class ConversationAnalyzer:
    """Judges a finished transcript via a structured-output LLM, falling back to a lexicon heuristic."""

    def __init__(
        self,
        llm: _JsonChatBackend | Any | None,
        *,
        enabled: bool = True,
        timeout_seconds: float = 45.0,
        temperature: float = 0.3,
        model: str | None = None,
    ) -> None:
        self.llm = llm
        self.enabled = enabled and llm is not None
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.temperature = temperature
        self.model = model

    @property
    def backend_name(self) -> str:
        if self.llm is None:
            return "none"
        raw = str(getattr(self.llm, "backend_name", "") or "").strip().lower()
        return raw or "llm"

    @property
    def model_name(self) -> str:
        if self.model:
            return self.model
        return str(getattr(self.llm, "model", "") or "").strip()

    def _messages(self, transcript: Sequence[TurnRecord]) -> list[dict[str, str]]:
        conversation = format_transcript_lines((turn.role, turn.content) for turn in transcript)
        return [
            {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": build_analysis_user_prompt(conversation)},
        ]

    async def _fetch_payload(self, transcript: Sequence[TurnRecord]) -> Any:
        kwargs: dict[str, Any] = {
            "schema_hint": ANALYSIS_SCHEMA_HINT,
            "temperature": self.temperature,
            "max_output_tokens": 900,
        }
        if self.model:
            kwargs["model"] = self.model
        try:
            return await asyncio.wait_for(
                self.llm.json_chat(self._messages(transcript), **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise AnalysisUnavailable(f"analysis timed out after {self.timeout_seconds:.0f}s") from exc
        except Exception as exc:
            raise AnalysisUnavailable(f"analysis call failed: {exc}") from exc

    async def analyze(self, transcript: Sequence[TurnRecord]) -> ConversationAnalysis:
        started = time.perf_counter()
        if not self.enabled or not transcript:
            analysis = heuristic_analysis(transcript)
            analysis.diagnostics = AnalysisDiagnostics(
                backend_name=self.backend_name,
                model_name=self.model_name,
                latency_ms=0,
                llm_attempted=False,
                llm_ok=False,
                json_valid=False,
                fallback_used=True,
            )
            return analysis

        llm_ok = False
        try:
            payload = await self._fetch_payload(transcript)
            llm_ok = True
            analysis = parse_analysis_payload(payload)
        except AnalysisUnavailable as exc:
            diagnostics = AnalysisDiagnostics(
                backend_name=self.backend_name,
                model_name=self.model_name,
                latency_ms=max(0, int((time.perf_counter() - started) * 1000)),
                llm_attempted=True,
                llm_ok=llm_ok,
                json_valid=isinstance(payload, dict) if llm_ok else False,
                fallback_used=True,
                error=str(exc)[:220],
            )
            logger.warning(
                "Conversation analysis fell back to heuristic (backend=%s model=%s latency_ms=%s): %s",
                diagnostics.backend_name,
                diagnostics.model_name,
                diagnostics.latency_ms,
                diagnostics.error,
            )
            analysis = heuristic_analysis(transcript)
            analysis.diagnostics = diagnostics
            return analysis

        analysis.diagnostics = AnalysisDiagnostics(
            backend_name=self.backend_name,
            model_name=self.model_name,
            latency_ms=max(0, int((time.perf_counter() - started) * 1000)),
            llm_attempted=True,
            llm_ok=True,
            json_valid=True,
            fallback_used=False,
        )
        return analysis
