from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from ..models import Outcome

NEW_USER_SENTINEL = (
    "## NEW USER\nThis is your first interaction with this person. Make a great first impression!"
)
FAVORITE_TOPIC_LIMIT = 3
MEMORABLE_LIMIT = 3
_SECONDS_PER_DAY = 86400


@dataclass(slots=True)
class MemorableExperience:
    date: datetime
    summary: str
    what_worked: str
    reaction: str


@dataclass(slots=True)
class UserHistory:
    total_conversations: int = 0
    last_interaction: Optional[datetime] = None
    recent_topics: List[str] = field(default_factory=list)
    favorite_topics: List[str] = field(default_factory=list)
    sentiment_trend: float = 0.0
    memorable_experiences: List[MemorableExperience] = field(default_factory=list)


@dataclass(slots=True)
class UserStats:
    total_sessions: int
    average_rating: float
    last_seen: str
    returning_user: bool


def sentiment_to_text(sentiment: float) -> str:
    if sentiment >= 0.7:
        return "Very positive - they love your performances!"
    if sentiment >= 0.3:
        return "Positive - engaged and interested"
    if sentiment >= -0.3:
        return "Neutral - curious but reserved"
    if sentiment >= -0.7:
        return "Skeptical - needs convincing"
    return "Very skeptical - work to win them over"


def days_since(moment: datetime, now: float | None = None) -> int:
    reference = time.time() if now is None else float(now)
    return max(0, int((reference - moment.timestamp()) // _SECONDS_PER_DAY))


def _is_memorable(outcome: Outcome) -> bool:
    return outcome.reaction == "amazed" or bool(outcome.lesson_learned.strip())


class UserMemoryService:
    """Relationship memory for one (user, persona) pair, mined from that pair's outcomes."""

    def __init__(self, store: Any, *, limit: int = 5) -> None:
        self.store = store
        self.limit = max(1, int(limit))

    async def get_user_history(self, user_id: str, persona_id: str, limit: int | None = None) -> UserHistory:
        window = self.limit if limit is None else max(1, int(limit))
        total = await self.store.count_user_outcomes(user_id, persona_id)
        if total == 0:
            return UserHistory()

        recent: List[Outcome] = await self.store.list_user_outcomes(user_id, persona_id, window)
        if not recent:
            return UserHistory(total_conversations=total)

        recent_topics: List[str] = []
        for outcome in recent:
            if outcome.technique_used not in recent_topics:
                recent_topics.append(outcome.technique_used)

        favorites = await self.store.list_user_technique_counts(user_id, persona_id, FAVORITE_TOPIC_LIMIT)
        return UserHistory(
            total_conversations=total,
            last_interaction=recent[0].created_at,
            recent_topics=recent_topics[:FAVORITE_TOPIC_LIMIT],
            favorite_topics=[technique for technique, _ in favorites],
            sentiment_trend=sum(outcome.sentiment for outcome in recent) / len(recent),
            memorable_experiences=[
                MemorableExperience(
                    date=outcome.created_at,
                    summary=outcome.conversation_summary,
                    what_worked=outcome.what_worked,
                    reaction=outcome.reaction,
                )
                for outcome in recent
                if _is_memorable(outcome)
            ],
        )

    async def generate_memory_summary(
        self,
        user_id: str,
        persona_id: str,
        limit: int | None = None,
        *,
        now: float | None = None,
    ) -> str:
        history = await self.get_user_history(user_id, persona_id, limit)
        if history.total_conversations == 0:
            return NEW_USER_SENTINEL

        last_days = days_since(history.last_interaction, now) if history.last_interaction else 0
        lines = [
            "## REMEMBER THIS USER",
            "",
            f"**Total conversations:** {history.total_conversations}",
            f"**Last interaction:** {'Today' if last_days == 0 else f'{last_days} days ago'}",
        ]
        if history.favorite_topics:
            lines.append(f"**Their favorite topics:** {', '.join(history.favorite_topics)}")
        lines.append(f"**Overall sentiment:** {sentiment_to_text(history.sentiment_trend)}")

        if history.memorable_experiences:
            lines += ["", "### Memorable Moments Together:"]
            for index, moment in enumerate(history.memorable_experiences[:MEMORABLE_LIMIT], start=1):
                ago = days_since(moment.date, now)
                label = "Earlier today" if ago == 0 else f"{ago} days ago"
                worked = moment.what_worked or "Shared a good moment"
                lines.append(f"{index}. **{label}:** {worked} ({moment.reaction})")

        lines += ["", '**IMPORTANT:** Reference past interactions naturally. They\'ll be amazed you "remember" them!']
        return "\n".join(lines)

    async def is_returning_user(self, user_id: str, persona_id: str) -> bool:
        return await self.store.count_user_outcomes(user_id, persona_id) > 0

    async def get_user_stats(self, user_id: str, persona_id: str) -> UserStats:
        history = await self.get_user_history(user_id, persona_id)
        if history.total_conversations == 0:
            return UserStats(total_sessions=0, average_rating=0.0, last_seen="Never", returning_user=False)
        # Sentiment in [-1, 1] maps linearly onto a 0-5 rating.
        rating = max(0.0, min(5.0, (history.sentiment_trend + 1.0) / 2.0 * 5.0))
        return UserStats(
            total_sessions=history.total_conversations,
            average_rating=rating,
            last_seen=history.last_interaction.isoformat() if history.last_interaction else "Never",
            returning_user=True,
        )
