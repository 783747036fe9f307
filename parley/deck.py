"""Spaced-repetition flashcard deck (SM-2 style) kept in the KV store."""

import time
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field

from parley.logging import get_logger
from parley.store import MessageStore

log = get_logger(__name__)

Grade = Literal["again", "good", "easy"]

DAY_SECONDS = 24 * 60 * 60
DEFAULT_EASE = 2.5
MIN_EASE = 1.3
MAX_DUE = 40

# Coarse grades mapped onto SM-2 quality scores.
_QUALITY: dict[str, int] = {"again": 2, "good": 4, "easy": 5}


class DeckCard(BaseModel):
    id: str
    front: str
    back: str
    hint: str | None = None
    topic: str | None = None
    skill: str | None = None
    ease: float = DEFAULT_EASE
    interval: int = 0  # days
    due_at: float
    created_at: float
    last_reviewed_at: float | None = None
    lapses: int = 0


class TutorDeck(BaseModel):
    chat_id: str
    updated_at: float
    cards: list[DeckCard] = Field(default_factory=list)


def _deck_key(chat_id: str) -> str:
    return f"tutor-deck:{chat_id}"


class DeckService:
    """Load, extend and schedule a chat's deck."""

    def __init__(self, store: MessageStore):
        self.store = store

    async def load(self, chat_id: str) -> TutorDeck | None:
        raw = await self.store.kv_get(_deck_key(chat_id))
        if not isinstance(raw, dict):
            return None
        return TutorDeck.model_validate(raw)

    async def _save(self, deck: TutorDeck) -> None:
        await self.store.kv_set(_deck_key(deck.chat_id), deck.model_dump())

    async def add_cards(
        self,
        chat_id: str,
        cards: list[dict[str, Any]],
        now: float | None = None,
    ) -> TutorDeck:
        """Add cards, skipping incomplete ones and exact front/back duplicates.

        New cards are due immediately.
        """
        now = time.time() if now is None else now
        deck = await self.load(chat_id) or TutorDeck(chat_id=chat_id, updated_at=now)
        existing = {(card.front, card.back) for card in deck.cards}
        added = 0
        for raw in cards:
            if not isinstance(raw, dict):
                continue
            front = str(raw.get("front") or "").strip()
            back = str(raw.get("back") or "").strip()
            if not front or not back or (front, back) in existing:
                continue
            existing.add((front, back))
            deck.cards.append(
                DeckCard(
                    id=str(raw.get("id") or uuid.uuid4()),
                    front=front,
                    back=back,
                    hint=raw.get("hint"),
                    topic=raw.get("topic"),
                    skill=raw.get("skill"),
                    due_at=now,
                    created_at=now,
                )
            )
            added += 1
        deck.updated_at = now
        await self._save(deck)
        log.debug("Deck updated", chat_id=chat_id, added=added, total=len(deck.cards))
        return deck

    async def due_cards(self, chat_id: str, limit: int = 20, now: float | None = None) -> list[DeckCard]:
        """Cards due at ``now``, oldest first, at most ``limit`` (clamped to [1, 40])."""
        deck = await self.load(chat_id)
        if deck is None:
            return []
        now = time.time() if now is None else now
        due = [card for card in deck.cards if card.due_at <= now]
        due.sort(key=lambda card: (card.due_at, card.created_at))
        return due[: max(1, min(MAX_DUE, int(limit)))]

    async def record_review(
        self,
        chat_id: str,
        card_id: str,
        grade: Grade = "good",
        now: float | None = None,
    ) -> DeckCard | None:
        """Reschedule a card after review. Returns the updated card, or None if unknown."""
        deck = await self.load(chat_id)
        if deck is None:
            return None
        card = next((c for c in deck.cards if c.id == card_id), None)
        if card is None:
            return None

        now = time.time() if now is None else now
        quality = _QUALITY.get(grade, _QUALITY["good"])
        card.ease = max(MIN_EASE, card.ease + (0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02)))
        if quality < 3:
            card.interval = 0
            card.lapses += 1
        elif card.interval == 0:
            card.interval = 1
        elif card.interval == 1:
            card.interval = 6
        else:
            card.interval = round(card.interval * card.ease)
        card.last_reviewed_at = now
        card.due_at = now + card.interval * DAY_SECONDS
        deck.updated_at = now
        await self._save(deck)
        return card
