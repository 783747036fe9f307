import pytest

from parley.deck import DAY_SECONDS, DeckService
from parley.store import InMemoryStore


@pytest.mark.asyncio
async def test_add_cards_dedupes_and_skips_incomplete():
    service = DeckService(InMemoryStore())

    await service.add_cards("c1", [{"front": "a", "back": "1"}, {"front": "b"}], now=100.0)
    deck = await service.add_cards("c1", [{"front": "a", "back": "1"}, {"front": "c", "back": "3"}], now=200.0)

    assert [card.front for card in deck.cards] == ["a", "c"]
    assert deck.cards[0].due_at == 100.0
    assert deck.updated_at == 200.0


@pytest.mark.asyncio
async def test_due_cards_sorted_and_limited():
    service = DeckService(InMemoryStore())
    await service.add_cards("c1", [{"front": "late", "back": "x"}], now=300.0)
    await service.add_cards("c1", [{"front": "early", "back": "y"}], now=100.0)

    due = await service.due_cards("c1", limit=10, now=250.0)
    assert [card.front for card in due] == ["early"]

    due = await service.due_cards("c1", limit=0, now=1000.0)
    assert [card.front for card in due] == ["early"]
    assert await service.due_cards("missing") == []


@pytest.mark.asyncio
async def test_review_schedule_follows_sm2_steps():
    service = DeckService(InMemoryStore())
    deck = await service.add_cards("c1", [{"id": "card", "front": "f", "back": "b"}], now=0.0)
    assert deck.cards[0].id == "card"

    card = await service.record_review("c1", "card", "good", now=0.0)
    assert card.interval == 1
    assert card.ease == pytest.approx(2.5)
    assert card.due_at == DAY_SECONDS

    card = await service.record_review("c1", "card", "good", now=10.0)
    assert card.interval == 6

    card = await service.record_review("c1", "card", "easy", now=20.0)
    assert card.ease == pytest.approx(2.6)
    assert card.interval == round(6 * 2.6)

    card = await service.record_review("c1", "card", "again", now=30.0)
    assert card.interval == 0
    assert card.lapses == 1
    assert card.ease == pytest.approx(2.28)
    assert card.due_at == 30.0

    persisted = await service.load("c1")
    assert persisted.cards[0].lapses == 1
    assert await service.record_review("c1", "unknown", "good") is None
