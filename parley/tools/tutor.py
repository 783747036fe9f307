"""Tutoring tools: practice items, grading feedback and the review deck.

The model writes the practice content itself and passes it as arguments. The
tools normalize it and merge it into the message's ``tutor`` UI state, where
the host application renders it.
"""

import uuid
from typing import Any

from parley.config import get_config
from parley.deck import DeckService
from parley.exceptions import ToolExecutionError
from parley.logging import get_logger
from parley.state import TUTOR_SECTION
from parley.tools.registry import Tool, ToolContext, ToolResult

log = get_logger(__name__)

_DIFFICULTY = {"type": "string", "enum": ["easy", "medium", "hard"]}


def _item_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "items": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        **properties,
                        "topic": {"type": "string"},
                        "skill": {"type": "string"},
                        "difficulty": _DIFFICULTY,
                    },
                    "required": required,
                },
            },
        },
        "required": ["items"],
    }


def normalize_items(raw_items: Any, max_items: int) -> list[dict[str, Any]]:
    """Keep dict items (at most ``max_items``) and give each a usable id."""
    if not isinstance(raw_items, list):
        return []
    normalized: list[dict[str, Any]] = []
    for item in raw_items[:max_items]:
        if not isinstance(item, dict):
            continue
        raw_id = item.get("id")
        trimmed = raw_id.strip() if isinstance(raw_id, str) else ""
        item_id = trimmed if trimmed and trimmed not in {"null", "undefined"} else str(uuid.uuid4())
        normalized.append({**item, "id": item_id})
    return normalized


class _PracticeTool(Tool):
    """Attach interactive practice items to the assistant message."""

    content_terminal = True
    section_key = ""

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        items = normalize_items(args.get("items"), get_config().tutor.max_items)
        if not items:
            return ToolResult(ok=False, error="No items supplied")

        state = context.state
        previous = state.get_message_state(TUTOR_SECTION, context.assistant_message_id).get(self.section_key) or {}
        merged_items = [*(previous.get("items") or []), *items]
        entry: dict[str, Any] = {"items": merged_items}
        title = args.get("title") or previous.get("title")
        if title:
            entry["title"] = title
        if self.section_key == "flashcards" and "shuffle" in args:
            entry["shuffle"] = bool(args.get("shuffle"))
        state.merge_message_state(TUTOR_SECTION, context.assistant_message_id, {self.section_key: entry})

        log.info("Practice items attached", tool=self.name, count=len(items))
        return ToolResult(
            ok=True,
            payload={"rendered": self.section_key, "count": len(items), "ids": [i["id"] for i in items]},
        )


class QuizMCQTool(_PracticeTool):
    name = "quiz_mcq"
    description = "Render multiple-choice questions as interactive widgets. Provide fully-formed items."
    section_key = "mcq"
    parameters = _item_schema(
        {
            "question": {"type": "string"},
            "choices": {"type": "array", "minItems": 2, "maxItems": 6, "items": {"type": "string"}},
            "correct": {"type": "integer", "minimum": 0, "maximum": 5},
            "explanation": {"type": "string"},
        },
        ["question", "choices", "correct"],
    )


class QuizFillBlankTool(_PracticeTool):
    name = "quiz_fill_blank"
    description = "Render fill-in-the-blank prompts. Supply the accepted answer(s) to check correctness."
    section_key = "fill_blank"
    parameters = _item_schema(
        {
            "prompt": {"type": "string"},
            "answer": {"type": "string"},
            "aliases": {"type": "array", "items": {"type": "string"}},
            "explanation": {"type": "string"},
        },
        ["prompt", "answer"],
    )


class QuizOpenEndedTool(_PracticeTool):
    name = "quiz_open_ended"
    description = "Render short free-response prompts with optional sample answers or rubrics."
    section_key = "open_ended"
    parameters = _item_schema(
        {
            "prompt": {"type": "string"},
            "sample_answer": {"type": "string"},
            "rubric": {"type": "string"},
        },
        ["prompt"],
    )


class FlashcardsTool(_PracticeTool):
    name = "flashcards"
    description = "Render flashcards for quick review (front/back)."
    section_key = "flashcards"
    parameters = _item_schema(
        {
            "front": {"type": "string"},
            "back": {"type": "string"},
            "hint": {"type": "string"},
        },
        ["front", "back"],
    )
    parameters["properties"]["shuffle"] = {"type": "boolean"}


class GradeOpenResponseTool(Tool):
    """Attach feedback for a learner's free-response answer."""

    name = "grade_open_response"
    description = "Return feedback for a free-response answer."
    parameters = {
        "type": "object",
        "properties": {
            "item_id": {"type": "string"},
            "feedback": {"type": "string"},
            "score": {"type": "number"},
            "criteria": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["item_id", "feedback"],
    }
    content_terminal = True

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        item_id = str(args.get("item_id") or "").strip()
        feedback = str(args.get("feedback") or "").strip()
        if not item_id or not feedback:
            return ToolResult(ok=False, error="item_id and feedback are required")

        grade: dict[str, Any] = {"feedback": feedback}
        if isinstance(args.get("score"), (int, float)) and not isinstance(args.get("score"), bool):
            grade["score"] = args["score"]
        if isinstance(args.get("criteria"), list):
            grade["criteria"] = [str(c) for c in args["criteria"]]

        state = context.state
        previous = state.get_message_state(TUTOR_SECTION, context.assistant_message_id).get("grading") or {}
        state.merge_message_state(
            TUTOR_SECTION,
            context.assistant_message_id,
            {"grading": {**previous, item_id: grade}},
        )
        return ToolResult(ok=True, payload={"graded": item_id})


class AddToDeckTool(Tool):
    """Save cards to the chat's spaced-repetition deck."""

    name = "add_to_deck"
    description = "Save flashcards to the learner's spaced-repetition deck."
    parameters = {
        "type": "object",
        "properties": {
            "cards": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "front": {"type": "string"},
                        "back": {"type": "string"},
                        "hint": {"type": "string"},
                        "topic": {"type": "string"},
                        "skill": {"type": "string"},
                    },
                    "required": ["front", "back"],
                },
            },
        },
        "required": ["cards"],
    }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        if context.store is None:
            raise ToolExecutionError(self.name, "No deck store available")
        cards = args.get("cards") if isinstance(args.get("cards"), list) else []
        deck_service = DeckService(context.store)
        before = await deck_service.load(context.chat_id)
        deck = await deck_service.add_cards(context.chat_id, cards)
        added = len(deck.cards) - (len(before.cards) if before else 0)
        return ToolResult(ok=True, payload={"added": added, "total": len(deck.cards)})


class SrsReviewTool(Tool):
    """Return the cards that are due for review."""

    name = "srs_review"
    description = (
        "Request due cards from the learner's deck. The tool returns an array of cards "
        "as JSON in tool output; then call flashcards with those items."
    )
    parameters = {
        "type": "object",
        "properties": {"due_count": {"type": "integer"}},
    }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        if context.store is None:
            raise ToolExecutionError(self.name, "No deck store available")
        limit = args.get("due_count")
        if not isinstance(limit, int) or isinstance(limit, bool):
            limit = get_config().tutor.deck_review_limit
        due = await DeckService(context.store).due_cards(context.chat_id, limit=limit)
        return ToolResult(
            ok=True,
            payload=[
                {"id": card.id, "front": card.front, "back": card.back, "hint": card.hint}
                for card in due
            ],
        )


TUTOR_TOOLS: tuple[type[Tool], ...] = (
    QuizMCQTool,
    QuizFillBlankTool,
    QuizOpenEndedTool,
    FlashcardsTool,
    GradeOpenResponseTool,
    AddToDeckTool,
    SrsReviewTool,
)

TUTOR_TOOL_NAMES: tuple[str, ...] = tuple(tool.name for tool in TUTOR_TOOLS)
