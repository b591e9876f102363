"""Heuristic question detection for top-level chat messages."""

from __future__ import annotations

import re

QUESTION_STARTERS: tuple[str, ...] = (
    "how do",
    "how can",
    "how to",
    "how does",
    "how would",
    "what is",
    "what are",
    "what does",
    "what's",
    "where is",
    "where can",
    "where do",
    "when should",
    "when does",
    "when can",
    "why does",
    "why is",
    "why can't",
    "who can",
    "who should",
    "who knows",
    "which",
    "is there",
    "are there",
)

HELP_PHRASES: tuple[str, ...] = (
    "does anyone know",
    "can someone",
    "anyone know",
    "could someone",
    "help with",
    "need help",
)

_TICKET_PATTERNS = (
    re.compile(r"#(\d{4,})"),
    re.compile(r"ticket[:\s]+(\d{4,})", re.IGNORECASE),
    re.compile(r"zendesk\.com/agent/tickets/(\d+)", re.IGNORECASE),
)


class QuestionDetector:
    """Decides whether a message reads like a question.

    A message qualifies when it is long enough and either ends with a
    question mark, opens with an interrogative phrase, or asks for help.

    Example:
        detector = QuestionDetector()
        detector.is_question("How do I rotate the API key?")  # True
    """

    def __init__(
        self,
        min_length: int = 10,
        starters: tuple[str, ...] = QUESTION_STARTERS,
        help_phrases: tuple[str, ...] = HELP_PHRASES,
    ) -> None:
        self._min_length = min_length
        self._starters = starters
        self._help_phrases = help_phrases

    def is_question(self, text: str) -> bool:
        normalized = text.lower().strip()

        if len(normalized) < self._min_length:
            return False

        if normalized.endswith("?"):
            return True

        if normalized.startswith(self._starters):
            return True

        return any(phrase in normalized for phrase in self._help_phrases)


def extract_ticket_id(text: str) -> str | None:
    """Pull a support ticket number out of a side-conversation message."""
    for pattern in _TICKET_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None
