"""Token counting strategies for batch sizing."""

from __future__ import annotations

import logging
import math
from typing import Protocol

import tiktoken

logger = logging.getLogger(__name__)

# Conservative characters-per-token ratio when no tokenizer is available.
FALLBACK_CHARS_PER_TOKEN = 4.0


class TokenCounter(Protocol):
    """Counts tokens in a text."""

    def count_tokens(self, text: str) -> int:
        """Return a token count >= 0."""


class CharacterTokenCounter:
    """Character-based estimate: `ceil(len(text) / 4)`."""

    def count_tokens(self, text: str) -> int:
        return math.ceil(len(text) / FALLBACK_CHARS_PER_TOKEN)


class TiktokenCounter:
    """Precise token counts from a tiktoken encoding."""

    def __init__(self, encoding: tiktoken.Encoding) -> None:
        self._encoding = encoding

    @classmethod
    def for_model(cls, model: str) -> "TiktokenCounter":
        return cls(tiktoken.encoding_for_model(model))

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text))


def load_token_counter(model: str) -> TiktokenCounter | None:
    """Return a tiktoken counter for `model`, or `None` when it is unknown."""
    try:
        return TiktokenCounter.for_model(model)
    except (KeyError, OSError) as exc:
        logger.warning(
            "Could not load tokenizer for model %s, using character-based estimation: %s",
            model,
            exc,
        )
        return None
