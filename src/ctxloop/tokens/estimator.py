"""Heuristic token estimation with caching for immutable content."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ctxloop.models.message import Message

# CJK ideographs, kana, hangul, and full-width forms. Each counts as a whole token.
_WIDE_CHARS = re.compile(
    "["
    "\u3040-\u30ff"  # hiragana, katakana
    "\u3400-\u4dbf"  # CJK extension A
    "\u4e00-\u9fff"  # CJK unified ideographs
    "\uac00-\ud7af"  # hangul syllables
    "\uf900-\ufaff"  # CJK compatibility ideographs
    "\uff00-\uffef"  # half-width and full-width forms
    "]"
)

WIDE_CHAR_WEIGHT = 1.0
OTHER_CHAR_WEIGHT = 0.25
MESSAGE_OVERHEAD_TOKENS = 4
"""Per-message cost of role, separators, and framing."""


class TokenEstimator:
    """
    Fast approximate token counting for budget decisions.

    This is not a tokenizer. Wide (CJK) characters count as one token each and
    every other character as a quarter token, rounded up. That is close enough
    to decide when to compact; the provider's reported usage remains the
    authoritative number whenever it is available.

    Caching:
    - Token counts are cached by key for immutable content (summary messages).
      Use ``estimate_cached()`` for this.
    """

    def __init__(self) -> None:
        self._count_cache: dict[str, int] = {}

    def estimate(self, text: str) -> int:
        """
        Estimate the token count for a string.

        Args:
            text: The text to estimate.

        Returns:
            Estimated token count. ``0`` for empty text, ``>= 1`` otherwise.
            Never decreases when characters are appended.
        """
        if not text:
            return 0
        wide = len(_WIDE_CHARS.findall(text))
        other = len(text) - wide
        return math.ceil(wide * WIDE_CHAR_WEIGHT + other * OTHER_CHAR_WEIGHT)

    def estimate_cached(self, text: str, cache_key: str) -> int:
        """
        Estimate with caching, keyed by ``cache_key``.

        Args:
            text: The text to estimate.
            cache_key: A stable identifier for this content (e.g. a message id).

        Returns:
            Estimated token count from cache or fresh computation.
        """
        if cache_key in self._count_cache:
            return self._count_cache[cache_key]
        count = self.estimate(text)
        self._count_cache[cache_key] = count
        return count

    def estimate_message(self, msg: Message) -> int:
        """
        Estimate total tokens for one message, including its tool calls.

        Args:
            msg: The message to estimate.

        Returns:
            Content tokens + tool call names and arguments + fixed overhead.
        """
        if msg.is_summary:
            total = self.estimate_cached(msg.content, msg.id)
        else:
            total = self.estimate(msg.content)
        for call in msg.tool_calls:
            total += self.estimate(call.name) + self.estimate(call.arguments)
        return total + MESSAGE_OVERHEAD_TOKENS

    def estimate_total(self, messages: Iterable[Message]) -> int:
        """Sum of ``estimate_message`` over ``messages``."""
        return sum(self.estimate_message(m) for m in messages)
