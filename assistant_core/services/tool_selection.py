"""
Keyword-triggered tool-set selection.

A message exposes the full tool catalog only when it mentions something from
the trigger vocabulary; otherwise the model gets the small essential subset.
Matching is whole-word and case-insensitive, so "airport" does not trigger
on "ai" and "GitHub" triggers on "github".
"""

import re
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

# Word characters; apostrophes stay inside a word (what's), other punctuation splits
_TOKEN_PATTERN = re.compile(r"[a-z0-9_#+]+(?:'[a-z0-9]+)*")


class ToolMode(str, Enum):
    FULL = "full"
    ESSENTIAL = "essential"


def tokenize(text: str) -> List[str]:
    """Split text into lowercase tokens on whitespace and punctuation."""
    return _TOKEN_PATTERN.findall(text.lower())


class TriggerMatcher:
    """
    Whole-word matcher over a configurable vocabulary.

    Multi-word entries ("latest release") match as consecutive tokens.
    """

    def __init__(self, vocabulary: Iterable[str]):
        phrases = set()
        for entry in vocabulary:
            tokens = tuple(tokenize(entry))
            if tokens:
                phrases.add(tokens)
        self.phrases = phrases
        self.max_phrase_length = max((len(p) for p in phrases), default=0)

    def find(self, text: str) -> Optional[str]:
        """Return the first trigger found in text, or None."""
        tokens = tokenize(text)
        for start in range(len(tokens)):
            for length in range(1, self.max_phrase_length + 1):
                candidate = tuple(tokens[start:start + length])
                if len(candidate) < length:
                    break
                if candidate in self.phrases:
                    return " ".join(candidate)
        return None

    def matches(self, text: str) -> bool:
        return self.find(text) is not None


def select_mode(matcher: TriggerMatcher, message: str) -> Tuple[ToolMode, Optional[str]]:
    trigger = matcher.find(message)
    return (ToolMode.FULL if trigger else ToolMode.ESSENTIAL), trigger


def is_essential(tool_key: str, provider: str, essential: Sequence[str]) -> bool:
    """True when a tool is named in the essential list, bare or prefixed."""
    key = tool_key.lower()
    if key in essential:
        return True
    prefix = f"{provider.lower()}_"
    return key.startswith(prefix) and key[len(prefix):] in essential
