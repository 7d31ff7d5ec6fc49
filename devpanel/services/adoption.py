"""AI adoption signal detection and scoring"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

MAX_EXAMPLES = 5
README_EXAMPLE_CHARS = 200


@dataclass(frozen=True, slots=True)
class SignalPattern:
    signal_type: str
    regex: re.Pattern[str]
    weight: float


AI_TEXT_PATTERNS: tuple[SignalPattern, ...] = (
    SignalPattern("copilot_coauthored", re.compile(r"co-authored-by:\s*github copilot", re.IGNORECASE), 3.0),
    SignalPattern("copilot_mention", re.compile(r"\b(github\s+copilot|copilot)\b", re.IGNORECASE), 2.0),
    SignalPattern("chatgpt_mention", re.compile(r"\b(chatgpt|gpt-?4|gpt-?5|openai)\b", re.IGNORECASE), 1.5),
    SignalPattern("claude_mention", re.compile(r"\b(claude|anthropic)\b", re.IGNORECASE), 1.5),
    SignalPattern("gemini_mention", re.compile(r"\b(gemini)\b", re.IGNORECASE), 1.2),
    SignalPattern("cursor_mention", re.compile(r"\b(cursor)\b", re.IGNORECASE), 1.2),
)

# Matched against newline-joined file paths, one path per line.
AI_CONFIG_PATTERNS: tuple[SignalPattern, ...] = (
    SignalPattern(
        "ai_config_file",
        re.compile(
            r"(^|/)(\.cursorrules|\.cursor|copilot\.ya?ml|copilot-instructions\.md|ai\.md|ai-instructions\.md"
            r"|\.github/copilot\.ya?ml|\.github/copilot-instructions\.md|\.github/ai\.ya?ml)$",
            re.IGNORECASE | re.MULTILINE,
        ),
        2.0,
    ),
)

_WEIGHTS = {pattern.signal_type: pattern.weight for pattern in AI_TEXT_PATTERNS + AI_CONFIG_PATTERNS}


@dataclass(frozen=True, slots=True)
class SignalMatch:
    pattern: SignalPattern
    count: int


def extract_matches(text: str, patterns: Sequence[SignalPattern] = AI_TEXT_PATTERNS) -> list[SignalMatch]:
    """Count non-overlapping matches of every pattern that occurs in ``text``."""
    matches: list[SignalMatch] = []
    for pattern in patterns:
        count = sum(1 for _ in pattern.regex.finditer(text))
        if count:
            matches.append(SignalMatch(pattern=pattern, count=count))
    return matches


def merge_examples(existing: Optional[Sequence[str]], new: Optional[Sequence[str]]) -> Optional[list[str]]:
    """Union preserving first-seen order, capped at five entries."""
    if new is None:
        return list(existing) if existing is not None else None
    merged: list[str] = []
    for example in list(existing or []) + list(new):
        if example not in merged:
            merged.append(example)
    return merged[:MAX_EXAMPLES]


def signal_weight(signal_type: str) -> float:
    return _WEIGHTS.get(signal_type, 1.0)


def compute_adoption_score(signals: Iterable[tuple[str, int]]) -> float:
    """
    Sum of ``weight * min(1, log10(occurrences + 1))`` over (signal_type, occurrences).

    Each signal saturates at nine occurrences so one noisy source cannot
    dominate the score.
    """
    score = 0.0
    for signal_type, occurrences in signals:
        score += signal_weight(signal_type) * min(1.0, math.log10(max(occurrences, 0) + 1))
    return score
