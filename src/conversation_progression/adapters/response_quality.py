# conversation_progression/adapters/response_quality.py
from __future__ import annotations

import re
from typing import Optional

from conversation_progression.contracts import ResponseQuality, StepId

_WORD = re.compile(r"[a-zA-Z0-9']+")

# minimum characters before an answer counts as substantial, per step
MIN_CHARS: dict[StepId, int] = {
    StepId.THEME: 10,
    StepId.DRIVING_QUESTION: 10,
    StepId.CHALLENGE: 15,
}
DEFAULT_MIN_CHARS = 10

LOW_SIGNAL_PHRASES = {"not sure", "don't know", "dont know", "idk", "no idea", "whatever", "anything", "help"}
QUESTION_OPENERS = ("how", "why", "what", "when", "where", "who", "which", "should", "can", "could", "would", "is", "are", "do", "does")


def norm_tokens(text: str) -> list[str]:
    return [m.group(0).lower() for m in _WORD.finditer(text or "")]


def normalize_text(s: str) -> str:
    return (s or "").strip().replace("’", "'").lower()


def _is_question(t: str, tokens: list[str]) -> bool:
    return t.endswith("?") or bool(tokens and tokens[0] in QUESTION_OPENERS)


def classify_response_quality(text: Optional[str], step: Optional[StepId] = None) -> ResponseQuality:
    """
    Heuristic quality score for a free-text answer to `step`.

    Low: empty, low-signal or shorter than the step's minimum. Medium: usable
    but thin (few words, or a driving question not phrased as a question).
    High: everything else.
    """
    t = normalize_text(text or "")
    tokens = norm_tokens(t)
    if not tokens or t in LOW_SIGNAL_PHRASES or any(t.startswith(p + " ") for p in LOW_SIGNAL_PHRASES):
        return ResponseQuality.LOW

    min_chars = MIN_CHARS.get(step, DEFAULT_MIN_CHARS) if step is not None else DEFAULT_MIN_CHARS
    if len(t) < min_chars:
        return ResponseQuality.LOW

    if step == StepId.DRIVING_QUESTION and not _is_question(t, tokens):
        return ResponseQuality.MEDIUM
    if len(tokens) < 4:
        return ResponseQuality.MEDIUM
    return ResponseQuality.HIGH
