# conversation_progression/adapters/response_normalizer.py
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import BaseModel

from conversation_progression.catalog import DEFAULT_CATALOG, StageCatalog
from conversation_progression.contracts import (
    ConversationTurn,
    ExtractedData,
    InteractionKind,
    StageId,
    StepId,
)
from conversation_progression.invariants import InvariantId, default_check_context, run_checkers

logger = logging.getLogger(__name__)

# Field names seen from the generation service, probed in order.
CONTENT_ALIASES: tuple[str, ...] = (
    "chatResponse",
    "chat_response",
    "response",
    "message",
    "text",
    "content",
    "reply",
    "answer",
    "output",
)
NESTED_CONTAINERS: tuple[str, ...] = ("data", "result", "payload")
KIND_ALIASES: tuple[str, ...] = ("interactionType", "interaction_type", "interactionKind", "interaction_kind", "kind")
SUGGESTION_ALIASES: tuple[str, ...] = ("suggestions",)
COMPLETE_FLAG_ALIASES: tuple[str, ...] = ("stepComplete", "step_complete", "isStageComplete", "isStepComplete")
EXTRACTED_ALIASES: tuple[str, ...] = ("extractedData", "extracted_data", "dataToStore", "ideationProgress")

GENERIC_CONTINUATION = "I'm here to help you design an amazing learning experience! What would you like to work on together?"

MAX_SUGGESTIONS = 4
MIN_QUOTED_CHARS = 10
MAX_QUOTED_CHARS = 100

_KIND_LOOKUP: dict[str, InteractionKind] = {kind.value.lower(): kind for kind in InteractionKind}
_KIND_LOOKUP.update({kind.name.lower(): kind for kind in InteractionKind})
_KIND_LOOKUP["conversationalideation"] = InteractionKind.CONVERSATIONAL_FOUNDATION

LEXICAL_KIND_CUES: tuple[tuple[str, InteractionKind], ...] = (
    ("welcome", InteractionKind.WELCOME),
    ("framework", InteractionKind.FRAMEWORK),
    ("guide", InteractionKind.GUIDE),
)

_FIELD_LABELS: dict[str, str] = {
    "theme": "theme",
    "big idea": "theme",
    "driving question": "driving_question",
    "essential question": "driving_question",
    "task": "challenge",
    "challenge": "challenge",
}
_EXPLICIT_FIELD_KEYS: dict[str, str] = {
    "theme": "theme",
    "bigIdea": "theme",
    "big_idea": "theme",
    "driving_question": "driving_question",
    "drivingQuestion": "driving_question",
    "essentialQuestion": "driving_question",
    "essential_question": "driving_question",
    "challenge": "challenge",
    "task": "challenge",
}

_LABEL_ALTERNATION = "|".join(re.escape(label) for label in sorted(_FIELD_LABELS, key=len, reverse=True))
_LABEL_VALUE = re.compile(
    rf"(?<![\w])(?P<label>{_LABEL_ALTERNATION})\**\s*:\s*(?P<value>[^\n]+)",
    re.IGNORECASE,
)
_LABEL_PREFIX = re.compile(rf"^\**\s*(?:{_LABEL_ALTERNATION})\s*\**\s*:", re.IGNORECASE)
_WHAT_IF = re.compile(r"\bwhat if\b[^?\n]*\?", re.IGNORECASE)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<body>.+?)\s*$")
_QUOTED = re.compile(r"[\"“](?P<body>[^\"“”\n]+)[\"”]")
_COMPLETION = re.compile(r"\b(?:complete|completed|finished)\b|ready to move on", re.IGNORECASE)
_READINESS = re.compile(r"\bready\b|\bmove on\b|\bnext step\b|\blet's continue\b|\bshall we continue\b", re.IGNORECASE)


def _strip_markup(s: str) -> str:
    return s.replace("**", "").replace("__", "").strip().strip("\"'“”").strip()


def _as_mapping(raw: Any) -> Optional[Mapping[Any, Any]]:
    if isinstance(raw, Mapping):
        return raw
    if isinstance(raw, BaseModel):
        return raw.model_dump()
    return None


def _coerce_stage(expected_stage: Any) -> StageId:
    if isinstance(expected_stage, StageId):
        return expected_stage
    try:
        return StageId(str(expected_stage).strip().lower())
    except ValueError:
        logger.warning("unknown expected stage %r; normalizing against %s", expected_stage, StageId.FOUNDATION.value)
        return StageId.FOUNDATION


# ------------------------------------------------------------------------------
# 1. content
# ------------------------------------------------------------------------------


def _probe_text(mapping: Mapping[Any, Any]) -> Optional[tuple[str, str]]:
    for alias in CONTENT_ALIASES:
        value = mapping.get(alias)
        if isinstance(value, str) and value.strip():
            return alias, value.strip()
    return None


def extract_content(raw: Any) -> Optional[str]:
    """Return the turn text carried by `raw`, or None when nothing usable is present."""
    if isinstance(raw, str):
        return raw.strip() or None

    mapping = _as_mapping(raw)
    if mapping is None:
        return None

    hit = _probe_text(mapping)
    if hit is None:
        for container in NESTED_CONTAINERS:
            nested = mapping.get(container)
            if isinstance(nested, Mapping):
                hit = _probe_text(nested)
                if hit is not None:
                    hit = (f"{container}.{hit[0]}", hit[1])
                    break
    if hit is None:
        return None

    logger.debug("turn text taken from alias %s", hit[0])
    return hit[1]


def fallback_text(stage: StageId, last_user_input: str = "", *, catalog: StageCatalog = DEFAULT_CATALOG) -> str:
    message = catalog.stage(stage).fallback_message or GENERIC_CONTINUATION
    if (last_user_input or "").strip():
        return f"Thanks, I've noted that. {message}"
    return message


# ------------------------------------------------------------------------------
# 2. interaction kind
# ------------------------------------------------------------------------------


def _explicit_kind(mapping: Optional[Mapping[Any, Any]]) -> Optional[InteractionKind]:
    if mapping is None:
        return None
    for alias in KIND_ALIASES:
        value = mapping.get(alias)
        if isinstance(value, InteractionKind):
            return value
        if isinstance(value, str):
            kind = _KIND_LOOKUP.get(value.strip().lower())
            if kind is not None:
                return kind
    return None


def infer_interaction_kind(mapping: Optional[Mapping[Any, Any]], stage: StageId, text: str) -> InteractionKind:
    explicit = _explicit_kind(mapping)
    if explicit is not None:
        return explicit

    if stage == StageId.FOUNDATION:
        return InteractionKind.CONVERSATIONAL_FOUNDATION

    lowered = text.lower()
    for cue, kind in LEXICAL_KIND_CUES:
        if cue in lowered:
            return kind
    return InteractionKind.STANDARD


# ------------------------------------------------------------------------------
# 3. suggestions
# ------------------------------------------------------------------------------


def _looks_like_json(s: str) -> bool:
    return "{" in s or "```" in s or '"id"' in s


def _explicit_suggestions(mapping: Optional[Mapping[Any, Any]]) -> Optional[list[str]]:
    if mapping is None:
        return None
    for alias in SUGGESTION_ALIASES:
        value = mapping.get(alias)
        if not isinstance(value, (list, tuple)):
            continue
        cleaned: list[str] = []
        for item in value:
            if isinstance(item, Mapping):
                item = item.get("text")
            if not isinstance(item, str):
                continue
            item = item.strip()
            if item and not _looks_like_json(item):
                cleaned.append(item)
        if cleaned:
            return cleaned[:MAX_SUGGESTIONS]
    return None


def extract_what_if_lines(text: str) -> list[str]:
    found: list[str] = []
    for line in text.splitlines():
        match = _WHAT_IF.search(line)
        if match:
            found.append(_strip_markup(match.group(0)))
    return [s for s in found if s]


def extract_bullet_lines(text: str) -> list[str]:
    found: list[str] = []
    for line in text.splitlines():
        match = _BULLET.match(line)
        if not match:
            continue
        body = match.group("body")
        # lines that merely restate a field label are summaries, not options
        if _LABEL_PREFIX.match(body):
            continue
        cleaned = _strip_markup(body)
        if cleaned:
            found.append(cleaned)
    return found


def extract_quoted_phrases(text: str) -> list[str]:
    found: list[str] = []
    for match in _QUOTED.finditer(text):
        body = match.group("body").strip()
        if MIN_QUOTED_CHARS <= len(body) <= MAX_QUOTED_CHARS:
            found.append(body)
    return found


def extract_suggestions(mapping: Optional[Mapping[Any, Any]], text: str) -> Optional[list[str]]:
    explicit = _explicit_suggestions(mapping)
    if explicit:
        logger.debug("suggestions taken from explicit list (%d)", len(explicit))
        return explicit

    what_ifs = extract_what_if_lines(text)
    if what_ifs:
        logger.debug("suggestions taken from what-if lines (%d)", len(what_ifs))
        return what_ifs[:MAX_SUGGESTIONS]

    bullets = extract_bullet_lines(text)
    if bullets:
        logger.debug("suggestions taken from bullet lines (%d)", len(bullets))
        return bullets[:MAX_SUGGESTIONS]

    quoted = extract_quoted_phrases(text)
    if quoted:
        logger.debug("suggestions taken from quoted phrases (%d)", len(quoted))
        return quoted[:MAX_SUGGESTIONS]

    return None


# ------------------------------------------------------------------------------
# 4. step
# ------------------------------------------------------------------------------


def infer_step(stage: StageId, text: str, *, catalog: StageCatalog = DEFAULT_CATALOG) -> Optional[StepId]:
    if stage != StageId.FOUNDATION:
        return None

    lowered = text.lower()
    steps = catalog.stage(stage).steps
    for step in steps:
        if any(keyword in lowered for keyword in step.keywords):
            return step.id
    return steps[0].id if steps else None


# ------------------------------------------------------------------------------
# 5. completion
# ------------------------------------------------------------------------------


def infer_step_complete(mapping: Optional[Mapping[Any, Any]], text: str, suggestions: Optional[list[str]]) -> bool:
    if mapping is not None and any(mapping.get(alias) is True for alias in COMPLETE_FLAG_ALIASES):
        return True
    if _COMPLETION.search(text):
        return True
    return suggestions is None and _READINESS.search(text) is not None


# ------------------------------------------------------------------------------
# 6. structured data
# ------------------------------------------------------------------------------


def _explicit_fields(mapping: Optional[Mapping[Any, Any]]) -> dict[str, str]:
    out: dict[str, str] = {}
    if mapping is None:
        return out
    for alias in EXTRACTED_ALIASES:
        section = mapping.get(alias)
        if not isinstance(section, Mapping):
            continue
        for key, field_name in _EXPLICIT_FIELD_KEYS.items():
            value = section.get(key)
            if isinstance(value, str) and value.strip() and field_name not in out:
                out[field_name] = value.strip()
    return out


def extract_labeled_fields(text: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for match in _LABEL_VALUE.finditer(text):
        field_name = _FIELD_LABELS[match.group("label").lower()]
        if field_name in out:
            continue
        # a following bold label on the same line starts a new field
        value = _strip_markup(match.group("value").lstrip("*").split("**")[0])
        if value:
            out[field_name] = value
    return out


def extract_structured_data(mapping: Optional[Mapping[Any, Any]], text: str) -> Optional[ExtractedData]:
    fields = _explicit_fields(mapping)
    for field_name, value in extract_labeled_fields(text).items():
        fields.setdefault(field_name, value)
    if not fields:
        return None
    return ExtractedData(**fields)


# ------------------------------------------------------------------------------
# entry point
# ------------------------------------------------------------------------------


def _normalize(raw_payload: Any, stage: StageId, last_user_input: str, catalog: StageCatalog) -> ConversationTurn:
    mapping = _as_mapping(raw_payload)
    text = extract_content(raw_payload)
    if text is None:
        logger.debug("no usable text in payload of type %s; using fallback", type(raw_payload).__name__)
        text = fallback_text(stage, last_user_input, catalog=catalog)

    suggestions = extract_suggestions(mapping, text)
    return ConversationTurn(
        text=text,
        interaction_kind=infer_interaction_kind(mapping, stage, text),
        stage=stage,
        step=infer_step(stage, text, catalog=catalog),
        suggestions=suggestions,
        step_complete=infer_step_complete(mapping, text, suggestions),
        extracted_data=extract_structured_data(mapping, text),
    )


def _fallback_turn(stage: StageId, last_user_input: str, catalog: StageCatalog) -> ConversationTurn:
    return ConversationTurn(
        text=fallback_text(stage, last_user_input, catalog=catalog),
        interaction_kind=InteractionKind.CONVERSATIONAL_FOUNDATION if stage == StageId.FOUNDATION else InteractionKind.STANDARD,
        stage=stage,
        step=catalog.first_step(stage) if stage == StageId.FOUNDATION else None,
    )


def normalize(
    raw_payload: Any,
    expected_stage: StageId | str,
    last_user_input: str = "",
    *,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> ConversationTurn:
    """
    Convert an arbitrary generation-service payload into a canonical turn.

    Total over its input: strings, mappings with any field naming, pydantic
    models, None and unrelated objects all yield a turn with non-empty text
    and a known interaction kind.
    """
    stage = _coerce_stage(expected_stage)
    last_input = last_user_input if isinstance(last_user_input, str) else ""
    try:
        turn = _normalize(raw_payload, stage, last_input, catalog)
    except Exception:  # untrusted upstream payload
        logger.warning("payload normalization failed; emitting fallback turn", exc_info=True)
        turn = _fallback_turn(stage, last_input, catalog)

    run_checkers(
        gate="normalize",
        ctx=default_check_context(scope=f"turn:{stage.value}", turn=turn),
        invariant_ids=(InvariantId.TURN_ENVELOPE,),
    )
    return turn
