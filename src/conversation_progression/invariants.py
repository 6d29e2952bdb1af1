from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from conversation_progression.contracts import (
    AttemptCounters,
    AttemptLimits,
    ConversationTurn,
    DerivedStageStatus,
    InteractionKind,
)

logger = logging.getLogger(__name__)


class InvariantId(str, Enum):
    TURN_ENVELOPE = "turn_envelope.v1"
    ATTEMPTS_BOUNDED = "attempts_bounded.v1"
    ATTEMPTS_MONOTONIC = "attempts_monotonic.v1"
    STATUS_CACHE_AGREEMENT = "status_cache_agreement.v1"


class Flow(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class Validity(str, Enum):
    VALID = "valid"
    DEGRADED = "degraded"
    INVALID = "invalid"


@dataclass(frozen=True)
class InvariantOutcome:
    invariant_id: InvariantId
    passed: bool
    reason: str
    flow: Flow
    validity: Validity
    code: str
    evidence: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    details: Mapping[str, Any] = field(default_factory=dict)


class CheckContext(Protocol):
    now_iso: str
    scope: str
    turn: Optional[ConversationTurn]
    counters: Optional[AttemptCounters]
    previous_counters: Optional[AttemptCounters]
    limits: Optional[AttemptLimits]
    cached_status: Optional[DerivedStageStatus]
    recomputed_status: Optional[DerivedStageStatus]


@dataclass(frozen=True)
class InvariantCheckContext:
    now_iso: str
    scope: str
    turn: Optional[ConversationTurn] = None
    counters: Optional[AttemptCounters] = None
    previous_counters: Optional[AttemptCounters] = None
    limits: Optional[AttemptLimits] = None
    cached_status: Optional[DerivedStageStatus] = None
    recomputed_status: Optional[DerivedStageStatus] = None


Checker = Callable[[CheckContext], InvariantOutcome]


def _ok(invariant_id: InvariantId, code: str, details: Optional[Mapping[str, Any]] = None) -> InvariantOutcome:
    detail_map = dict(details or {})
    reason = str(detail_map.get("message") or code)
    return InvariantOutcome(
        invariant_id=invariant_id,
        passed=True,
        reason=reason,
        flow=Flow.CONTINUE,
        validity=Validity.VALID,
        code=code,
        details=detail_map,
    )


def check_turn_envelope(ctx: CheckContext) -> InvariantOutcome:
    turn = ctx.turn
    if turn is None:
        return _ok(InvariantId.TURN_ENVELOPE, "turn_check_not_applicable")

    if not turn.text.strip():
        return InvariantOutcome(
            invariant_id=InvariantId.TURN_ENVELOPE,
            passed=False,
            reason="Canonical turn text must be non-empty.",
            flow=Flow.STOP,
            validity=Validity.INVALID,
            code="turn_text_empty",
            evidence=({"kind": "scope", "value": ctx.scope},),
            details={"message": "Canonical turn text must be non-empty."},
        )

    if not isinstance(turn.interaction_kind, InteractionKind):
        return InvariantOutcome(
            invariant_id=InvariantId.TURN_ENVELOPE,
            passed=False,
            reason="Canonical turn interaction kind must be a known value.",
            flow=Flow.STOP,
            validity=Validity.INVALID,
            code="turn_kind_unknown",
            evidence=({"kind": "interaction_kind", "value": str(turn.interaction_kind)},),
            details={"message": "Canonical turn interaction kind must be a known value."},
        )

    return _ok(InvariantId.TURN_ENVELOPE, "turn_envelope_valid", {"interaction_kind": turn.interaction_kind.value})


def check_attempts_bounded(ctx: CheckContext) -> InvariantOutcome:
    counters = ctx.counters
    limits = ctx.limits
    if counters is None or limits is None:
        return _ok(InvariantId.ATTEMPTS_BOUNDED, "bounds_not_applicable")

    overflow = {
        name: (value, bound)
        for name, value, bound in (
            ("coaching", counters.coaching, limits.max_coaching),
            ("refinement", counters.refinement, limits.max_refinement),
            ("total", counters.total, limits.max_total),
        )
        if value > bound
    }
    if overflow:
        return InvariantOutcome(
            invariant_id=InvariantId.ATTEMPTS_BOUNDED,
            passed=False,
            reason="Attempt counters exceeded their configured maximum.",
            flow=Flow.STOP,
            validity=Validity.DEGRADED,
            code="attempts_over_limit",
            evidence=tuple({"kind": "counter", "name": name, "value": v, "limit": b} for name, (v, b) in overflow.items()),
            details={"message": "Attempt counters exceeded their configured maximum.", "scope": ctx.scope},
        )

    return _ok(InvariantId.ATTEMPTS_BOUNDED, "attempts_within_limits")


def check_attempts_monotonic(ctx: CheckContext) -> InvariantOutcome:
    counters = ctx.counters
    previous = ctx.previous_counters
    if counters is None or previous is None:
        return _ok(InvariantId.ATTEMPTS_MONOTONIC, "monotonic_not_applicable")

    if counters.dominates(previous):
        return _ok(InvariantId.ATTEMPTS_MONOTONIC, "attempts_non_decreasing")

    return InvariantOutcome(
        invariant_id=InvariantId.ATTEMPTS_MONOTONIC,
        passed=False,
        reason="Attempt counters decreased within a step's lifetime.",
        flow=Flow.STOP,
        validity=Validity.INVALID,
        code="attempts_decreased",
        evidence=(
            {"kind": "previous", "value": previous.model_dump()},
            {"kind": "current", "value": counters.model_dump()},
        ),
        details={"message": "Attempt counters decreased within a step's lifetime.", "scope": ctx.scope},
    )


def check_status_cache_agreement(ctx: CheckContext) -> InvariantOutcome:
    cached = ctx.cached_status
    recomputed = ctx.recomputed_status
    if cached is None or recomputed is None:
        return _ok(InvariantId.STATUS_CACHE_AGREEMENT, "no_cached_status")

    diverging = sorted(
        stage.value
        for stage in set(cached.stage_status) | set(recomputed.stage_status)
        if cached.stage_status.get(stage) != recomputed.stage_status.get(stage)
    )
    if cached.current_stage == recomputed.current_stage and not diverging:
        return _ok(InvariantId.STATUS_CACHE_AGREEMENT, "cached_status_agrees")

    return InvariantOutcome(
        invariant_id=InvariantId.STATUS_CACHE_AGREEMENT,
        passed=False,
        reason="Cached stage status disagrees with status recomputed from raw fields.",
        # the cache stays authoritative; divergence is a data-quality signal
        flow=Flow.CONTINUE,
        validity=Validity.DEGRADED,
        code="cached_status_diverges",
        evidence=(
            {"kind": "cached", "value": cached.model_dump(mode="json")},
            {"kind": "recomputed", "value": recomputed.model_dump(mode="json")},
        ),
        details={
            "message": "Cached stage status disagrees with status recomputed from raw fields.",
            "scope": ctx.scope,
            "diverging_stages": diverging,
            "current_stage_matches": cached.current_stage == recomputed.current_stage,
        },
    )


REGISTRY: dict[InvariantId, Checker] = {
    InvariantId.TURN_ENVELOPE: check_turn_envelope,
    InvariantId.ATTEMPTS_BOUNDED: check_attempts_bounded,
    InvariantId.ATTEMPTS_MONOTONIC: check_attempts_monotonic,
    InvariantId.STATUS_CACHE_AGREEMENT: check_status_cache_agreement,
}


def run_checkers(
    *,
    gate: str,
    ctx: CheckContext,
    invariant_ids: Sequence[InvariantId],
) -> list[InvariantOutcome]:
    outcomes = [REGISTRY[invariant_id](ctx) for invariant_id in invariant_ids]
    for outcome in outcomes:
        if not outcome.passed:
            logger.warning(
                "invariant %s failed at %s (%s): %s",
                outcome.invariant_id.value,
                gate,
                outcome.code,
                outcome.reason,
            )
    return outcomes


def default_check_context(
    *,
    scope: str,
    turn: Optional[ConversationTurn] = None,
    counters: Optional[AttemptCounters] = None,
    previous_counters: Optional[AttemptCounters] = None,
    limits: Optional[AttemptLimits] = None,
    cached_status: Optional[DerivedStageStatus] = None,
    recomputed_status: Optional[DerivedStageStatus] = None,
) -> InvariantCheckContext:
    return InvariantCheckContext(
        now_iso=datetime.now(timezone.utc).isoformat(),
        scope=scope,
        turn=turn,
        counters=counters,
        previous_counters=previous_counters,
        limits=limits,
        cached_status=cached_status,
        recomputed_status=recomputed_status,
    )
