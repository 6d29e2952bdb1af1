from __future__ import annotations

import logging

import pytest

from conversation_progression.contracts import (
    AttemptCounters,
    AttemptLimits,
    ConversationTurn,
    DerivedStageStatus,
    InteractionKind,
    StageId,
    StageStatus,
)
from conversation_progression.invariants import (
    REGISTRY,
    Flow,
    InvariantId,
    Validity,
    check_attempts_bounded,
    check_attempts_monotonic,
    check_status_cache_agreement,
    check_turn_envelope,
    default_check_context,
    run_checkers,
)


def _status(current: StageId, **stages: StageStatus) -> DerivedStageStatus:
    return DerivedStageStatus(current_stage=current, stage_status={StageId(k): v for k, v in stages.items()})


def test_every_invariant_has_a_registered_checker() -> None:
    assert set(REGISTRY) == set(InvariantId)


def test_turn_envelope_passes_for_canonical_turn() -> None:
    turn = ConversationTurn(text="Hi", interaction_kind=InteractionKind.STANDARD, stage=StageId.JOURNEY)

    outcome = check_turn_envelope(default_check_context(scope="turn:test", turn=turn))

    assert outcome.passed is True
    assert outcome.code == "turn_envelope_valid"
    assert outcome.details["interaction_kind"] == "standard"


def test_turn_envelope_rejects_blank_text_built_without_validation() -> None:
    turn = ConversationTurn.model_construct(text="  ", interaction_kind=InteractionKind.STANDARD, stage=StageId.JOURNEY)

    outcome = check_turn_envelope(default_check_context(scope="turn:test", turn=turn))

    assert outcome.passed is False
    assert outcome.flow == Flow.STOP
    assert outcome.code == "turn_text_empty"


def test_conversation_turn_rejects_blank_text() -> None:
    with pytest.raises(ValueError):
        ConversationTurn(text=" ", interaction_kind=InteractionKind.STANDARD, stage=StageId.JOURNEY)


def test_attempts_bounded_pass_and_fail() -> None:
    limits = AttemptLimits()
    within = check_attempts_bounded(
        default_check_context(scope="s", counters=AttemptCounters(coaching=3, refinement=2, total=8), limits=limits)
    )
    over = check_attempts_bounded(default_check_context(scope="s", counters=AttemptCounters(total=9), limits=limits))

    assert within.passed is True
    assert within.code == "attempts_within_limits"
    assert over.passed is False
    assert over.validity == Validity.DEGRADED
    assert over.evidence[0]["name"] == "total"


def test_attempts_monotonic_detects_decrease() -> None:
    outcome = check_attempts_monotonic(
        default_check_context(
            scope="s",
            counters=AttemptCounters(total=1),
            previous_counters=AttemptCounters(total=2),
        )
    )

    assert outcome.passed is False
    assert outcome.code == "attempts_decreased"


def test_status_cache_agreement_reports_diverging_stages() -> None:
    cached = _status(StageId.JOURNEY, foundation=StageStatus.COMPLETE, journey=StageStatus.COMPLETE)
    recomputed = _status(StageId.FOUNDATION, foundation=StageStatus.IN_PROGRESS, journey=StageStatus.COMPLETE)

    outcome = check_status_cache_agreement(
        default_check_context(scope="s", cached_status=cached, recomputed_status=recomputed)
    )

    assert outcome.passed is False
    assert outcome.flow == Flow.CONTINUE
    assert outcome.details["diverging_stages"] == ["foundation"]
    assert outcome.details["current_stage_matches"] is False


def test_checks_without_inputs_are_not_applicable() -> None:
    ctx = default_check_context(scope="s")

    outcomes = run_checkers(gate="test", ctx=ctx, invariant_ids=tuple(InvariantId))

    assert all(outcome.passed for outcome in outcomes)


def test_run_checkers_logs_failures(caplog: pytest.LogCaptureFixture) -> None:
    ctx = default_check_context(scope="s", counters=AttemptCounters(total=1), previous_counters=AttemptCounters(total=3))

    with caplog.at_level(logging.WARNING, logger="conversation_progression.invariants"):
        outcomes = run_checkers(gate="route:test", ctx=ctx, invariant_ids=(InvariantId.ATTEMPTS_MONOTONIC,))

    assert outcomes[0].passed is False
    assert "attempts_decreased" in caplog.text
