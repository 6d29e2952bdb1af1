from __future__ import annotations

from collections.abc import Callable

import pytest

from conversation_progression.contracts import (
    ActionKind,
    AttemptCounters,
    AttemptLimits,
    ResponseQuality,
    StageId,
    StepId,
    TransitionState,
    UserInteraction,
)
from conversation_progression.invariants import InvariantId
from conversation_progression.progression import KEEP_SELECTION, ProgressionStateMachine, extract_concept

MakeMachine = Callable[..., ProgressionStateMachine]


def test_high_quality_response_offers_refinement_then_keep_completes(make_machine: MakeMachine) -> None:
    machine = make_machine()

    offer = machine.route(UserInteraction.RESPONSE, "Communities adapt to environmental change", ResponseQuality.HIGH)
    assert offer.kind == ActionKind.OFFER_REFINEMENT
    assert offer.value == "Communities adapt to environmental change"
    assert offer.suggestions is not None and offer.suggestions[-1] == KEEP_SELECTION
    assert offer.should_advance is False
    assert machine.state == TransitionState.REFINING

    keep = machine.route(UserInteraction.REFINEMENT_SELECTION, KEEP_SELECTION)
    assert keep.kind == ActionKind.COMPLETE_STEP
    assert keep.should_advance is True
    assert machine.state == TransitionState.COMPLETE


def test_medium_quality_guides_refinement_until_budget_spent(make_machine: MakeMachine) -> None:
    machine = make_machine(limits=AttemptLimits(max_refinement=2, max_total=8, max_coaching=3))

    first = machine.route(UserInteraction.RESPONSE, "water", ResponseQuality.MEDIUM)
    assert first.kind == ActionKind.GUIDE_REFINEMENT
    assert first.attempts.refinement == 1

    second = machine.route(UserInteraction.RESPONSE, "water again", ResponseQuality.MEDIUM)
    assert second.kind == ActionKind.GUIDE_REFINEMENT
    assert second.attempts.refinement == 2

    third = machine.route(UserInteraction.RESPONSE, "water once more", ResponseQuality.MEDIUM)
    assert third.kind == ActionKind.FORCE_ADVANCE
    assert third.should_advance is True


def test_spent_budget_forces_before_quality_routing() -> None:
    spent_refinement = ProgressionStateMachine(StageId.FOUNDATION, StepId.THEME, counters=AttemptCounters(refinement=2))
    spent_coaching = ProgressionStateMachine(StageId.FOUNDATION, StepId.THEME, counters=AttemptCounters(coaching=3))

    assert spent_refinement.route(UserInteraction.RESPONSE, "x", ResponseQuality.HIGH).kind == ActionKind.FORCE_ADVANCE
    assert spent_coaching.route(UserInteraction.RESPONSE, "x", ResponseQuality.LOW).kind == ActionKind.FORCE_ADVANCE


def test_low_quality_coaches_with_what_if_prompts(make_machine: MakeMachine) -> None:
    machine = make_machine()

    action = machine.route(UserInteraction.RESPONSE, "idk", ResponseQuality.LOW)

    assert action.kind == ActionKind.PROVIDE_COACHING
    assert action.suggestions is not None
    assert all(s.startswith("What if") for s in action.suggestions)
    assert action.attempts.coaching == 1
    assert action.attempts.total == 1
    assert machine.state == TransitionState.COACHING


def test_stuck_user_is_forced_forward_on_ninth_call(make_machine: MakeMachine) -> None:
    machine = make_machine(limits=AttemptLimits(max_coaching=100, max_refinement=100, max_total=8))

    kinds = [machine.route(UserInteraction.RESPONSE, "meh", ResponseQuality.LOW).kind for _ in range(8)]
    assert ActionKind.FORCE_ADVANCE not in kinds
    assert machine.counters.total == 8

    ninth = machine.route(UserInteraction.RESPONSE, "meh", ResponseQuality.LOW)
    assert ninth.kind == ActionKind.FORCE_ADVANCE
    assert ninth.should_advance is True
    assert machine.state == TransitionState.FORCED_ADVANCE


def test_default_limits_force_after_coaching_budget(make_machine: MakeMachine) -> None:
    machine = make_machine()

    for _ in range(3):
        assert machine.route(UserInteraction.RESPONSE, "meh", ResponseQuality.LOW).kind == ActionKind.PROVIDE_COACHING

    assert machine.should_force_advancement() is True
    assert machine.route(UserInteraction.HELP_REQUEST, "ideas").kind == ActionKind.FORCE_ADVANCE


@pytest.mark.parametrize(
    "interaction, user_input, quality",
    [
        (UserInteraction.RESPONSE, "a", ResponseQuality.HIGH),
        (UserInteraction.RESPONSE, "a", ResponseQuality.MEDIUM),
        (UserInteraction.RESPONSE, "a", ResponseQuality.LOW),
        (UserInteraction.RESPONSE, "a", None),
        (UserInteraction.HELP_REQUEST, "ideas", None),
        (UserInteraction.HELP_REQUEST, "examples", None),
        (UserInteraction.HELP_REQUEST, "something", None),
        (UserInteraction.REFINEMENT_SELECTION, "Add more concrete details", None),
        (UserInteraction.WHAT_IF_SELECTION, "What if it was about rivers?", None),
        ("nonsense", "a", None),
    ],
)
def test_non_advancing_calls_eventually_force_advancement(
    make_machine: MakeMachine,
    interaction: UserInteraction | str,
    user_input: str,
    quality: ResponseQuality | None,
) -> None:
    machine = make_machine()
    limits = machine.limits
    bound = limits.max_coaching + limits.max_refinement + limits.max_total + 1

    advanced = False
    for _ in range(bound + 5):
        action = machine.route(interaction, user_input, quality)
        if action.should_advance:
            advanced = True
            break

    if interaction in (UserInteraction.HELP_REQUEST, UserInteraction.WHAT_IF_SELECTION):
        # help and concept development never spend a limited budget
        assert advanced is False
        assert machine.counters.total == 0
    else:
        assert advanced is True


def test_counters_never_decrease_and_invariants_pass(make_machine: MakeMachine) -> None:
    machine = make_machine()
    sequence = [
        (UserInteraction.RESPONSE, "idk", ResponseQuality.LOW),
        (UserInteraction.HELP_REQUEST, "examples", None),
        (UserInteraction.RESPONSE, "rivers", ResponseQuality.MEDIUM),
        (UserInteraction.REFINEMENT_SELECTION, "Add more concrete details", None),
        (UserInteraction.RESPONSE, "rivers and towns", ResponseQuality.HIGH),
    ]

    previous = machine.counters
    for interaction, user_input, quality in sequence:
        action = machine.route(interaction, user_input, quality)
        assert action.attempts.dominates(previous)
        previous = action.attempts
        checks = {outcome.invariant_id: outcome for outcome in machine.last_invariant_outcomes}
        assert checks[InvariantId.ATTEMPTS_MONOTONIC].passed is True
        assert checks[InvariantId.ATTEMPTS_BOUNDED].passed is True


def test_missing_quality_requests_input(make_machine: MakeMachine) -> None:
    action = make_machine().route(UserInteraction.RESPONSE, "something")

    assert action.kind == ActionKind.REQUEST_INPUT
    assert action.attempts.total == 1
    assert action.should_advance is False


def test_unknown_interaction_is_treated_as_low_quality_response(make_machine: MakeMachine) -> None:
    action = make_machine().route("shrug", "??")

    assert action.kind == ActionKind.PROVIDE_COACHING
    assert action.attempts.coaching == 1


def test_string_interaction_and_quality_are_accepted(make_machine: MakeMachine) -> None:
    action = make_machine().route("response", "A strong theme", "high")

    assert action.kind == ActionKind.OFFER_REFINEMENT


def test_help_requests_do_not_advance(make_machine: MakeMachine) -> None:
    machine = make_machine()

    ideas = machine.route(UserInteraction.HELP_REQUEST, "ideas")
    examples = machine.route(UserInteraction.HELP_REQUEST, "examples")
    other = machine.route(UserInteraction.HELP_REQUEST, "what now")

    assert ideas.kind == ActionKind.BRAINSTORM_IDEAS
    assert examples.kind == ActionKind.SHOW_EXAMPLES
    assert examples.suggestions and len(examples.suggestions) == 3
    assert other.kind == ActionKind.PROVIDE_GUIDANCE
    assert other.message
    assert not any(a.should_advance for a in (ideas, examples, other))
    assert machine.counters.help == 3
    assert machine.counters.total == 0


def test_refinement_selection_other_than_keep_requests_refinement(make_machine: MakeMachine) -> None:
    machine = make_machine()

    action = machine.route(UserInteraction.REFINEMENT_SELECTION, "Make it more specific and focused")

    assert action.kind == ActionKind.REQUEST_REFINEMENT
    assert action.attempts.refinement == 1


def test_example_selection_completes_with_the_example(make_machine: MakeMachine) -> None:
    action = make_machine().route(UserInteraction.EXAMPLE_SELECTION, "Innovation and Tradition")

    assert action.kind == ActionKind.COMPLETE_STEP
    assert action.value == "Innovation and Tradition"
    assert action.should_advance is True


def test_confirmation_completes(make_machine: MakeMachine) -> None:
    action = make_machine().route(UserInteraction.CONFIRMATION, "yes")

    assert action.kind == ActionKind.COMPLETE_STEP
    assert action.value is None


def test_what_if_selection_develops_extracted_concept(make_machine: MakeMachine) -> None:
    machine = make_machine()

    action = machine.route(UserInteraction.WHAT_IF_SELECTION, "What if the theme was 'Water and Power'?")

    assert action.kind == ActionKind.DEVELOP_CONCEPT
    assert action.value == "Water and Power"
    assert "Water and Power" in (action.message or "")
    assert machine.state == TransitionState.DEVELOPING_CONCEPT


@pytest.mark.parametrize(
    "selection, expected",
    [
        ("What if the theme was 'Water and Power'?", "Water and Power"),
        ('What if we used "local history"?', "local history"),
        ("What if the theme focused on migration?", "migration"),
        ("rivers", "rivers"),
    ],
)
def test_extract_concept(selection: str, expected: str) -> None:
    assert extract_concept(selection) == expected


def test_reset_clears_counters_and_state(make_machine: MakeMachine) -> None:
    machine = make_machine()
    machine.route(UserInteraction.RESPONSE, "idk", ResponseQuality.LOW)

    machine.reset()

    assert machine.counters == AttemptCounters()
    assert machine.state == TransitionState.INITIAL


def test_progress_summary_reports_percent_and_advance_flag(make_machine: MakeMachine) -> None:
    machine = make_machine(limits=AttemptLimits(max_coaching=10, max_refinement=10, max_total=8))
    for _ in range(2):
        machine.route(UserInteraction.RESPONSE, "idk", ResponseQuality.LOW)

    summary = machine.get_progress_summary()

    assert summary.stage == StageId.FOUNDATION
    assert summary.step == StepId.THEME
    assert summary.progress_percent == pytest.approx(25.0)
    assert summary.can_advance is False
    assert summary.attempts.total == 2


def test_progress_percent_is_capped() -> None:
    machine = ProgressionStateMachine(
        StageId.JOURNEY,
        StepId.PHASES,
        limits=AttemptLimits(max_total=2),
        counters=AttemptCounters(total=5),
    )

    summary = machine.get_progress_summary()

    assert summary.progress_percent == 100.0
    assert summary.can_advance is True


def test_ninth_call_after_eight_low_responses_forces_regardless_of_quality(make_machine: MakeMachine) -> None:
    machine = make_machine()
    for _ in range(8):
        machine.route(UserInteraction.RESPONSE, "meh", ResponseQuality.LOW)

    for quality in ResponseQuality:
        assert machine.route(UserInteraction.RESPONSE, "A great answer", quality).kind == ActionKind.FORCE_ADVANCE
    assert machine.route(UserInteraction.CONFIRMATION, "yes").kind == ActionKind.FORCE_ADVANCE
