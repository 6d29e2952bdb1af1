# conversation_progression/progression.py
from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from conversation_progression.catalog import DEFAULT_CATALOG, StageCatalog, StepDefinition
from conversation_progression.contracts import (
    ADVANCING_ACTIONS,
    Action,
    ActionKind,
    AttemptCounters,
    AttemptLimits,
    ProgressSummary,
    ResponseQuality,
    StageId,
    StepId,
    TransitionState,
    UserInteraction,
)
from conversation_progression.invariants import (
    InvariantId,
    InvariantOutcome,
    default_check_context,
    run_checkers,
)

logger = logging.getLogger(__name__)

KEEP_SELECTION = "Keep and Continue"
DEVELOPMENTAL_CONTEXT = "age-appropriate complexity and engagement strategies"

HELP_IDEAS = "ideas"
HELP_EXAMPLES = "examples"

_QUOTED_CONCEPT = re.compile(r"what if.*?['\"“‘]([^'\"“”‘’]+)['\"”’]", re.IGNORECASE)
_WHAT_IF_TEMPLATE = re.compile(r"what if\s+(?:.*?\b(?:was|were|is|could|focused on)\b\s*)?", re.IGNORECASE)


def extract_concept(selection: str) -> str:
    """Pull the embedded concept out of a "what if ..." selection."""
    match = _QUOTED_CONCEPT.search(selection or "")
    if match:
        return match.group(1).strip()
    stripped = _WHAT_IF_TEMPLATE.sub("", selection or "", count=1)
    return re.sub(r"['\"“”‘’?]", "", stripped).strip() or (selection or "").strip()


def _coerce_interaction(interaction: UserInteraction | str) -> Optional[UserInteraction]:
    if isinstance(interaction, UserInteraction):
        return interaction
    try:
        return UserInteraction(str(interaction).strip().lower())
    except ValueError:
        return None


def _coerce_quality(quality: ResponseQuality | str | None) -> Optional[ResponseQuality]:
    if quality is None or isinstance(quality, ResponseQuality):
        return quality
    try:
        return ResponseQuality(str(quality).strip().lower())
    except ValueError:
        return None


class ProgressionStateMachine:
    """
    Attempt-bounded router for one (stage, step) of the guided conversation.

    Owned by a single conversation session. The forced-advance guard is
    checked before any other branching, so once any budget in `limits` is
    spent every further call returns `force_advance`.
    """

    def __init__(
        self,
        stage: StageId,
        step: StepId,
        *,
        limits: Optional[AttemptLimits] = None,
        counters: Optional[AttemptCounters] = None,
        catalog: StageCatalog = DEFAULT_CATALOG,
    ) -> None:
        self.stage = stage
        self.step = step
        self.limits = limits or AttemptLimits()
        self.counters = counters or AttemptCounters()
        self.state = TransitionState.INITIAL
        self._definition: StepDefinition = catalog.step(stage, step)
        self.last_invariant_outcomes: Sequence[InvariantOutcome] = ()

    # --------------------------------------------------------------------------
    # public API
    # --------------------------------------------------------------------------

    def route(
        self,
        interaction: UserInteraction | str,
        user_input: str = "",
        quality: ResponseQuality | str | None = None,
    ) -> Action:
        previous = self.counters
        action = self._route(interaction, user_input or "", quality)
        self.last_invariant_outcomes = run_checkers(
            gate=f"route:{self.stage.value}:{self.step.value}",
            ctx=default_check_context(
                scope=f"{self.stage.value}:{self.step.value}",
                counters=self.counters,
                previous_counters=previous,
                limits=self.limits,
            ),
            invariant_ids=(InvariantId.ATTEMPTS_MONOTONIC, InvariantId.ATTEMPTS_BOUNDED),
        )
        return action

    def should_force_advancement(self) -> bool:
        return self.counters.exhausted(self.limits)

    def can_refine(self) -> bool:
        return self.counters.refinement < self.limits.max_refinement

    def can_coach(self) -> bool:
        return self.counters.coaching < self.limits.max_coaching

    def reset(self) -> None:
        self.counters = AttemptCounters()
        self.state = TransitionState.INITIAL
        self.last_invariant_outcomes = ()

    def get_progress_summary(self) -> ProgressSummary:
        return ProgressSummary(
            stage=self.stage,
            step=self.step,
            state=self.state,
            attempts=self.counters,
            can_advance=self.should_force_advancement(),
            progress_percent=min(self.counters.total / self.limits.max_total * 100.0, 100.0),
        )

    # --------------------------------------------------------------------------
    # routing
    # --------------------------------------------------------------------------

    def _route(self, interaction: UserInteraction | str, user_input: str, quality: ResponseQuality | str | None) -> Action:
        if self.should_force_advancement():
            logger.info(
                "forcing advancement out of %s/%s after %s",
                self.stage.value,
                self.step.value,
                self.counters.model_dump(),
            )
            self._set_state(TransitionState.FORCED_ADVANCE)
            return self._action(ActionKind.FORCE_ADVANCE, "Maximum attempts reached. Moving forward with current progress.")

        kind = _coerce_interaction(interaction)
        if kind is None:
            logger.debug("unrecognized interaction %r treated as a low-quality response", interaction)
            return self._route_response(user_input, ResponseQuality.LOW)

        if kind == UserInteraction.HELP_REQUEST:
            return self._route_help_request(user_input)
        if kind == UserInteraction.REFINEMENT_SELECTION:
            return self._route_refinement_selection(user_input)
        if kind == UserInteraction.WHAT_IF_SELECTION:
            return self._route_what_if_selection(user_input)
        if kind == UserInteraction.EXAMPLE_SELECTION:
            return self._complete(f'Excellent choice! Your {self._label}: "{user_input}"', value=user_input)
        if kind == UserInteraction.CONFIRMATION:
            return self._complete("Confirmed! Moving to the next step.")
        return self._route_response(user_input, _coerce_quality(quality))

    def _route_response(self, user_input: str, quality: Optional[ResponseQuality]) -> Action:
        self.counters = self.counters.bump(total=1)

        if quality == ResponseQuality.HIGH:
            if self.can_refine():
                self._set_state(TransitionState.REFINING)
                return self._action(
                    ActionKind.OFFER_REFINEMENT,
                    None,
                    [
                        f"Make it more specific to {self._definition.context}",
                        "Connect it more directly to real-world applications",
                        "Focus it on developmental appropriateness",
                        KEEP_SELECTION,
                    ],
                    value=user_input,
                )
            return self._complete(f"Excellent! Your {self._label} is ready.", value=user_input)

        if quality == ResponseQuality.MEDIUM:
            if self.can_refine():
                self.counters = self.counters.bump(refinement=1)
                self._set_state(TransitionState.REFINING)
                return self._action(
                    ActionKind.GUIDE_REFINEMENT,
                    "Good start! Here are ways to strengthen it:",
                    [
                        "Make it more specific and focused",
                        "Add more concrete details",
                        "Connect to your subject area better",
                        KEEP_SELECTION,
                    ],
                    value=user_input,
                )
            return self._complete(f"That works! Moving forward with your {self._label}.", value=user_input)

        if quality == ResponseQuality.LOW:
            if self.can_coach():
                self.counters = self.counters.bump(coaching=1)
                self._set_state(TransitionState.COACHING)
                return self._action(
                    ActionKind.PROVIDE_COACHING,
                    "Let me help you develop this further:",
                    [
                        f"What if the {self._label} was more focused on {self._definition.context}?",
                        f"What if you considered the {DEVELOPMENTAL_CONTEXT}?",
                        "What if you connected this to your teaching goals?",
                    ],
                )
            # coaching budget spent: offer worked examples the user can still pick
            self._set_state(TransitionState.PROVIDING_EXAMPLES)
            return self._action(
                ActionKind.PROVIDE_EXAMPLES,
                "Here are some strong examples you can select:",
                self._examples(),
            )

        return self._action(ActionKind.REQUEST_INPUT, f"Please provide your {self._label} or ask for assistance.")

    def _route_help_request(self, help_type: str) -> Action:
        self.counters = self.counters.bump(help=1)
        requested = help_type.strip().lower()

        if requested == HELP_IDEAS:
            self._set_state(TransitionState.COACHING)
            return self._action(
                ActionKind.BRAINSTORM_IDEAS,
                "Let's explore some concepts:",
                [
                    f"What if the {self._label} focused on {self._definition.context}?",
                    f"What if you considered {self._definition.alternative_context}?",
                    "What if you connected this to student interests?",
                ],
            )

        if requested == HELP_EXAMPLES:
            self._set_state(TransitionState.PROVIDING_EXAMPLES)
            return self._action(ActionKind.SHOW_EXAMPLES, f"Here are proven {self._label} examples:", self._examples())

        return self._action(
            ActionKind.PROVIDE_GUIDANCE,
            self._definition.guidance,
            ["Show me some ideas", "Give me examples", "I'll write my own"],
        )

    def _route_refinement_selection(self, selection: str) -> Action:
        if "keep" in selection.lower():
            return self._complete(f"Perfect! Your {self._label} is captured.")

        self.counters = self.counters.bump(refinement=1)
        self._set_state(TransitionState.REFINING)
        return self._action(ActionKind.REQUEST_REFINEMENT, f"Please provide your refined {self._label}:")

    def _route_what_if_selection(self, selection: str) -> Action:
        self._set_state(TransitionState.DEVELOPING_CONCEPT)
        concept = extract_concept(selection)
        return self._action(
            ActionKind.DEVELOP_CONCEPT,
            f'Great choice! Let\'s develop "{concept}" into your complete {self._label}. How would you phrase this?',
            value=concept,
        )

    # --------------------------------------------------------------------------
    # helpers
    # --------------------------------------------------------------------------

    @property
    def _label(self) -> str:
        return self._definition.label

    def _examples(self) -> list[str]:
        return list(self._definition.examples) or [f"Example {self._label} {n}" for n in (1, 2, 3)]

    def _complete(self, message: str, *, value: Optional[str] = None) -> Action:
        self._set_state(TransitionState.COMPLETE)
        return self._action(ActionKind.COMPLETE_STEP, message, value=(value or None))

    def _set_state(self, new_state: TransitionState) -> None:
        if new_state != self.state:
            logger.debug("%s/%s state %s -> %s", self.stage.value, self.step.value, self.state.value, new_state.value)
        self.state = new_state

    def _action(
        self,
        kind: ActionKind,
        message: Optional[str],
        suggestions: Optional[list[str]] = None,
        *,
        value: Optional[str] = None,
    ) -> Action:
        return Action(
            kind=kind,
            message=message,
            suggestions=suggestions,
            should_advance=kind in ADVANCING_ACTIONS,
            attempts=self.counters,
            state=self.state,
            value=value,
        )
