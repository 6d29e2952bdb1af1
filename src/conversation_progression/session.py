# conversation_progression/session.py
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from conversation_progression.adapters.response_normalizer import normalize
from conversation_progression.catalog import DEFAULT_CATALOG, StageCatalog
from conversation_progression.contracts import (
    TERMINAL_STAGE,
    Action,
    ActionKind,
    AttemptLimits,
    ConversationTurn,
    DerivedStageStatus,
    ProgressSummary,
    ProjectRecord,
    ResponseQuality,
    StageId,
    StepId,
    TransitionState,
    UserInteraction,
)
from conversation_progression.progression import ProgressionStateMachine
from conversation_progression.stable_ids import derive_session_id, derive_turn_id
from conversation_progression.stage_status import (
    coerce_project_record,
    complete_stage,
    derive,
    step_is_complete,
)

logger = logging.getLogger(__name__)

# actions whose value is the candidate the user may later keep or confirm
_CANDIDATE_ACTIONS = frozenset(
    {ActionKind.OFFER_REFINEMENT, ActionKind.GUIDE_REFINEMENT, ActionKind.DEVELOP_CONCEPT}
)


@dataclass(frozen=True)
class TurnLogEntry:
    turn_id: str
    turn_index: int
    turn: ConversationTurn
    merged_fields: tuple[str, ...] = ()


@dataclass
class ConversationSession:
    """
    One active guided conversation over a project record.

    Holds exactly one ProgressionStateMachine for the active (stage, step).
    `record` is a proposed document; persisting it is the caller's job.
    Concurrent editors must each hold their own session.
    """

    record: ProjectRecord
    catalog: StageCatalog = DEFAULT_CATALOG
    limits: AttemptLimits = field(default_factory=AttemptLimits)
    now: Optional[datetime] = None
    stage: StageId = field(init=False)
    step: Optional[StepId] = field(init=False)
    machine: Optional[ProgressionStateMachine] = field(init=False, default=None)
    turns: list[TurnLogEntry] = field(init=False, default_factory=list)
    actions: list[Action] = field(init=False, default_factory=list)
    _pending_value: Optional[str] = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        self.record = coerce_project_record(self.record)
        self.stage = derive(self.record, catalog=self.catalog).current_stage
        # a cached stage whose steps are all filled still reopens at its first step
        self._enter_step(self._first_open_step(self.stage) or self.catalog.first_step(self.stage))

    @classmethod
    def open(
        cls,
        record: ProjectRecord | Mapping[str, Any] | None,
        *,
        catalog: StageCatalog = DEFAULT_CATALOG,
        limits: Optional[AttemptLimits] = None,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        return cls(
            record=coerce_project_record(record),
            catalog=catalog,
            limits=limits or AttemptLimits(),
            now=now,
        )

    @property
    def session_id(self) -> str:
        return derive_session_id(self.record.id, self.stage.value)

    # --------------------------------------------------------------------------
    # generation-service output
    # --------------------------------------------------------------------------

    def ingest(self, raw_payload: Any, last_user_input: str = "") -> ConversationTurn:
        turn = normalize(raw_payload, self.stage, last_user_input, catalog=self.catalog)

        merged: list[str] = []
        # labelled fields only describe the foundation while the foundation is being built
        if turn.extracted_data is not None and turn.stage == StageId.FOUNDATION:
            for step_id, value in turn.extracted_data.as_step_values().items():
                # extracted values only fill gaps, never replace a value already held
                if self._set_step_value(StageId.FOUNDATION, step_id, value, overwrite=False):
                    merged.append(step_id.value)

        index = len(self.turns) + 1
        self.turns.append(
            TurnLogEntry(
                turn_id=derive_turn_id(
                    self.record.id,
                    turn.stage.value,
                    turn.step.value if turn.step else None,
                    index,
                    turn.text,
                ),
                turn_index=index,
                turn=turn,
                merged_fields=tuple(merged),
            )
        )
        if merged:
            logger.debug("merged extracted fields %s into project %s", merged, self.record.id or "<new>")
        return turn

    # --------------------------------------------------------------------------
    # user interactions
    # --------------------------------------------------------------------------

    def interact(
        self,
        interaction: UserInteraction | str,
        user_input: str = "",
        quality: ResponseQuality | str | None = None,
    ) -> Action:
        if self.machine is None:
            action = self._interact_without_step(interaction)
            self.actions.append(action)
            return action

        action = self.machine.route(interaction, user_input, quality)
        self.actions.append(action)

        if action.kind in _CANDIDATE_ACTIONS and action.value:
            self._pending_value = action.value

        if action.should_advance:
            # a forced advance keeps whatever candidate the user last worked on
            step = self.machine.step
            value = action.value or self._pending_value
            recorded = bool(value) and self._set_step_value(self.stage, step, value, overwrite=True)
            self._advance(step, forced=action.kind == ActionKind.FORCE_ADVANCE, recorded=recorded)
        return action

    def status(self) -> DerivedStageStatus:
        return derive(self.record, catalog=self.catalog)

    def progress(self) -> Optional[ProgressSummary]:
        return self.machine.get_progress_summary() if self.machine is not None else None

    # --------------------------------------------------------------------------
    # internals
    # --------------------------------------------------------------------------

    def _interact_without_step(self, interaction: UserInteraction | str) -> Action:
        if str(interaction) == UserInteraction.CONFIRMATION.value and self.stage == TERMINAL_STAGE:
            self.record = complete_stage(self.record, self.stage, now=self.now, catalog=self.catalog)
            return Action(
                kind=ActionKind.COMPLETE_STEP,
                message="Your project blueprint is complete.",
                should_advance=True,
                state=TransitionState.COMPLETE,
            )
        return Action(
            kind=ActionKind.REQUEST_INPUT,
            message=self.catalog.stage(self.stage).fallback_message,
        )

    def _first_open_step(self, stage: StageId) -> Optional[StepId]:
        steps = self.catalog.stage(stage).steps
        for step in steps:
            if not step_is_complete(self.record, step):
                return step.id
        return None

    def _enter_step(self, step: Optional[StepId]) -> None:
        self.step = step
        self._pending_value = None
        if step is None:
            self.machine = None
            return
        self.machine = ProgressionStateMachine(self.stage, step, limits=self.limits, catalog=self.catalog)

    def _advance(self, step: StepId, *, forced: bool, recorded: bool) -> None:
        definition = self.catalog.step(self.stage, step)

        # list steps collect one entry per completion until min_items is reached;
        # a completion that adds nothing moves on
        if not forced and recorded and not step_is_complete(self.record, definition):
            self._enter_step(step)
            return

        following = self.catalog.next_step(self.stage, step)
        if following is not None:
            self._enter_step(following)
            return

        finished = self.stage
        self.record = complete_stage(self.record, finished, now=self.now, catalog=self.catalog)
        self.stage = self.record.current_stage or TERMINAL_STAGE
        logger.info("conversation for project %s moved from %s to %s", self.record.id or "<new>", finished.value, self.stage.value)
        self._enter_step(self._first_open_step(self.stage) if self.stage != finished else None)

    def _set_step_value(self, stage: StageId, step: StepId, value: str, *, overwrite: bool) -> bool:
        definition = self.catalog.step(stage, step)
        section_name, _, attr = definition.record_field.partition(".")
        section = getattr(self.record, section_name, None)
        if section is None or not attr:
            return False

        current = getattr(section, attr, None)
        if isinstance(current, list):
            new_value: Any = [*current, value]
        elif current and not overwrite:
            return False
        else:
            new_value = value

        self.record = self.record.model_copy(
            update={section_name: section.model_copy(update={attr: new_value})},
            deep=True,
        )
        return True
