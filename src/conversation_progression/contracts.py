# conversation_progression/contracts.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from conversation_progression._compat import Self, StrEnum

# ------------------------------------------------------------------------------
# Shared BaseModel config helpers
# ------------------------------------------------------------------------------

_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    validate_assignment=True,
    use_enum_values=False,  # keep enums as enums in Python
)

_IMMUTABLE_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    use_enum_values=False,
    frozen=True,
)

# persisted documents carry fields owned by other collaborators
_RECORD_CONFIG = ConfigDict(
    extra="ignore",
    populate_by_name=True,
    use_enum_values=False,
)

# ------------------------------------------------------------------------------
# Stages / steps
# ------------------------------------------------------------------------------


class StageId(StrEnum):
    FOUNDATION = "foundation"
    JOURNEY = "journey"
    DELIVERABLES = "deliverables"
    REVIEW = "review"


STAGE_ORDER: tuple[StageId, ...] = (
    StageId.FOUNDATION,
    StageId.JOURNEY,
    StageId.DELIVERABLES,
    StageId.REVIEW,
)

TERMINAL_STAGE = StageId.REVIEW


class StepId(StrEnum):
    THEME = "theme"
    DRIVING_QUESTION = "driving_question"
    CHALLENGE = "challenge"
    PHASES = "phases"
    ACTIVITIES = "activities"
    RESOURCES = "resources"
    MILESTONES = "milestones"
    ARTIFACTS = "artifacts"
    RUBRIC = "rubric"


class StageStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


# ------------------------------------------------------------------------------
# Canonical conversation turn
# ------------------------------------------------------------------------------


class InteractionKind(StrEnum):
    CONVERSATIONAL_FOUNDATION = "conversationalFoundation"
    STANDARD = "standard"
    WELCOME = "welcome"
    FRAMEWORK = "framework"
    GUIDE = "guide"
    PROVOCATION = "provocation"


class ExtractedData(BaseModel):
    """Best-effort structured values lifted out of a generated turn."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    theme: str | None = None
    driving_question: str | None = None
    challenge: str | None = None

    def is_empty(self) -> bool:
        return self.theme is None and self.driving_question is None and self.challenge is None

    def as_step_values(self) -> dict[StepId, str]:
        values = {
            StepId.THEME: self.theme,
            StepId.DRIVING_QUESTION: self.driving_question,
            StepId.CHALLENGE: self.challenge,
        }
        return {step: value for step, value in values.items() if value is not None}


class ConversationTurn(BaseModel):
    """
    Normalized result of one exchange with the generation service.

    Whatever shape the upstream payload had, a turn always carries non-empty
    text and one of the fixed interaction kinds.
    """

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    text: str
    interaction_kind: InteractionKind
    stage: StageId
    step: StepId | None = None
    suggestions: list[str] | None = None
    step_complete: bool = False
    extracted_data: ExtractedData | None = None

    @field_validator("text")
    @classmethod
    def _text_must_be_present(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("turn text must be non-empty")
        return value


# ------------------------------------------------------------------------------
# Progression
# ------------------------------------------------------------------------------


class UserInteraction(StrEnum):
    RESPONSE = "response"
    HELP_REQUEST = "help_request"
    REFINEMENT_SELECTION = "refinement_selection"
    WHAT_IF_SELECTION = "what_if_selection"
    EXAMPLE_SELECTION = "example_selection"
    CONFIRMATION = "confirmation"


class ResponseQuality(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TransitionState(StrEnum):
    INITIAL = "initial"
    COACHING = "coaching"
    REFINING = "refining"
    PROVIDING_EXAMPLES = "providing_examples"
    DEVELOPING_CONCEPT = "developing_concept"
    FORCED_ADVANCE = "forced_advance"
    COMPLETE = "complete"


class ActionKind(StrEnum):
    OFFER_REFINEMENT = "offer_refinement"
    GUIDE_REFINEMENT = "guide_refinement"
    COMPLETE_STEP = "complete_step"
    PROVIDE_COACHING = "provide_coaching"
    PROVIDE_EXAMPLES = "provide_examples"
    REQUEST_INPUT = "request_input"
    BRAINSTORM_IDEAS = "brainstorm_ideas"
    SHOW_EXAMPLES = "show_examples"
    PROVIDE_GUIDANCE = "provide_guidance"
    REQUEST_REFINEMENT = "request_refinement"
    DEVELOP_CONCEPT = "develop_concept"
    FORCE_ADVANCE = "force_advance"


ADVANCING_ACTIONS = frozenset({ActionKind.COMPLETE_STEP, ActionKind.FORCE_ADVANCE})


class AttemptLimits(BaseModel):
    """Deployment-wide attempt budgets; the same limits apply to every step."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    max_coaching: int = Field(default=3, ge=1, validation_alias=AliasChoices("max_coaching", "maxCoaching"))
    max_refinement: int = Field(default=2, ge=1, validation_alias=AliasChoices("max_refinement", "maxRefinement"))
    max_total: int = Field(default=8, ge=1, validation_alias=AliasChoices("max_total", "maxTotal"))


class AttemptCounters(BaseModel):
    """
    Per (stage, step) attempt counters.

    Immutable: `bump` returns a new value so a snapshot handed out in an
    Action never changes underneath the caller.
    """

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    coaching: int = Field(default=0, ge=0)
    refinement: int = Field(default=0, ge=0)
    help: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)

    def bump(self, *, coaching: int = 0, refinement: int = 0, help: int = 0, total: int = 0) -> Self:
        return self.model_copy(
            update={
                "coaching": self.coaching + max(0, coaching),
                "refinement": self.refinement + max(0, refinement),
                "help": self.help + max(0, help),
                "total": self.total + max(0, total),
            }
        )

    def exhausted(self, limits: AttemptLimits) -> bool:
        return (
            self.coaching >= limits.max_coaching
            or self.refinement >= limits.max_refinement
            or self.total >= limits.max_total
        )

    def dominates(self, previous: AttemptCounters) -> bool:
        return (
            self.coaching >= previous.coaching
            and self.refinement >= previous.refinement
            and self.help >= previous.help
            and self.total >= previous.total
        )


class Action(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    kind: ActionKind
    message: str | None = None
    suggestions: list[str] | None = None
    should_advance: bool = False
    attempts: AttemptCounters = Field(default_factory=AttemptCounters)
    state: TransitionState = TransitionState.INITIAL
    value: str | None = None


class ProgressSummary(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    stage: StageId
    step: StepId
    state: TransitionState
    attempts: AttemptCounters
    can_advance: bool
    progress_percent: float = Field(ge=0.0, le=100.0)


# ------------------------------------------------------------------------------
# Project record (read model owned by the persistence collaborator)
# ------------------------------------------------------------------------------


def _clean_optional_text(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        normalized = value.strip()
        return normalized or None
    return None


def _clean_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return [item for item in value if item not in (None, "")]
    return []


class FoundationData(BaseModel):
    model_config = _RECORD_CONFIG
    theme: str | None = Field(default=None, validation_alias=AliasChoices("theme", "bigIdea", "big_idea"))
    driving_question: str | None = Field(
        default=None,
        validation_alias=AliasChoices("driving_question", "drivingQuestion", "essentialQuestion", "essential_question"),
    )
    challenge: str | None = Field(default=None, validation_alias=AliasChoices("challenge", "task"))

    @field_validator("theme", "driving_question", "challenge", mode="before")
    @classmethod
    def _normalize_text(cls, value: Any) -> Any:
        return _clean_optional_text(value)


class JourneyData(BaseModel):
    model_config = _RECORD_CONFIG
    phases: list[Any] = Field(default_factory=list)
    activities: list[Any] = Field(default_factory=list)
    resources: list[Any] = Field(default_factory=list)

    @field_validator("phases", "activities", "resources", mode="before")
    @classmethod
    def _normalize_items(cls, value: Any) -> list[Any]:
        return _clean_list(value)


class DeliverablesData(BaseModel):
    model_config = _RECORD_CONFIG
    milestones: list[Any] = Field(default_factory=list)
    artifacts: list[Any] = Field(default_factory=list)
    rubric_criteria: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("rubric_criteria", "rubricCriteria", "rubric")
    )

    @field_validator("milestones", "artifacts", mode="before")
    @classmethod
    def _normalize_items(cls, value: Any) -> list[Any]:
        return _clean_list(value)

    @field_validator("rubric_criteria", mode="before")
    @classmethod
    def _normalize_rubric(cls, value: Any) -> list[Any]:
        # a rubric may be persisted as {"criteria": [...]}
        if isinstance(value, dict):
            value = value.get("criteria")
        return _clean_list(value)


def _clean_stage_status(value: Any) -> Optional[dict[StageId, StageStatus]]:
    if not isinstance(value, dict):
        return None
    cleaned: dict[StageId, StageStatus] = {}
    for raw_stage, raw_status in value.items():
        try:
            cleaned[StageId(str(raw_stage))] = StageStatus(str(raw_status))
        except ValueError:
            continue
    return cleaned or None


class ProjectRecord(BaseModel):
    """
    Persisted project document as seen by the core.

    Validation is tolerant: unknown fields are ignored, malformed values are
    dropped to their defaults instead of failing the whole document.
    """

    model_config = _RECORD_CONFIG
    id: str = ""
    foundation: FoundationData = Field(
        default_factory=FoundationData, validation_alias=AliasChoices("foundation", "ideation")
    )
    journey: JourneyData = Field(default_factory=JourneyData)
    deliverables: DeliverablesData = Field(default_factory=DeliverablesData)
    current_stage: StageId | None = Field(default=None, validation_alias=AliasChoices("current_stage", "currentStage"))
    stage_status: dict[StageId, StageStatus] | None = Field(
        default=None, validation_alias=AliasChoices("stage_status", "stageStatus")
    )
    completed_at: datetime | None = Field(default=None, validation_alias=AliasChoices("completed_at", "completedAt"))
    updated_at: datetime | None = Field(default=None, validation_alias=AliasChoices("updated_at", "updatedAt"))

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return str(value) if value is not None else ""

    @field_validator("foundation", "journey", "deliverables", mode="before")
    @classmethod
    def _section_must_be_mapping(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, BaseModel)) else {}

    @field_validator("current_stage", mode="before")
    @classmethod
    def _normalize_current_stage(cls, value: Any) -> Any:
        if value is None:
            return None
        try:
            return StageId(str(value))
        except ValueError:
            return None

    @field_validator("stage_status", mode="before")
    @classmethod
    def _normalize_stage_status(cls, value: Any) -> Any:
        return _clean_stage_status(value)

    @field_validator("completed_at", "updated_at", mode="before")
    @classmethod
    def _normalize_timestamp(cls, value: Any) -> Any:
        if value is None or isinstance(value, datetime):
            return value
        if isinstance(value, str) and value.strip():
            txt = value.strip()
            if txt.endswith("Z"):
                txt = txt[:-1] + "+00:00"
            try:
                return datetime.fromisoformat(txt)
            except ValueError:
                return None
        return None

    @property
    def has_cached_status(self) -> bool:
        return self.current_stage is not None and bool(self.stage_status)


class DerivedStageStatus(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    current_stage: StageId
    stage_status: dict[StageId, StageStatus]


class StageValidation(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    ok: bool
    reason: str | None = None
