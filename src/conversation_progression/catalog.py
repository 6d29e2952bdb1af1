# conversation_progression/catalog.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from conversation_progression._compat import Self
from conversation_progression.contracts import STAGE_ORDER, StageId, StepId

PathLike = Union[str, Path]

_CATALOG_CONFIG = ConfigDict(
    extra="forbid",
    use_enum_values=False,
    frozen=True,
)


class CatalogError(LookupError):
    """Raised when a stage or step is not part of the loaded catalog."""


class StepDefinition(BaseModel):
    """
    One sub-goal of a stage.

    The completion predicate is data rather than code: the value found at
    `record_field` must be non-empty and, for list fields, hold at least
    `min_items` entries.
    """

    model_config = _CATALOG_CONFIG
    id: StepId
    label: str
    record_field: str
    min_items: int = Field(default=1, ge=1)
    required: bool = True
    guidance: str
    context: str = "your educational goals"
    alternative_context: str = "different perspectives"
    examples: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()


class StageDefinition(BaseModel):
    model_config = _CATALOG_CONFIG
    id: StageId
    label: str
    fallback_message: str
    steps: tuple[StepDefinition, ...] = ()

    @model_validator(mode="after")
    def _steps_unique(self) -> Self:
        ids = [step.id for step in self.steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate step ids in stage {self.id.value}")
        return self


class StageCatalog(BaseModel):
    model_config = _CATALOG_CONFIG
    version: str = "1"
    stages: tuple[StageDefinition, ...]

    @model_validator(mode="after")
    def _stages_follow_canonical_order(self) -> Self:
        ids = tuple(stage.id for stage in self.stages)
        if ids != STAGE_ORDER:
            raise ValueError(
                "catalog stages must list every stage exactly once in order: "
                + ", ".join(stage.value for stage in STAGE_ORDER)
            )
        return self

    def stage_ids(self) -> tuple[StageId, ...]:
        return tuple(stage.id for stage in self.stages)

    def stage(self, stage_id: StageId) -> StageDefinition:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise CatalogError(f"unknown stage: {stage_id}")

    def step(self, stage_id: StageId, step_id: StepId) -> StepDefinition:
        for step in self.stage(stage_id).steps:
            if step.id == step_id:
                return step
        raise CatalogError(f"unknown step {step_id} for stage {stage_id}")

    def first_step(self, stage_id: StageId) -> Optional[StepId]:
        steps = self.stage(stage_id).steps
        return steps[0].id if steps else None

    def next_step(self, stage_id: StageId, step_id: StepId) -> Optional[StepId]:
        steps = [step.id for step in self.stage(stage_id).steps]
        if step_id not in steps:
            raise CatalogError(f"unknown step {step_id} for stage {stage_id}")
        idx = steps.index(step_id)
        return steps[idx + 1] if idx + 1 < len(steps) else None


def load_stage_catalog(path: PathLike) -> StageCatalog:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return StageCatalog.model_validate(payload)


DEFAULT_CATALOG = StageCatalog(
    stages=(
        StageDefinition(
            id=StageId.FOUNDATION,
            label="Conceptual Foundation",
            fallback_message=(
                "I'm here to help you design a meaningful project! Let's explore how to turn your vision "
                "into an engaging learning experience. Which part of your project idea would you like to develop first?"
            ),
            steps=(
                StepDefinition(
                    id=StepId.THEME,
                    label="theme",
                    record_field="foundation.theme",
                    guidance=(
                        "A theme is the central idea that connects all learning in the project. It should be broad "
                        "enough to encompass several topics but focused enough to give clear direction. Think "
                        '"Identity and Belonging" rather than a topic like "The Civil War."'
                    ),
                    context="your subject area and student needs",
                    alternative_context="real-world connections and current issues",
                    examples=(
                        "Sustainable Community Design - how environmental and social needs shape shared spaces",
                        "Innovation and Tradition - when new ideas meet established cultural practices",
                        "Power and Responsibility - how authority and accountability work together in communities",
                    ),
                    keywords=("theme", "big idea"),
                ),
                StepDefinition(
                    id=StepId.DRIVING_QUESTION,
                    label="driving question",
                    record_field="foundation.driving_question",
                    guidance=(
                        "A driving question powers inquiry for the whole project. It is open-ended, sparks "
                        "curiosity and connects to ideas students care about. It must be an actual question, "
                        "not a statement about what students should think."
                    ),
                    context="driving inquiry and curiosity",
                    alternative_context="student curiosity and exploration",
                    examples=(
                        "How might we design solutions that balance competing needs?",
                        "What drives people to create lasting change?",
                        "How do individuals influence collective action?",
                    ),
                    keywords=("driving question", "essential question"),
                ),
                StepDefinition(
                    id=StepId.CHALLENGE,
                    label="task",
                    record_field="foundation.challenge",
                    guidance=(
                        "The task is the meaningful work students create and share. It should be authentic, "
                        'have a real audience and let students show their learning in action. Think "design a '
                        'solution" rather than "write a paper."'
                    ),
                    context="meaningful student work and an authentic audience",
                    alternative_context="community impact and professional relevance",
                    examples=(
                        "Design a community improvement proposal",
                        "Create a multimedia presentation for local leaders",
                        "Develop a prototype solution with user feedback",
                    ),
                    keywords=("task", "challenge"),
                ),
            ),
        ),
        StageDefinition(
            id=StageId.JOURNEY,
            label="Learning Pathway",
            fallback_message=(
                "Now let's build the learning pathway for your students! I'll help you sequence activities "
                "that prepare them for success. Which key skills should students develop in this project?"
            ),
            steps=(
                StepDefinition(
                    id=StepId.PHASES,
                    label="pathway phases",
                    record_field="journey.phases",
                    min_items=3,
                    guidance=(
                        "Phases give the project a rhythm, for example discover, investigate, create and share. "
                        "Aim for at least three phases with a clear purpose each."
                    ),
                    context="realistic pacing and sequence",
                    alternative_context="how professionals move from question to product",
                    examples=(
                        "Discover - build background knowledge and curiosity",
                        "Investigate - research, interview and collect evidence",
                        "Create and Share - prototype, test and present to an audience",
                    ),
                    keywords=("phase", "phases"),
                ),
                StepDefinition(
                    id=StepId.ACTIVITIES,
                    label="learning activities",
                    record_field="journey.activities",
                    required=False,
                    guidance="Activities are what students actually do inside each phase to build the needed skills.",
                    context="active learning and student engagement",
                    alternative_context="hands-on fieldwork and collaboration",
                    examples=(
                        "Community walk with observation journals",
                        "Expert interview with a local professional",
                        "Peer critique of early prototypes",
                    ),
                    keywords=("activity", "activities"),
                ),
                StepDefinition(
                    id=StepId.RESOURCES,
                    label="resources",
                    record_field="journey.resources",
                    required=False,
                    guidance="Resources are the texts, tools, places and people students will draw on.",
                    context="accessible, varied sources",
                    alternative_context="community partners and local experts",
                    examples=(
                        "Local news archive",
                        "Guest speaker from a partner organization",
                        "Open data portal for the region",
                    ),
                    keywords=("resource", "resources"),
                ),
            ),
        ),
        StageDefinition(
            id=StageId.DELIVERABLES,
            label="Deliverables",
            fallback_message=(
                "Time to design authentic assessments! Let's create ways for students to show their learning "
                "through real-world application. What would be the most meaningful way for students to show mastery?"
            ),
            steps=(
                StepDefinition(
                    id=StepId.MILESTONES,
                    label="milestones",
                    record_field="deliverables.milestones",
                    min_items=3,
                    guidance="Milestones are checkpoints where students show progress before the final product.",
                    context="authentic evaluation methods",
                    alternative_context="feedback loops with real audiences",
                    examples=(
                        "Research brief reviewed by peers",
                        "Prototype demonstration",
                        "Final presentation to stakeholders",
                    ),
                    keywords=("milestone", "milestones"),
                ),
                StepDefinition(
                    id=StepId.ARTIFACTS,
                    label="final artifacts",
                    record_field="deliverables.artifacts",
                    guidance="Artifacts are the finished products students publish or present.",
                    context="meaningful student work",
                    alternative_context="products that outlive the project",
                    examples=(
                        "Policy proposal for the city council",
                        "Public exhibition",
                        "Community awareness campaign",
                    ),
                    keywords=("artifact", "product"),
                ),
                StepDefinition(
                    id=StepId.RUBRIC,
                    label="rubric criteria",
                    record_field="deliverables.rubric_criteria",
                    min_items=3,
                    guidance="Rubric criteria describe what quality looks like so students can aim for it.",
                    context="clear, student-friendly success criteria",
                    alternative_context="criteria co-designed with students",
                    examples=(
                        "Evidence-based reasoning",
                        "Clear communication for the audience",
                        "Collaboration and iteration",
                    ),
                    keywords=("rubric", "criteria"),
                ),
            ),
        ),
        StageDefinition(
            id=StageId.REVIEW,
            label="Review",
            fallback_message=(
                "Let's review your complete project blueprint together. What would you like to look at or adjust?"
            ),
        ),
    )
)
