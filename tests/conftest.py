from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from conversation_progression.contracts import (
    AttemptLimits,
    ProjectRecord,
    StageId,
    StepId,
)
from conversation_progression.progression import ProgressionStateMachine

FIXED_NOW = datetime(2026, 2, 11, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def make_machine() -> Callable[..., ProgressionStateMachine]:
    def _make_machine(
        *,
        stage: StageId = StageId.FOUNDATION,
        step: StepId = StepId.THEME,
        limits: Optional[AttemptLimits] = None,
    ) -> ProgressionStateMachine:
        return ProgressionStateMachine(stage, step, limits=limits)

    return _make_machine


@pytest.fixture
def make_record() -> Callable[..., ProjectRecord]:
    def _make_record(
        *,
        project_id: str = "proj-1",
        theme: Optional[str] = None,
        driving_question: Optional[str] = None,
        challenge: Optional[str] = None,
        phases: Optional[list[Any]] = None,
        milestones: Optional[list[Any]] = None,
        artifacts: Optional[list[Any]] = None,
        rubric: Optional[list[Any]] = None,
        **extra: Any,
    ) -> ProjectRecord:
        payload: dict[str, Any] = {
            "id": project_id,
            "foundation": {"theme": theme, "driving_question": driving_question, "challenge": challenge},
            "journey": {"phases": phases or []},
            "deliverables": {
                "milestones": milestones or [],
                "artifacts": artifacts or [],
                "rubric_criteria": rubric or [],
            },
        }
        payload.update(extra)
        return ProjectRecord.model_validate(payload)

    return _make_record


@pytest.fixture
def complete_foundation() -> dict[str, str]:
    return {
        "theme": "Communities and change",
        "driving_question": "How can our town adapt to hotter summers?",
        "challenge": "Design a cooling plan for the school playground",
    }
