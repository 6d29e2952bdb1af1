# conversation_progression/stage_status.py
from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from conversation_progression._compat import UTC
from conversation_progression.catalog import DEFAULT_CATALOG, StageCatalog, StageDefinition, StepDefinition
from conversation_progression.contracts import (
    STAGE_ORDER,
    TERMINAL_STAGE,
    DerivedStageStatus,
    ProjectRecord,
    StageId,
    StageStatus,
    StageValidation,
)
from conversation_progression.invariants import (
    InvariantId,
    InvariantOutcome,
    default_check_context,
    run_checkers,
)

logger = logging.getLogger(__name__)

ROUTE_TEMPLATE = "/app/projects/{project_id}/{stage}"
PREVIEW_ROUTE_TEMPLATE = "/app/project/{project_id}/preview"

CONTENT_STAGES: tuple[StageId, ...] = tuple(stage for stage in STAGE_ORDER if stage != TERMINAL_STAGE)


def coerce_project_record(record: ProjectRecord | Mapping[str, Any] | None) -> ProjectRecord:
    """Best-effort conversion of a persisted document into a ProjectRecord; never raises."""
    if isinstance(record, ProjectRecord):
        return record
    if isinstance(record, BaseModel):
        record = record.model_dump()
    if not isinstance(record, Mapping):
        if record is not None:
            logger.warning("project record of type %s is not a mapping; treating as empty", type(record).__name__)
        return ProjectRecord()
    try:
        return ProjectRecord.model_validate(dict(record))
    except ValidationError:
        logger.warning("project record failed validation; treating as empty", exc_info=True)
        return ProjectRecord()


# ------------------------------------------------------------------------------
# completion predicates
# ------------------------------------------------------------------------------


def value_at(record: ProjectRecord, path: str) -> Any:
    current: Any = record
    for part in path.split("."):
        if isinstance(current, BaseModel):
            current = getattr(current, part, None)
        elif isinstance(current, Mapping):
            current = current.get(part)
        else:
            return None
    return current


def step_has_data(record: ProjectRecord, step: StepDefinition) -> bool:
    value = value_at(record, step.record_field)
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return value is not None


def step_is_complete(record: ProjectRecord, step: StepDefinition) -> bool:
    value = value_at(record, step.record_field)
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return len(value) >= step.min_items
    return value is not None


def _content_stage_status(record: ProjectRecord, stage: StageDefinition) -> StageStatus:
    required = [step for step in stage.steps if step.required]
    if required and all(step_is_complete(record, step) for step in required):
        return StageStatus.COMPLETE
    if any(step_has_data(record, step) for step in stage.steps):
        return StageStatus.IN_PROGRESS
    return StageStatus.NOT_STARTED


def recompute_stage_status(
    record: ProjectRecord | Mapping[str, Any] | None,
    *,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> DerivedStageStatus:
    """Compute stage status from raw collected fields, ignoring any cached value."""
    rec = coerce_project_record(record)

    status: dict[StageId, StageStatus] = {}
    for stage_id in CONTENT_STAGES:
        status[stage_id] = _content_stage_status(rec, catalog.stage(stage_id))

    content_done = all(status[stage_id] == StageStatus.COMPLETE for stage_id in CONTENT_STAGES)
    if rec.completed_at is not None:
        status[TERMINAL_STAGE] = StageStatus.COMPLETE
    elif content_done:
        status[TERMINAL_STAGE] = StageStatus.IN_PROGRESS
    else:
        status[TERMINAL_STAGE] = StageStatus.NOT_STARTED

    if rec.completed_at is not None or content_done:
        current = TERMINAL_STAGE
    else:
        current = next(stage_id for stage_id in CONTENT_STAGES if status[stage_id] != StageStatus.COMPLETE)

    return DerivedStageStatus(current_stage=current, stage_status=status)


def derive(
    record: ProjectRecord | Mapping[str, Any] | None,
    *,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> DerivedStageStatus:
    """
    Derive `{current_stage, stage_status}` for a persisted project record.

    A record carrying a cached status returns it verbatim; otherwise the
    status is recomputed from the collected fields. Pure and total.
    """
    rec = coerce_project_record(record)
    if rec.current_stage is not None and rec.stage_status:
        return DerivedStageStatus(current_stage=rec.current_stage, stage_status=dict(rec.stage_status))
    return recompute_stage_status(rec, catalog=catalog)


def with_derived_status(
    record: ProjectRecord | Mapping[str, Any] | None,
    derived: DerivedStageStatus,
) -> ProjectRecord:
    """Return a copy of `record` carrying `derived` as its cached status."""
    rec = coerce_project_record(record)
    return rec.model_copy(
        update={"current_stage": derived.current_stage, "stage_status": dict(derived.stage_status)},
        deep=True,
    )


def check_status_cache_agreement(
    record: ProjectRecord | Mapping[str, Any] | None,
    *,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> InvariantOutcome:
    rec = coerce_project_record(record)
    cached = derive(rec, catalog=catalog) if rec.has_cached_status else None
    outcomes = run_checkers(
        gate="derive",
        ctx=default_check_context(
            scope=f"project:{rec.id or 'unknown'}",
            cached_status=cached,
            recomputed_status=recompute_stage_status(rec, catalog=catalog),
        ),
        invariant_ids=(InvariantId.STATUS_CACHE_AGREEMENT,),
    )
    return outcomes[0]


# ------------------------------------------------------------------------------
# navigation helpers
# ------------------------------------------------------------------------------


def is_stage_complete(
    record: ProjectRecord | Mapping[str, Any] | None,
    stage: StageId,
    *,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> bool:
    return derive(record, catalog=catalog).stage_status.get(stage) == StageStatus.COMPLETE


def next_stage(stage: StageId) -> Optional[StageId]:
    idx = STAGE_ORDER.index(stage)
    return STAGE_ORDER[idx + 1] if idx + 1 < len(STAGE_ORDER) else None


def route_for_stage(project_id: str, stage: StageId) -> str:
    # the finished blueprint opens in the read-only preview
    if stage == TERMINAL_STAGE:
        return PREVIEW_ROUTE_TEMPLATE.format(project_id=project_id)
    return ROUTE_TEMPLATE.format(project_id=project_id, stage=stage.value)


# ------------------------------------------------------------------------------
# stage transitions (proposed records; the caller persists them)
# ------------------------------------------------------------------------------


def validate_stage(
    record: ProjectRecord | Mapping[str, Any] | None,
    stage: StageId,
    *,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> StageValidation:
    if stage == TERMINAL_STAGE:
        return StageValidation(ok=True)

    rec = coerce_project_record(record)
    missing = [step for step in catalog.stage(stage).steps if step.required and not step_is_complete(rec, step)]
    if not missing:
        return StageValidation(ok=True)

    parts = []
    for step in missing:
        if step.min_items > 1:
            parts.append(f"at least {step.min_items} {step.label}")
        else:
            parts.append(f"a {step.label}")
    return StageValidation(ok=False, reason="Please add " + ", ".join(parts) + ".")


def has_substantive_content(record: ProjectRecord | Mapping[str, Any] | None) -> bool:
    rec = coerce_project_record(record)
    foundation = rec.foundation
    return bool(
        foundation.theme
        or foundation.driving_question
        or foundation.challenge
        or rec.journey.phases
        or rec.deliverables.milestones
        or rec.deliverables.artifacts
    )


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(UTC)


def save_progress(
    record: ProjectRecord | Mapping[str, Any] | None,
    stage: StageId,
    *,
    now: Optional[datetime] = None,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> ProjectRecord:
    """Propose a record that parks the conversation at `stage`, marked in progress."""
    rec = coerce_project_record(record)
    status = dict(derive(rec, catalog=catalog).stage_status)
    status[stage] = StageStatus.IN_PROGRESS
    return rec.model_copy(update={"current_stage": stage, "stage_status": status, "updated_at": _now(now)}, deep=True)


def complete_stage(
    record: ProjectRecord | Mapping[str, Any] | None,
    stage: StageId,
    *,
    target: Optional[StageId] = None,
    now: Optional[datetime] = None,
    catalog: StageCatalog = DEFAULT_CATALOG,
) -> ProjectRecord:
    """
    Propose a record with `stage` complete and the conversation moved on.

    The next stage (or `target`) is marked in progress unless it is the
    terminal review stage; entering review stamps `completed_at`. Completing
    review itself only refreshes the status.
    """
    rec = coerce_project_record(record)
    stamp = _now(now)
    status = dict(derive(rec, catalog=catalog).stage_status)
    status[stage] = StageStatus.COMPLETE

    upcoming = target or next_stage(stage)
    update: dict[str, Any] = {"stage_status": status, "updated_at": stamp}
    if upcoming is None:
        update["current_stage"] = stage
        update["completed_at"] = rec.completed_at or stamp
    else:
        update["current_stage"] = upcoming
        if upcoming == TERMINAL_STAGE:
            update["completed_at"] = rec.completed_at or stamp
        else:
            status[upcoming] = StageStatus.IN_PROGRESS
    logger.info("stage %s complete; current stage now %s", stage.value, update["current_stage"].value)
    return rec.model_copy(update=update, deep=True)
