from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from conversation_progression.catalog import DEFAULT_CATALOG, CatalogError, load_stage_catalog
from conversation_progression.contracts import STAGE_ORDER, StageId, StepId


def test_default_catalog_follows_stage_order() -> None:
    assert DEFAULT_CATALOG.stage_ids() == STAGE_ORDER
    assert DEFAULT_CATALOG.stage(StageId.REVIEW).steps == ()


def test_step_navigation() -> None:
    assert DEFAULT_CATALOG.first_step(StageId.FOUNDATION) == StepId.THEME
    assert DEFAULT_CATALOG.next_step(StageId.FOUNDATION, StepId.THEME) == StepId.DRIVING_QUESTION
    assert DEFAULT_CATALOG.next_step(StageId.FOUNDATION, StepId.CHALLENGE) is None
    assert DEFAULT_CATALOG.first_step(StageId.REVIEW) is None


def test_unknown_step_raises_catalog_error() -> None:
    with pytest.raises(CatalogError):
        DEFAULT_CATALOG.step(StageId.FOUNDATION, StepId.PHASES)
    with pytest.raises(LookupError):
        DEFAULT_CATALOG.next_step(StageId.JOURNEY, StepId.THEME)


def test_catalog_round_trips_through_json(tmp_path: Path) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(DEFAULT_CATALOG.model_dump(mode="json")), encoding="utf-8")

    assert load_stage_catalog(path) == DEFAULT_CATALOG


def test_catalog_rejects_out_of_order_stages(tmp_path: Path) -> None:
    payload = DEFAULT_CATALOG.model_dump(mode="json")
    payload["stages"] = list(reversed(payload["stages"]))
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(ValidationError):
        load_stage_catalog(path)


def test_catalog_rejects_duplicate_steps(tmp_path: Path) -> None:
    payload = DEFAULT_CATALOG.model_dump(mode="json")
    payload["stages"][0]["steps"].append(payload["stages"][0]["steps"][0])
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(ValidationError):
        load_stage_catalog(path)
