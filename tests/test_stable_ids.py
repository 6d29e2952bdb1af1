# tests/test_stable_ids.py
from __future__ import annotations

from conversation_progression.stable_ids import derive_session_id, derive_turn_id


def test_session_ids_are_deterministic() -> None:
    assert derive_session_id("proj-1", "foundation") == derive_session_id("proj-1", "foundation")
    assert derive_session_id("proj-1", "foundation").startswith("sess_")


def test_session_ids_change_with_stage() -> None:
    assert derive_session_id("proj-1", "foundation") != derive_session_id("proj-1", "journey")


def test_turn_ids_are_deterministic_across_runs() -> None:
    first = derive_turn_id("proj-1", "foundation", "theme", 1, "Hello")
    second = derive_turn_id("proj-1", "foundation", "theme", 1, "Hello")

    assert first == second
    assert first.startswith("turn_")


def test_turn_ids_change_when_index_or_text_changes() -> None:
    base = derive_turn_id("proj-1", "foundation", "theme", 1, "Hello")

    assert base != derive_turn_id("proj-1", "foundation", "theme", 2, "Hello")
    assert base != derive_turn_id("proj-1", "foundation", "theme", 1, "Hello!")
    assert base != derive_turn_id("proj-1", "foundation", None, 1, "Hello")
