# conversation_progression/stable_ids.py
from __future__ import annotations

import hashlib
import json
from typing import Any, Optional


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _canon(obj: Any) -> str:
    """
    Canonical JSON string (stable across runs) for hashing.
    """
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def derive_session_id(project_id: str, stage: str) -> str:
    return "sess_" + _sha256_hex(_canon({"project_id": project_id, "stage": stage}))


def derive_turn_id(
    project_id: str,
    stage: str,
    step: Optional[str],
    turn_index: int,
    text: str,
) -> str:
    """
    Deterministic id for one normalized turn.

    Replaying the same scripted conversation yields the same ids, so turn
    logs from two runs can be diffed line by line.
    """
    key_obj = {
        "project_id": project_id,
        "stage": stage,
        "step": step,
        "turn_index": turn_index,
        "text": text,
    }
    return "turn_" + _sha256_hex(_canon(key_obj))
