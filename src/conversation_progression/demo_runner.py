from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from conversation_progression.adapters.collaborators import GenerationClient, ProjectRecordStore
from conversation_progression.adapters.response_normalizer import extract_content
from conversation_progression.adapters.response_quality import classify_response_quality
from conversation_progression.contracts import ActionKind, ProjectRecord, UserInteraction
from conversation_progression.session import ConversationSession
from conversation_progression.stage_status import check_status_cache_agreement

logger = logging.getLogger(__name__)


class ScriptedGenerationClient:
    """GenerationClient that replays canned payloads in order."""

    def __init__(self, payloads: list[Any]) -> None:
        self._payloads = list(payloads)
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> Any:
        self.prompts.append(prompt)
        if not self._payloads:
            return None
        return self._payloads.pop(0)


@dataclass
class InMemoryProjectStore:
    records: dict[str, ProjectRecord] = field(default_factory=dict)

    def load(self, project_id: str) -> Optional[ProjectRecord]:
        return self.records.get(project_id)

    def save(self, record: ProjectRecord) -> None:
        self.records[record.id] = record


@dataclass(frozen=True)
class TurnExecution:
    turn_index: int
    stage: str
    step: Optional[str]
    used_fallback_text: bool
    interaction: str
    quality: Optional[str]
    action: str
    advanced: bool
    invariant_checks: list[dict[str, Any]]


@dataclass(frozen=True)
class SessionExecution:
    context: str
    session_id: str
    turns: list[TurnExecution]
    final_stage: str
    stage_status: dict[str, str]


def load_scenario_packs(packs_dir: Path) -> list[dict[str, Any]]:
    packs: list[dict[str, Any]] = []
    for path in sorted(packs_dir.glob("*.json")):
        payload = json.loads(path.read_text(encoding="utf-8"))
        payload["_source"] = str(path)
        packs.append(payload)
    return packs


def _outcome_dicts(outcomes: Any) -> list[dict[str, Any]]:
    return [
        {
            "invariant_id": outcome.invariant_id.value,
            "passed": outcome.passed,
            "flow": outcome.flow.value,
            "code": outcome.code,
        }
        for outcome in outcomes
    ]


def run_session(
    pack: Mapping[str, Any],
    *,
    client: Optional[GenerationClient] = None,
    store: Optional[ProjectRecordStore] = None,
) -> SessionExecution:
    """
    Replay one scripted conversation.

    Each turn may carry an `assistant` payload (fed through the generation
    client and normalizer) and a user `interaction` with `user_input` and an
    optional `quality`; responses without a quality are classified from the
    input text. The proposed record is saved to `store` after every turn.
    """
    scripted = [turn for turn in pack.get("turns", []) if isinstance(turn, Mapping)]
    client = client or ScriptedGenerationClient([turn.get("assistant") for turn in scripted])
    store = store or InMemoryProjectStore()

    project_id = str(pack.get("project_id") or pack.get("session_id") or "demo")
    stored = store.load(project_id)
    record = stored if stored is not None else {**dict(pack.get("project") or {}), "id": project_id}
    session = ConversationSession.open(record)

    turns: list[TurnExecution] = []
    last_input = ""
    for turn_index, turn in enumerate(scripted, start=1):
        stage = session.stage
        step = session.step

        raw = client.generate(last_input)
        session.ingest(raw, last_input)
        used_fallback = extract_content(raw) is None

        interaction = str(turn.get("interaction") or UserInteraction.RESPONSE.value)
        user_input = str(turn.get("user_input") or "")
        quality = turn.get("quality")
        if quality is None and interaction == UserInteraction.RESPONSE.value:
            quality = classify_response_quality(user_input, step).value

        machine = session.machine
        action = session.interact(interaction, user_input, quality)
        machine_outcomes = machine.last_invariant_outcomes if machine is not None else ()
        store.save(session.record)
        last_input = user_input

        turns.append(
            TurnExecution(
                turn_index=turn_index,
                stage=stage.value,
                step=step.value if step else None,
                used_fallback_text=used_fallback,
                interaction=interaction,
                quality=str(quality) if quality is not None else None,
                action=action.kind.value,
                advanced=action.should_advance,
                invariant_checks=_outcome_dicts(machine_outcomes),
            )
        )

    cache_check = check_status_cache_agreement(session.record)
    if not cache_check.passed:
        logger.info("session %s ended with diverging cached status: %s", project_id, cache_check.details)

    derived = session.status()
    return SessionExecution(
        context=str(pack.get("context", "")),
        session_id=str(pack.get("session_id") or session.session_id),
        turns=turns,
        final_stage=derived.current_stage.value,
        stage_status={stage.value: status.value for stage, status in derived.stage_status.items()},
    )


def summarize(executions: list[SessionExecution]) -> dict[str, float]:
    total_turns = 0
    forced = 0
    completed = 0
    fallback = 0
    total_checks = 0
    passing_checks = 0

    for execution in executions:
        for turn in execution.turns:
            total_turns += 1
            if turn.action == ActionKind.FORCE_ADVANCE.value:
                forced += 1
            elif turn.action == ActionKind.COMPLETE_STEP.value:
                completed += 1
            if turn.used_fallback_text:
                fallback += 1
            for check in turn.invariant_checks:
                total_checks += 1
                if check["passed"]:
                    passing_checks += 1

    advanced = forced + completed
    return {
        "forced_advance_rate": round(forced / advanced, 4) if advanced else 0.0,
        "step_completion_rate": round(completed / total_turns, 4) if total_turns else 0.0,
        "fallback_text_rate": round(fallback / total_turns, 4) if total_turns else 0.0,
        "invariant_pass_rate": round(passing_checks / total_checks, 4) if total_checks else 0.0,
    }


def run_packs(packs_dir: Path) -> dict[str, Any]:
    packs = load_scenario_packs(packs_dir)
    executions = [run_session(pack) for pack in packs]
    return {
        "sessions": [
            {
                "context": execution.context,
                "session_id": execution.session_id,
                "final_stage": execution.final_stage,
                "stage_status": execution.stage_status,
                "turns": [
                    {
                        "turn_index": turn.turn_index,
                        "stage": turn.stage,
                        "step": turn.step,
                        "used_fallback_text": turn.used_fallback_text,
                        "interaction": turn.interaction,
                        "quality": turn.quality,
                        "action": turn.action,
                        "advanced": turn.advanced,
                        "invariant_checks": turn.invariant_checks,
                    }
                    for turn in execution.turns
                ],
            }
            for execution in executions
        ],
        "summary_metrics": summarize(executions),
    }
