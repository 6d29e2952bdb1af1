from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from conversation_progression.contracts import ProjectRecord


class GenerationClient(Protocol):
    """Adapter interface for the external text-generation service."""

    def generate(self, prompt: str) -> Any:
        """Return the raw, untrusted payload for `prompt`; failures are raised to the caller."""
        ...


class ProjectRecordStore(Protocol):
    """Adapter interface for loading and saving persisted project records."""

    def load(self, project_id: str) -> ProjectRecord | Mapping[str, Any] | None:
        """Return the stored record for `project_id`, or None when it does not exist."""
        ...

    def save(self, record: ProjectRecord) -> None:
        """Persist `record`; the core only proposes values, it never calls this itself."""
        ...
