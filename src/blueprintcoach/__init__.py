"""
blueprint-coach distribution import namespace.

Re-exports the core `conversation_progression` entry points for convenience.
"""

from importlib.metadata import PackageNotFoundError, version

# src/blueprintcoach/__init__.py
from conversation_progression.adapters.response_normalizer import normalize  # noqa: F401
from conversation_progression.progression import ProgressionStateMachine  # noqa: F401
from conversation_progression.session import ConversationSession  # noqa: F401
from conversation_progression.stage_status import (  # noqa: F401
    derive,
    is_stage_complete,
    next_stage,
    route_for_stage,
)

try:
    __version__ = version("blueprint-coach")
except PackageNotFoundError:  # pragma: no cover - fallback for local non-installed checkouts
    __version__ = "0+unknown"

__all__ = [
    "ConversationSession",
    "ProgressionStateMachine",
    "__version__",
    "derive",
    "is_stage_complete",
    "next_stage",
    "normalize",
    "route_for_stage",
]
