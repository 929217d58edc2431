from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


FAILURE_SEMANTIC = "semantic"
FAILURE_INFRASTRUCTURE = "infrastructure"
FAILURE_INTERNAL = "internal"


@dataclass(frozen=True)
class Succeeded:
    items: list[dict[str, Any]]
    confidence: float | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Failed:
    reason: str
    # semantic | infrastructure | internal; scheduling is identical, only logs/events differ.
    kind: str = FAILURE_SEMANTIC


@dataclass(frozen=True)
class Skipped:
    reason: str


JobOutcome = Union[Succeeded, Failed, Skipped]
