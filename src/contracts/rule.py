"""Detection rule configuration and the result of a rule firing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.contracts.enums import RuleKind

WILDCARD = "*"


@dataclass(slots=True)
class Rule:
    """A stored predicate configuration, evaluated only while ``is_active``."""

    id: str
    store_id: str                # "*" = applies to every store
    name: str
    kind: str                    # threshold | pattern | ml
    parameters: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        # Raises ValueError for kinds outside the closed set.
        self.kind = RuleKind(self.kind).value

    @property
    def event_type(self) -> str:
        return self.parameters.get("event_type") or WILDCARD

    @property
    def severity(self) -> str:
        return self.parameters.get("severity", "warn")

    def applies_to(self, event_type: str) -> bool:
        return self.event_type == WILDCARD or self.event_type == event_type

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rule:
        created = data.get("created_at")
        if isinstance(created, str):
            created = datetime.fromisoformat(created.replace("Z", "+00:00"))
        return cls(
            id=str(data["id"]),
            store_id=str(data.get("store_id", WILDCARD)),
            name=data.get("name", data["id"]),
            kind=data["kind"],
            parameters=dict(data.get("parameters") or {}),
            is_active=bool(data.get("is_active", True)),
            created_at=created or datetime.now(timezone.utc),
        )


@dataclass(frozen=True, slots=True)
class RuleMatch:
    """One rule matching one event."""

    rule_id: str
    severity: str   # rule-defined: info | warn | suspicious
    message: str
