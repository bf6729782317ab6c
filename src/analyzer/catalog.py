"""Rule catalog - active detection rules per store.

Read-only from the evaluator's point of view (``list_active``); the small
CRUD surface is what the operator-facing side and the tests use.  Rules
with ``store_id: "*"`` apply to every store.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from src.analyzer.checks import build_check
from src.contracts.rule import WILDCARD, Rule
from src.shared.config_loader import load_yaml
from src.shared.errors import ConfigError

log = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("id", "name", "kind", "parameters")


class RuleCatalog:
    def __init__(self, rules: list[Rule] | None = None):
        self._lock = threading.Lock()
        self._rules: dict[str, Rule] = {}
        for rule in rules or []:
            self.add(rule)

    def add(self, rule: Rule) -> Rule:
        """Insert or replace a rule.  The check variant is validated up front."""
        build_check(rule)
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    def remove(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def get(self, rule_id: str) -> Rule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def set_active(self, rule_id: str, active: bool) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            rule.is_active = active
            return True

    def list_active(self, store_id: str) -> list[Rule]:
        """Active rules bound to *store_id* plus active wildcard rules, in insertion order."""
        with self._lock:
            return [
                r for r in self._rules.values()
                if r.is_active and r.store_id in (store_id, WILDCARD)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    @classmethod
    def from_yaml(cls, path: str | Path) -> RuleCatalog:
        return cls(load_catalog(path))


def load_catalog(path: str | Path) -> list[Rule]:
    """Parse a ``rules:`` list from YAML and validate each entry."""
    cfg = load_yaml(path)
    rules: list[Rule] = []
    for idx, entry in enumerate(cfg.get("rules", []) or []):
        for field in _REQUIRED_FIELDS:
            if field not in entry:
                raise ConfigError(f"{Path(path).name}: rule #{idx} missing required field '{field}'")
        try:
            rule = Rule.from_dict(entry)
        except ValueError as exc:
            raise ConfigError(f"{Path(path).name}: rule {entry['id']}: {exc}") from exc
        build_check(rule)
        rules.append(rule)
    log.info("Loaded %d rules from %s", len(rules), path)
    return rules
