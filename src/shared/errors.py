"""Error taxonomy for the evaluation and dispatch pipeline."""

from __future__ import annotations


class GuardianError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(GuardianError):
    """Invalid or unreadable configuration (settings, rule catalog)."""


class StoreError(GuardianError):
    """A collaborator store call failed."""


class TransientStoreError(StoreError):
    """Timeout or other retryable failure of an external call."""


class DuplicateEventError(StoreError):
    """An event with the same id is already stored."""


class DuplicateAlertError(StoreError):
    """An alert for the same (event, rule) pair already exists."""


class EventNotFoundError(GuardianError):
    """The originating event could not be resolved by its natural key.

    Never retried: events are immutable, so a miss means the natural key
    (store, type, captured_at) does not line up with what was persisted.
    """

    def __init__(self, event_id: str, rule_ids: list[str]):
        self.event_id = event_id
        self.rule_ids = list(rule_ids)
        super().__init__(
            f"event {event_id} not found by natural key "
            f"(rules: {', '.join(self.rule_ids) or '-'})"
        )


class PushDeliveryError(GuardianError):
    """The push transport rejected or failed a delivery."""
