"""Rule-kind checks - one class per kind of detection.

Each stored Rule is turned into exactly one check variant, selected by a
tag rather than by a chain of per-event-type conditionals:

  threshold  - N events of a type in the last W minutes (windowed lookback)
  value      - a payload field compared against a constant (no lookback)
  absence    - no sibling event within ±K seconds (two windowed lookbacks)
  occurrence - any event of the rule's type (no further condition)
  temporal   - event captured inside a local-time hour window
  anomaly    - heuristic anomaly score over time, frequency, severity, amount

Adding a kind means adding a class and registering its tag; the evaluator
does not change.
"""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.contracts.enums import EventSeverity, RuleKind
from src.contracts.event import Event
from src.contracts.rule import Rule, RuleMatch
from src.shared.errors import ConfigError

log = logging.getLogger(__name__)

_OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


class Lookback(Protocol):
    """Windowed queries scoped to the store of the event being evaluated."""

    def count(self, event_type: str, start: datetime, end: datetime) -> int: ...

    def exists(self, event_type: str, start: datetime, end: datetime) -> bool: ...


@dataclass(frozen=True, slots=True)
class Deferred:
    """The check cannot decide before ``due`` (its window looks ahead)."""

    due: datetime


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _money(value: float | None) -> str:
    if value is None:
        return "?"
    return f"{value:.0f}" if float(value).is_integer() else f"{value:.2f}"


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"unknown timezone {name!r}") from exc


def _in_hours(hour: int, start: int, end: int) -> bool:
    """True if ``hour`` falls in [start, end), wrapping past midnight."""
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


# ═══════════════════════════════════════════════════════════════════════════
#  Base
# ═══════════════════════════════════════════════════════════════════════════


class Check:
    """Base check bound to one Rule.  Subclasses implement ``evaluate``."""

    tag: str = ""
    kinds: tuple[str, ...] = ()
    default_message: str = "{rule_name} matched {event_type}"

    def __init__(self, rule: Rule):
        self.rule = rule
        self.params: dict[str, Any] = rule.parameters

    @property
    def rule_id(self) -> str:
        return self.rule.id

    def applies(self, event: Event) -> bool:
        if not self.rule.applies_to(event.event_type):
            return False
        device_id = self.params.get("device_id")
        if device_id and event.device_id != device_id:
            return False
        device_type = self.params.get("device_type")
        if device_type and event.payload.get("device_type") != device_type:
            return False
        return True

    def match(self, event: Event, **values: Any) -> RuleMatch:
        fields = _Defaults(
            rule_name=self.rule.name,
            event_type=event.event_type,
            amount=_money(event.amount),
            device_id=event.device_id or "-",
        )
        fields.update(values)
        template = self.params.get("message") or self.default_message
        return RuleMatch(
            rule_id=self.rule.id,
            severity=self.rule.severity,
            message=template.format_map(fields),
        )

    def evaluate(self, event: Event, lookback: Lookback, now: datetime) -> RuleMatch | Deferred | None:
        raise NotImplementedError


# ═══════════════════════════════════════════════════════════════════════════
#  Variants
# ═══════════════════════════════════════════════════════════════════════════


class ThresholdCheck(Check):
    """N occurrences of ``event_type`` within the last ``time_window_minutes``.

    The window ``[t - W, t]`` includes the triggering event itself, so the
    event must be persisted before evaluation.  Every qualifying event at or
    above the threshold fires again (re-arms, no suppression).
    """

    tag = "threshold"
    kinds = (RuleKind.THRESHOLD.value,)
    default_message = "{count} {event_type} events in the last {window} minutes"

    def evaluate(self, event: Event, lookback: Lookback, now: datetime) -> RuleMatch | None:
        threshold = int(self.params.get("threshold_value", 1))
        window = float(self.params.get("time_window_minutes", 60))
        t = event.captured_at
        count = lookback.count(event.event_type, t - timedelta(minutes=window), t)
        if count < threshold:
            return None
        return self.match(event, count=count, window=f"{window:g}", threshold=threshold)


class ImmediateValueCheck(Check):
    """Predicate on the event's own payload, e.g. ``amount > 100``."""

    tag = "value"
    kinds = (RuleKind.THRESHOLD.value,)
    default_message = "{event_type} {field} {op} {value}: {amount}"

    def evaluate(self, event: Event, lookback: Lookback, now: datetime) -> RuleMatch | None:
        field = self.params.get("field", "amount")
        op_name = self.params.get("operator", ">")
        compare = _OPERATORS.get(op_name)
        if compare is None:
            raise ConfigError(f"rule {self.rule.id}: unknown operator {op_name!r}")

        raw = event.payload.get(field)
        if raw is None or raw == "":
            return None
        try:
            actual = float(raw)
        except (TypeError, ValueError):
            log.debug("Rule %s: %s=%r is not numeric", self.rule.id, field, raw)
            return None

        if "value" in self.params and not compare(actual, float(self.params["value"])):
            return None
        multiple_of = self.params.get("multiple_of")
        if multiple_of and actual % float(multiple_of) != 0:
            return None
        return self.match(
            event, field=field, op=op_name, value=self.params.get("value", ""),
            amount=_money(actual),
        )


class AbsenceCheck(Check):
    """Trigger event with no ``sibling_event_type`` within ±``window_seconds``.

    The backward window is checked first; if a sibling exists the check
    clears immediately.  Otherwise the forward window decides, and until it
    has fully elapsed the check reports ``Deferred`` instead of firing early.
    """

    tag = "absence"
    kinds = (RuleKind.PATTERN.value,)
    default_message = "{event_type} without {sibling} within {window} seconds"

    def evaluate(self, event: Event, lookback: Lookback, now: datetime) -> RuleMatch | Deferred | None:
        sibling = self.params.get("sibling_event_type")
        if not sibling:
            raise ConfigError(f"rule {self.rule.id}: absence check needs sibling_event_type")
        window = timedelta(seconds=float(self.params.get("window_seconds", 10)))
        t = event.captured_at

        if lookback.exists(sibling, t - window, t):
            return None
        if now < t + window:
            return Deferred(due=t + window)
        if lookback.exists(sibling, t, t + window):
            return None
        return self.match(event, sibling=sibling, window=f"{window.total_seconds():g}")


class OccurrenceCheck(Check):
    """Any event of the rule's type matches, e.g. a manual price override."""

    tag = "occurrence"
    kinds = (RuleKind.PATTERN.value, RuleKind.THRESHOLD.value)
    default_message = "{event_type} detected"

    def evaluate(self, event: Event, lookback: Lookback, now: datetime) -> RuleMatch:
        return self.match(event)


class TemporalCheck(Check):
    """Event captured between ``start_hour`` and ``end_hour`` local time."""

    tag = "temporal"
    kinds = (RuleKind.PATTERN.value,)
    default_message = "{event_type} at {local_time} outside normal operating hours"

    def evaluate(self, event: Event, lookback: Lookback, now: datetime) -> RuleMatch | None:
        zone = _zone(self.params.get("timezone", "UTC"))
        local = event.captured_at.astimezone(zone)
        start = int(self.params.get("start_hour", 23))
        end = int(self.params.get("end_hour", 5))
        if not _in_hours(local.hour, start, end):
            return None
        return self.match(event, local_time=local.strftime("%H:%M"))


class AnomalyScoreCheck(Check):
    """Heuristic anomaly score in [0, 1]; fires above ``min_score``.

    Scoring
    ───────
      +0.3  captured outside business hours
      +0.4  more than ``frequency_threshold`` events of the same type in the
            preceding ``frequency_window_minutes``
      +0.5 / +0.2  ingester severity suspicious / warn
      +0.3  event type in ``unusual_event_types``
      +0.2  transaction amount above ``high_amount``
      +0.1  round transaction amount (multiple of 100, at least 500)
    """

    tag = "anomaly"
    kinds = (RuleKind.ML.value,)
    default_message = "Anomalous {event_type} (score {score}): {reasons}"

    def evaluate(self, event: Event, lookback: Lookback, now: datetime) -> RuleMatch | None:
        p = self.params
        score = 0.0
        reasons: list[str] = []

        local = event.captured_at.astimezone(_zone(p.get("timezone", "UTC")))
        if local.hour < int(p.get("business_start_hour", 6)) or local.hour > int(p.get("business_end_hour", 22)):
            score += 0.3
            reasons.append("outside business hours")

        window = float(p.get("frequency_window_minutes", 60))
        t = event.captured_at
        recent = lookback.count(event.event_type, t - timedelta(minutes=window), t)
        if recent > int(p.get("frequency_threshold", 5)):
            score += 0.4
            reasons.append(f"high frequency: {recent} in {window:g} min")

        if event.severity == EventSeverity.SUSPICIOUS.value:
            score += 0.5
            reasons.append("ingested as suspicious")
        elif event.severity == EventSeverity.WARN.value:
            score += 0.2
            reasons.append("ingested as warning")

        if event.event_type in set(p.get("unusual_event_types", ())):
            score += 0.3
            reasons.append("unusual event type")

        amount = event.amount
        if event.event_type == "transaction" and amount is not None:
            if amount > float(p.get("high_amount", 1000)):
                score += 0.2
                reasons.append(f"high value ${_money(amount)}")
            if amount % 100 == 0 and amount >= 500:
                score += 0.1
                reasons.append("round amount")

        score = min(round(score, 4), 1.0)
        if score <= float(p.get("min_score", 0.6)):
            return None
        return self.match(event, score=f"{score:.0%}", reasons=", ".join(reasons))


# ═══════════════════════════════════════════════════════════════════════════
#  Registry
# ═══════════════════════════════════════════════════════════════════════════

CHECKS: dict[str, type[Check]] = {
    cls.tag: cls
    for cls in (
        ThresholdCheck, ImmediateValueCheck, AbsenceCheck, OccurrenceCheck, TemporalCheck, AnomalyScoreCheck,
    )
}


def check_tag(rule: Rule) -> str:
    """Resolve the variant tag: explicit ``check`` parameter, else from ``kind``."""
    tag = rule.parameters.get("check")
    if tag:
        return tag
    if rule.kind == RuleKind.THRESHOLD.value:
        return "threshold" if "time_window_minutes" in rule.parameters else "value"
    if rule.kind == RuleKind.PATTERN.value:
        return "absence" if "sibling_event_type" in rule.parameters else "temporal"
    return "anomaly"


def build_check(rule: Rule) -> Check:
    """Instantiate the check variant for *rule*.

    Raises:
        ConfigError: unknown tag, or a tag that does not belong to the rule's kind.
    """
    tag = check_tag(rule)
    cls = CHECKS.get(tag)
    if cls is None:
        raise ConfigError(f"rule {rule.id}: unknown check {tag!r}")
    if rule.kind not in cls.kinds:
        raise ConfigError(f"rule {rule.id}: check {tag!r} is not valid for kind {rule.kind!r}")
    return cls(rule)
