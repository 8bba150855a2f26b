"""Condition evaluation for notification rules.

Tag values travel as strings; threshold rules parse them explicitly and a
parse failure is a configuration problem, reported as "not met".
"""
from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from datetime import datetime

from core.durations import utcnow, validate_duration
from core.errors import ConfigurationError
from models.notification import ConditionType, NotificationEvent

logger = logging.getLogger("linewatch.notifications.conditions")

OPERATORS = {
    ">": operator.gt,
    "<": operator.lt,
    "=": operator.eq,
    ">=": operator.ge,
    "<=": operator.le,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class TagChange:
    tag_id: int
    new_value: str | None
    old_value: str | None = None
    timestamp: datetime | None = None


def normalize_value(value) -> str:
    return "" if value is None else str(value)


def compare_with_operator(value: float, threshold: float, op: str) -> bool:
    try:
        return OPERATORS[op](value, threshold)
    except KeyError:
        raise ConfigurationError(f"Unknown comparison operator: {op!r}") from None


def _to_number(value, what: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{what} is not numeric: {value!r}") from None


def requires_duration_check(rule: NotificationEvent) -> bool:
    return (
        rule.condition_type == ConditionType.state_change.value
        and (rule.state_duration or 0) > 0
        and bool(rule.state_duration_unit)
    )


def validate_rule(rule: NotificationEvent) -> None:
    """Raise ConfigurationError when the rule cannot be evaluated as configured."""
    try:
        condition = ConditionType(rule.condition_type)
    except ValueError:
        raise ConfigurationError(
            f"Unknown condition type {rule.condition_type!r}", event_id=rule.id,
        ) from None

    if condition is ConditionType.threshold:
        if rule.threshold_value is None or rule.comparison_operator not in OPERATORS:
            raise ConfigurationError(
                "Threshold rules need a threshold value and a comparison operator",
                event_id=rule.id,
            )
    elif condition is ConditionType.state_change:
        if rule.target_state is None or str(rule.target_state) == "":
            raise ConfigurationError("State change rules need a target state", event_id=rule.id)
        validate_duration(rule.state_duration, rule.state_duration_unit)

    if rule.enable_escalation:
        if not rule.send_email:
            raise ConfigurationError("Escalation requires email delivery", event_id=rule.id)
        if not rule.escalation_recipients:
            raise ConfigurationError("Escalation requires at least one escalation user", event_id=rule.id)
        validate_duration(rule.escalation_delay, rule.escalation_delay_unit)


def cooldown_remaining(rule: NotificationEvent, now: datetime | None = None) -> int:
    """Whole minutes left before the rule may fire again (0 = free to fire)."""
    if not rule.cooldown_minutes or rule.last_triggered_at is None:
        return 0
    now = now or utcnow()
    elapsed = int((now - rule.last_triggered_at).total_seconds() // 60)
    return max(rule.cooldown_minutes - elapsed, 0)


def evaluate_condition(rule: NotificationEvent, change: TagChange) -> bool:
    """True when the rule's condition holds for this change right now.

    Duration-gated state rules always evaluate False here: the duration
    gate is their only trigger path.
    """
    try:
        return _evaluate(rule, change)
    except ConfigurationError as exc:
        logger.warning("Rule %s misconfigured, treated as not met: %s", rule.id, exc)
        return False


def _evaluate(rule: NotificationEvent, change: TagChange) -> bool:
    condition = rule.condition_type

    if condition == ConditionType.value_change.value:
        return normalize_value(change.new_value) != normalize_value(change.old_value)

    if condition == ConditionType.threshold.value:
        if rule.threshold_value is None or not rule.comparison_operator:
            raise ConfigurationError("Threshold rule without threshold value or operator")
        value = _to_number(change.new_value, "Tag value")
        threshold = _to_number(rule.threshold_value, "Threshold")
        return compare_with_operator(value, threshold, rule.comparison_operator)

    if condition == ConditionType.state_change.value:
        if rule.target_state is None:
            raise ConfigurationError("State change rule without target state")
        if requires_duration_check(rule):
            return False
        new_value = normalize_value(change.new_value)
        return (
            new_value != normalize_value(change.old_value)
            and new_value == str(rule.target_state)
        )

    raise ConfigurationError(f"Unknown condition type {condition!r}")
