from __future__ import annotations

import json
import logging
import operator
from pathlib import Path
from typing import Any, Callable, Iterable

from coupon_insights.schemas.rules import (
    ConditionOperator,
    ProcessingRule,
    RuleAction,
    RuleActionType,
    RuleCondition,
    RuleSet,
)
from coupon_insights.services.domain import Event


logger = logging.getLogger(__name__)


AlertHandler = Callable[[ProcessingRule, Event, dict[str, Any]], None]

_MISSING = object()
_MUTABLE_ROOTS = ("properties", "context", "metadata")

_COMPARATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQ: operator.eq,
    ConditionOperator.NE: operator.ne,
    ConditionOperator.GT: operator.gt,
    ConditionOperator.LT: operator.lt,
    ConditionOperator.GTE: operator.ge,
    ConditionOperator.LTE: operator.le,
}


def resolve_field(event: Event, path: str) -> Any:
    """Look up a dotted path such as ``properties.amount`` or ``event_type``."""
    head, _, rest = path.partition(".")
    if head == "event_type":
        value: Any = event.event_type.value
    elif hasattr(event, head):
        value = getattr(event, head)
    else:
        return None
    if not rest:
        return value
    for part in rest.split("."):
        if isinstance(value, dict):
            value = value.get(part, _MISSING)
        else:
            value = getattr(value, part, _MISSING)
        if value is _MISSING:
            return None
    return value


def evaluate_condition(condition: RuleCondition, event: Event) -> bool:
    actual = resolve_field(event, condition.field)
    expected = condition.value
    if condition.operator is ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if condition.operator is ConditionOperator.CONTAINS:
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set, dict)):
            return expected in actual
        return str(expected) in str(actual)
    try:
        return bool(_COMPARATORS[condition.operator](actual, expected))
    except TypeError:
        # Ordering comparisons against a missing or mistyped field never match.
        return False


def _apply_transformation(value: Any, operation: Any) -> Any:
    if isinstance(operation, dict):
        op = operation.get("op")
        if op == "set":
            return operation.get("value")
        if op == "round":
            return round(float(value), int(operation.get("digits", 0)))
    else:
        op = operation
    if op == "lower":
        return str(value).lower()
    if op == "upper":
        return str(value).upper()
    if op == "strip":
        return str(value).strip()
    if op == "round":
        return round(float(value))
    if op == "int":
        return int(value)
    if op == "float":
        return float(value)
    if op == "str":
        return str(value)
    raise ValueError(f"Unsupported transformation '{op}'.")


def _container_for(event: Event, path: str) -> tuple[dict[str, Any], str]:
    root, _, rest = path.partition(".")
    if root not in _MUTABLE_ROOTS or not rest:
        raise ValueError(f"Field '{path}' cannot be transformed.")
    container: dict[str, Any] = getattr(event, root)
    *parents, leaf = rest.split(".")
    for part in parents:
        child = container.get(part)
        if not isinstance(child, dict):
            child = {}
            container[part] = child
        container = child
    return container, leaf


class RuleEngine:
    """Interprets data-defined processing rules against incoming events."""

    def __init__(
        self,
        rules: Iterable[ProcessingRule] = (),
        *,
        alert_handler: AlertHandler | None = None,
    ):
        self._rules: list[ProcessingRule] = []
        self._alert_handler = alert_handler
        for rule in rules:
            self.add_rule(rule)

    @classmethod
    def from_file(cls, path: str | Path, **kwargs: Any) -> "RuleEngine":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(payload, list):
            payload = {"rules": payload}
        ruleset = RuleSet.model_validate(payload)
        logger.info("Loaded %s event processing rules from %s.", len(ruleset.rules), path)
        return cls(ruleset.rules, **kwargs)

    @property
    def rules(self) -> list[ProcessingRule]:
        return list(self._rules)

    def add_rule(self, rule: ProcessingRule) -> None:
        self._rules.append(rule)
        # Higher priority first; insertion order breaks ties.
        self._rules.sort(key=lambda item: -item.priority)

    def matches(self, rule: ProcessingRule, event: Event) -> bool:
        if not rule.is_active:
            return False
        if rule.event_type is not None and rule.event_type is not event.event_type:
            return False
        return all(evaluate_condition(condition, event) for condition in rule.conditions)

    def apply(self, event: Event) -> list[str]:
        """Run every matching rule against ``event``; returns the ids of rules that fired."""
        fired: list[str] = []
        for rule in self._rules:
            if not self.matches(rule, event):
                continue
            fired.append(rule.id)
            for action in rule.actions:
                try:
                    self._execute(rule, action, event)
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "Rule action execution failed",
                        extra={
                            "rule_id": rule.id,
                            "action_type": action.type.value,
                            "event_id": event.id,
                            "error": str(exc),
                        },
                    )
        return fired

    def _execute(self, rule: ProcessingRule, action: RuleAction, event: Event) -> None:
        params = action.parameters
        if action.type is RuleActionType.ENRICH:
            data = params.get("enrichment_data", params.get("properties", {}))
            if not isinstance(data, dict):
                raise ValueError("enrich action expects a mapping of properties.")
            event.properties.update(data)
        elif action.type is RuleActionType.FILTER:
            event.metadata["filtered"] = True
            event.metadata["filter_reason"] = params.get("reason", rule.name)
        elif action.type is RuleActionType.TRANSFORM:
            transformations = params.get("transformations") or {}
            for path, operation in transformations.items():
                container, leaf = _container_for(event, path)
                container[leaf] = _apply_transformation(container.get(leaf), operation)
        elif action.type is RuleActionType.ROUTE:
            event.metadata["route_to"] = params["destination"]
        elif action.type is RuleActionType.ALERT:
            alert_type = params.get("alert_type", rule.id)
            event.metadata.setdefault("alerts", []).append(alert_type)
            logger.warning(
                "Event alert triggered: %s",
                params.get("message", rule.name),
                extra={"event_id": event.id, "rule_id": rule.id, "alert_type": alert_type},
            )
            if self._alert_handler is not None:
                self._alert_handler(rule, event, params)
