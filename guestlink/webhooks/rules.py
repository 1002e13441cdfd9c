"""Routing rules: priority-ordered condition -> action mappings for inbound events.

Condition operators (evaluated against a dotted field path of the event):
    - equals:      str(field) == value
    - contains:    value in field, case-insensitive
    - matches:     re.search(value, field)
    - starts_with: case-insensitive prefix
    - ends_with:   case-insensitive suffix

All conditions of a rule must match; a rule with no conditions matches every
event.  Rules run in ascending priority (ties broken by creation time) and
evaluation halts after the first matched rule whose actions set
``stop_processing``.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from guestlink.errors import ValidationError
from guestlink.retry import retry_with_backoff
from guestlink.storage import MemoryStore

logger = logging.getLogger(__name__)

OPERATORS = ("equals", "contains", "matches", "starts_with", "ends_with")

_MAX_PATTERN_CHARS = 500
_MAX_CONDITIONS = 20
_MAX_TAGS = 20
_FORWARD_TIMEOUT_SECONDS = 10.0

_MISSING = object()


def lookup(event: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path (``a.b.c``) in a nested event dict."""
    current: Any = event
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


@dataclass
class RuleCondition:
    """One predicate against an event field."""

    field: str
    operator: str
    value: str
    _pattern: re.Pattern | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.operator not in OPERATORS:
            raise ValidationError(f"unknown operator: {self.operator}", field="conditions")
        if not self.field:
            raise ValidationError("condition field is required", field="conditions")
        if self.operator == "matches":
            if len(self.value) > _MAX_PATTERN_CHARS:
                raise ValidationError("pattern too long", field="conditions")
            try:
                self._pattern = re.compile(self.value)
            except re.error as e:
                raise ValidationError(f"invalid pattern: {e}", field="conditions") from e

    def evaluate(self, event: dict[str, Any]) -> bool:
        raw = lookup(event, self.field)
        if raw is _MISSING or raw is None:
            return False
        if isinstance(raw, bool):
            text = "true" if raw else "false"
        else:
            text = str(raw)

        if self.operator == "equals":
            return text == self.value
        if self.operator == "contains":
            return self.value.lower() in text.lower()
        if self.operator == "matches":
            return self._pattern is not None and self._pattern.search(text) is not None
        if self.operator == "starts_with":
            return text.lower().startswith(self.value.lower())
        if self.operator == "ends_with":
            return text.lower().endswith(self.value.lower())
        return False


@dataclass
class RuleActions:
    forward_to: str | None = None
    add_tags: list[str] = field(default_factory=list)
    trigger: str | None = None
    stop_processing: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "forward_to": self.forward_to,
            "add_tags": list(self.add_tags),
            "trigger": self.trigger,
            "stop_processing": self.stop_processing,
        }


@dataclass
class RoutingRule:
    """A stored routing rule plus its observability counters."""

    rule_id: str
    name: str
    priority: int = 100
    conditions: list[RuleCondition] = field(default_factory=list)
    actions: RuleActions = field(default_factory=RuleActions)
    provider: str | None = None  # None applies to every provider
    owner_id: str | None = None
    is_active: bool = True
    created_at: float = field(default_factory=time.time)
    match_count: int = 0
    last_matched_at: float | None = None

    def matches(self, event: dict[str, Any]) -> bool:
        return all(c.evaluate(event) for c in self.conditions)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.rule_id,
            "name": self.name,
            "priority": self.priority,
            "provider": self.provider,
            "conditions": [{"field": c.field, "operator": c.operator, "value": c.value} for c in self.conditions],
            "actions": self.actions.as_dict(),
            "is_active": self.is_active,
            "created_at": self.created_at,
            "match_count": self.match_count,
            "last_matched_at": self.last_matched_at,
        }


def conditions_from_raw(raw: Any) -> list[RuleCondition]:
    """Parse conditions from a list or a field-keyed mapping.

    Accepted formats:
        [{"field": "event", "operator": "equals", "value": "bounce"}]
        {"event": {"equals": "bounce"}, "email": {"contains": "@example.com"}}
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        items = []
        for field_name, spec in raw.items():
            if not isinstance(spec, dict) or len(spec) != 1:
                raise ValidationError(f"condition for {field_name} must have one operator", field="conditions")
            ((operator, value),) = spec.items()
            items.append({"field": field_name, "operator": operator, "value": value})
        raw = items
    if not isinstance(raw, list):
        raise ValidationError("conditions must be a list or object", field="conditions")
    if len(raw) > _MAX_CONDITIONS:
        raise ValidationError(f"at most {_MAX_CONDITIONS} conditions", field="conditions")

    conditions = []
    for d in raw:
        if not isinstance(d, dict):
            raise ValidationError("condition must be an object", field="conditions")
        value = d.get("value", "")
        if isinstance(value, bool):
            value = "true" if value else "false"
        conditions.append(
            RuleCondition(
                field=str(d.get("field", "")),
                operator=str(d.get("operator", "")),
                value=str(value),
            )
        )
    return conditions


def actions_from_raw(raw: Any) -> RuleActions:
    if raw is None:
        return RuleActions()
    if not isinstance(raw, dict):
        raise ValidationError("actions must be an object", field="actions")
    forward_to = raw.get("forward_to")
    if forward_to is not None and not str(forward_to).startswith(("http://", "https://")):
        raise ValidationError("forward_to must be an http(s) URL", field="actions")
    tags = raw.get("add_tags") or []
    if not isinstance(tags, list) or len(tags) > _MAX_TAGS:
        raise ValidationError(f"add_tags must be a list of at most {_MAX_TAGS}", field="actions")
    return RuleActions(
        forward_to=str(forward_to) if forward_to else None,
        add_tags=[str(t)[:64] for t in tags],
        trigger=str(raw["trigger"]) if raw.get("trigger") else None,
        stop_processing=bool(raw.get("stop_processing", False)),
    )


def rule_from_dict(data: dict[str, Any], owner_id: str | None = None) -> RoutingRule:
    name = str(data.get("name", "")).strip()
    if not name:
        raise ValidationError("rule name is required", field="name")
    try:
        priority = int(data.get("priority", 100))
    except (TypeError, ValueError) as e:
        raise ValidationError("priority must be an integer", field="priority") from e
    provider = data.get("provider")
    return RoutingRule(
        rule_id=str(uuid.uuid4()),
        name=name[:200],
        priority=priority,
        conditions=conditions_from_raw(data.get("conditions")),
        actions=actions_from_raw(data.get("actions")),
        provider=str(provider).lower() if provider else None,
        owner_id=owner_id,
        is_active=bool(data.get("is_active", True)),
    )


@dataclass
class RoutingOutcome:
    """What rule evaluation did for one event."""

    matched_rules: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    forwarded: list[str] = field(default_factory=list)
    triggered: list[str] = field(default_factory=list)
    stopped: bool = False


@retry_with_backoff(max_retries=2, base_delay=0.5, max_delay=5.0)
def _forward(url: str, event: dict[str, Any]) -> None:
    response = httpx.post(url, json=event, timeout=_FORWARD_TIMEOUT_SECONDS)
    response.raise_for_status()


class RuleEngine:
    """Evaluates stored rules against events and executes their actions."""

    def __init__(
        self,
        store: MemoryStore,
        triggers: dict[str, Callable[[dict[str, Any]], Any]] | None = None,
        forwarder: Callable[[str, dict[str, Any]], None] | None = None,
    ):
        self._store = store
        self._triggers = dict(triggers or {})
        self._forward = forwarder or _forward
        self._stats_lock = threading.Lock()

    def register_trigger(self, name: str, fn: Callable[[dict[str, Any]], Any]) -> None:
        self._triggers[name] = fn

    # ── Rule management ─────────────────────────────────────────────────

    def add_rule(self, data: dict[str, Any], owner_id: str | None = None) -> RoutingRule:
        rule = rule_from_dict(data, owner_id)
        self._store.save_rule(rule)
        logger.info("Routing rule added: %s (priority=%d, provider=%s)", rule.rule_id[:8], rule.priority, rule.provider)
        return rule

    def list_rules(self, owner_id: str | None = None) -> list[RoutingRule]:
        rules = self._store.list_rules()
        return [r for r in rules if owner_id is None or r.owner_id == owner_id]

    def remove_rule(self, rule_id: str, owner_id: str | None = None) -> bool:
        rule = self._store.get_rule(rule_id)
        if rule is None or (owner_id is not None and rule.owner_id != owner_id):
            return False
        return self._store.delete_rule(rule_id)

    # ── Evaluation ──────────────────────────────────────────────────────

    def route(self, provider: str, event: dict[str, Any]) -> RoutingOutcome:
        """Run every applicable rule against *event*, in priority order."""
        outcome = RoutingOutcome()
        for rule in self._store.list_rules(provider):
            if not rule.matches(event):
                continue

            self._record_match(rule)
            outcome.matched_rules.append(rule.rule_id)
            self._execute(rule, event, outcome)

            if rule.actions.stop_processing:
                outcome.stopped = True
                break
        return outcome

    def _record_match(self, rule: RoutingRule) -> None:
        with self._stats_lock:
            rule.match_count += 1
            rule.last_matched_at = time.time()
            self._store.save_rule(rule)

    def _execute(self, rule: RoutingRule, event: dict[str, Any], outcome: RoutingOutcome) -> None:
        actions = rule.actions
        for tag in actions.add_tags:
            if tag not in outcome.tags:
                outcome.tags.append(tag)

        if actions.forward_to:
            try:
                self._forward(actions.forward_to, event)
                outcome.forwarded.append(actions.forward_to)
            except (httpx.HTTPError, OSError):
                logger.exception("Rule %s forward to %s failed", rule.rule_id[:8], actions.forward_to)

        if actions.trigger:
            fn = self._triggers.get(actions.trigger)
            if fn is None:
                logger.warning("Rule %s names unknown trigger %s", rule.rule_id[:8], actions.trigger)
            else:
                try:
                    fn(event)
                    outcome.triggered.append(actions.trigger)
                except Exception:
                    logger.exception("Rule %s trigger %s failed", rule.rule_id[:8], actions.trigger)
