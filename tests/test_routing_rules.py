"""Tests for webhook routing rules.

Tests:
- Condition operators and dotted field paths
- Rule parsing from list and mapping formats
- Priority order, stop_processing, provider scoping
- Match counters
- Forward and trigger actions (mocked), failures logged not raised
"""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest
from hypothesis import given, settings, strategies as st

from guestlink.errors import ValidationError
from guestlink.storage import MemoryStore
from guestlink.webhooks.rules import (
    RuleCondition,
    RuleEngine,
    actions_from_raw,
    conditions_from_raw,
    lookup,
    rule_from_dict,
)

EVENT = {
    "event": "bounce",
    "email": "Someone@Example.com",
    "reason": "550 mailbox unavailable",
    "meta": {"campaign": {"id": "spring-sale"}},
    "opted_in": True,
}


@pytest.fixture
def forwarder() -> MagicMock:
    return MagicMock()


@pytest.fixture
def rules(store, forwarder) -> RuleEngine:
    return RuleEngine(store, forwarder=forwarder)


# ── Conditions ───────────────────────────────────────────────────────────


class TestConditions:
    @pytest.mark.parametrize(
        "field,operator,value,expected",
        [
            ("event", "equals", "bounce", True),
            ("event", "equals", "Bounce", False),
            ("email", "contains", "@example.COM", True),
            ("email", "contains", "@other.com", False),
            ("reason", "matches", r"^5\d\d ", True),
            ("reason", "matches", r"^4\d\d ", False),
            ("email", "starts_with", "someone", True),
            ("email", "ends_with", ".COM", True),
            ("email", "ends_with", ".org", False),
            ("meta.campaign.id", "equals", "spring-sale", True),
            ("meta.campaign.name", "equals", "spring-sale", False),
            ("missing", "contains", "", False),
            ("opted_in", "equals", "true", True),
        ],
    )
    def test_operators(self, field, operator, value, expected):
        assert RuleCondition(field, operator, value).evaluate(EVENT) is expected

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            RuleCondition("event", "greater_than", "1")

    def test_invalid_regex(self):
        with pytest.raises(ValidationError):
            RuleCondition("event", "matches", "([unclosed")

    def test_lookup_through_non_dict(self):
        assert RuleCondition("a.b", "contains", "t").evaluate({"a": "text"}) is False
        assert lookup({"a": {"b": 1}}, "a.b") == 1


class TestParsing:
    def test_mapping_format(self):
        conditions = conditions_from_raw({"event": {"equals": "bounce"}, "opted_in": {"equals": True}})
        assert [(c.field, c.operator, c.value) for c in conditions] == [
            ("event", "equals", "bounce"),
            ("opted_in", "equals", "true"),
        ]

    def test_list_format(self):
        conditions = conditions_from_raw([{"field": "email", "operator": "contains", "value": "@x.com"}])
        assert conditions[0].operator == "contains"

    @pytest.mark.parametrize("raw", ["event=bounce", {"event": "bounce"}, {"event": {"equals": "a", "contains": "b"}}, [1]])
    def test_malformed_conditions(self, raw):
        with pytest.raises(ValidationError):
            conditions_from_raw(raw)

    def test_forward_must_be_http(self):
        with pytest.raises(ValidationError):
            actions_from_raw({"forward_to": "ftp://example.com"})

    def test_rule_requires_name(self):
        with pytest.raises(ValidationError):
            rule_from_dict({"name": " "})

    def test_priority_must_be_integer(self):
        with pytest.raises(ValidationError):
            rule_from_dict({"name": "r", "priority": "high"})

    def test_defaults(self):
        rule = rule_from_dict({"name": "catch-all"}, owner_id="owner-1")
        assert rule.priority == 100
        assert rule.conditions == []
        assert rule.matches(EVENT)
        assert rule.owner_id == "owner-1"


# ── Engine ───────────────────────────────────────────────────────────────


class TestRuleEngine:
    def test_priority_order_and_tags(self, rules):
        low = rules.add_rule({"name": "low", "priority": 50, "actions": {"add_tags": ["b"]}})
        high = rules.add_rule({"name": "high", "priority": 10, "actions": {"add_tags": ["a", "b"]}})
        outcome = rules.route("sendgrid", EVENT)
        assert outcome.matched_rules == [high.rule_id, low.rule_id]
        assert outcome.tags == ["a", "b"]
        assert not outcome.stopped

    def test_equal_priority_breaks_tie_by_creation(self, rules):
        first = rules.add_rule({"name": "first", "priority": 5})
        second = rules.add_rule({"name": "second", "priority": 5})
        second.created_at = first.created_at + 1
        assert rules.route("sendgrid", EVENT).matched_rules == [first.rule_id, second.rule_id]

    def test_stop_processing(self, rules):
        stop = rules.add_rule({"name": "stop", "priority": 1, "actions": {"stop_processing": True}})
        later = rules.add_rule({"name": "later", "priority": 2})
        outcome = rules.route("sendgrid", EVENT)
        assert outcome.matched_rules == [stop.rule_id]
        assert outcome.stopped
        assert later.match_count == 0

    def test_non_matching_stop_rule_does_not_halt(self, rules):
        rules.add_rule(
            {"name": "stop-on-spam", "priority": 1, "conditions": {"event": {"equals": "spam"}},
             "actions": {"stop_processing": True}}
        )
        later = rules.add_rule({"name": "later", "priority": 2})
        assert rules.route("sendgrid", EVENT).matched_rules == [later.rule_id]

    def test_provider_scoping(self, rules):
        scoped = rules.add_rule({"name": "sg-only", "provider": "SendGrid"})
        assert rules.route("sendgrid", EVENT).matched_rules == [scoped.rule_id]
        assert rules.route("stripe", EVENT).matched_rules == []

    def test_inactive_rules_skipped(self, rules):
        rules.add_rule({"name": "off", "is_active": False})
        assert rules.route("sendgrid", EVENT).matched_rules == []

    def test_match_counters(self, rules):
        rule = rules.add_rule({"name": "bounces", "conditions": {"event": {"equals": "bounce"}}})
        rules.route("sendgrid", EVENT)
        rules.route("sendgrid", {**EVENT, "event": "delivered"})
        rules.route("sendgrid", EVENT)
        assert rule.match_count == 2
        assert rule.last_matched_at is not None

    def test_forward_action(self, rules, forwarder):
        rules.add_rule({"name": "fwd", "actions": {"forward_to": "https://hooks.example.com/in"}})
        outcome = rules.route("sendgrid", EVENT)
        forwarder.assert_called_once_with("https://hooks.example.com/in", EVENT)
        assert outcome.forwarded == ["https://hooks.example.com/in"]

    def test_forward_failure_is_logged(self, rules, forwarder, caplog):
        forwarder.side_effect = httpx.ConnectError("refused")
        rules.add_rule({"name": "fwd", "actions": {"forward_to": "https://hooks.example.com/in"}})
        outcome = rules.route("sendgrid", EVENT)
        assert outcome.forwarded == []
        assert "forward" in caplog.text

    def test_trigger_action(self, rules):
        handler = MagicMock()
        rules.register_trigger("notify_owner", handler)
        rules.add_rule({"name": "notify", "actions": {"trigger": "notify_owner"}})
        outcome = rules.route("sendgrid", EVENT)
        handler.assert_called_once_with(EVENT)
        assert outcome.triggered == ["notify_owner"]

    def test_failing_trigger_does_not_stop_routing(self, rules):
        rules.register_trigger("boom", MagicMock(side_effect=RuntimeError("boom")))
        rules.add_rule({"name": "a", "priority": 1, "actions": {"trigger": "boom"}})
        b = rules.add_rule({"name": "b", "priority": 2, "actions": {"add_tags": ["after"]}})
        outcome = rules.route("sendgrid", EVENT)
        assert b.rule_id in outcome.matched_rules
        assert outcome.triggered == []
        assert outcome.tags == ["after"]

    def test_unknown_trigger(self, rules, caplog):
        rules.add_rule({"name": "ghost", "actions": {"trigger": "nope"}})
        assert rules.route("sendgrid", EVENT).triggered == []
        assert "unknown trigger" in caplog.text

    def test_list_and_remove_are_owner_scoped(self, rules):
        mine = rules.add_rule({"name": "mine"}, owner_id="owner-1")
        rules.add_rule({"name": "theirs"}, owner_id="owner-2")
        assert [r.rule_id for r in rules.list_rules("owner-1")] == [mine.rule_id]
        assert rules.remove_rule(mine.rule_id, owner_id="owner-2") is False
        assert rules.remove_rule(mine.rule_id, owner_id="owner-1") is True
        assert rules.list_rules("owner-1") == []


@given(priorities=st.lists(st.integers(min_value=-1000, max_value=1000), min_size=1, max_size=15))
@settings(max_examples=40, deadline=None)
def test_matched_rules_follow_priority_order(priorities):
    engine = RuleEngine(MemoryStore(), forwarder=MagicMock())
    created = [engine.add_rule({"name": f"r{i}", "priority": p}) for i, p in enumerate(priorities)]
    outcome = engine.route("any", {"event": "x"})
    by_id = {r.rule_id: r for r in created}
    seen = [by_id[rid].priority for rid in outcome.matched_rules]
    assert seen == sorted(priorities)
