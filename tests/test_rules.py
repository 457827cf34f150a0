"""Tests for the rule engine."""

from datetime import timedelta

from newsletter_sync.models import Newsletter, Rule, utcnow
from newsletter_sync.rules import apply_rules, evaluate_rules, order_rules, rule_matches


def _newsletter(**kwargs) -> Newsletter:
    defaults = dict(
        user_id=1,
        email_account_id=1,
        message_id="m1",
        subject="Python Weekly - Issue #642",
        sender="Python Weekly <newsletter@pythonweekly.com>",
        sender_email="newsletter@pythonweekly.com",
        content="This week: asyncio deep dive and a pytest tutorial.",
    )
    defaults.update(kwargs)
    return Newsletter(**defaults)


def _rule(condition_type, condition_value, action_type, action_value, **kwargs) -> Rule:
    return Rule(
        user_id=1,
        name=f"{condition_type}:{condition_value}",
        condition_type=condition_type,
        condition_value=condition_value,
        action_type=action_type,
        action_value=action_value,
        **kwargs,
    )


def test_sender_rule_is_exact_and_case_insensitive():
    nl = _newsletter()
    assert rule_matches(_rule("sender", "Newsletter@PythonWeekly.com", "category", "tech"), nl)
    assert not rule_matches(_rule("sender", "pythonweekly.com", "category", "tech"), nl)


def test_subject_and_content_rules_are_substring_matches():
    nl = _newsletter()
    assert rule_matches(_rule("subject", "issue #", "folder", "reading"), nl)
    assert rule_matches(_rule("content", "PYTEST", "priority", "2"), nl)
    assert not rule_matches(_rule("content", "rust", "priority", "2"), nl)


def test_content_rule_does_not_look_at_html():
    nl = _newsletter(content="", html_content="<p>asyncio</p>")
    assert not rule_matches(_rule("content", "asyncio", "folder", "x"), nl)


def test_order_rules_by_priority_then_creation():
    now = utcnow()
    late = _rule("subject", "a", "category", "late", id=1, priority=1, created_at=now)
    early = _rule("subject", "a", "category", "early", id=2, priority=1, created_at=now - timedelta(days=1))
    first = _rule("subject", "a", "category", "first", id=3, priority=0, created_at=now)
    inactive = _rule("subject", "a", "category", "off", id=4, is_active=False)
    assert [r.action_value for r in order_rules([late, early, first, inactive])] == ["first", "early", "late"]


def test_later_rule_overrides_earlier():
    rules = [
        _rule("subject", "weekly", "category", "digest", id=1, priority=0),
        _rule("sender", "newsletter@pythonweekly.com", "category", "python", id=2, priority=5),
        _rule("content", "asyncio", "priority", "3", id=3, priority=1),
    ]
    assert evaluate_rules(_newsletter(), rules) == {"category": "python", "priority": 3}


def test_invalid_priority_value_is_ignored():
    rules = [_rule("subject", "weekly", "priority", "high")]
    assert evaluate_rules(_newsletter(), rules) == {}


def test_apply_rules_persists(store, make_account):
    account = make_account()
    nl = store.insert_newsletter(_newsletter(email_account_id=account.id))
    rules = [_rule("subject", "issue", "folder", "reading")]

    updates = apply_rules(store, nl, rules)

    assert updates == {"folder": "reading"}
    assert nl.folder == "reading"
    assert store.find_newsletter_by_id(nl.id).folder == "reading"


def test_apply_rules_without_match_writes_nothing(store, make_account):
    account = make_account()
    nl = store.insert_newsletter(_newsletter(email_account_id=account.id))
    assert apply_rules(store, nl, [_rule("subject", "nomatch", "folder", "x")]) == {}
    assert store.find_newsletter_by_id(nl.id).folder == "inbox"
