"""Post-import rule engine.

Active rules are applied in a fixed order: ascending ``priority``, then
creation time, then id.  Every matching rule applies its action, so a later
rule overrides a field set by an earlier one.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .models import Newsletter, Rule

logger = logging.getLogger(__name__)

CONDITION_TYPES = ("sender", "subject", "content")
ACTION_TYPES = ("category", "priority", "folder")


def order_rules(rules: Iterable[Rule]) -> list[Rule]:
    active = [r for r in rules if r.is_active]
    return sorted(
        active,
        key=lambda r: (r.priority, r.created_at.timestamp() if r.created_at else 0.0, r.id or 0),
    )


def rule_matches(rule: Rule, newsletter: Newsletter) -> bool:
    value = rule.condition_value or ""
    if rule.condition_type == "sender":
        return newsletter.sender_email.strip().lower() == value.strip().lower()
    if rule.condition_type == "subject":
        return value.lower() in (newsletter.subject or "").lower()
    if rule.condition_type == "content":
        return value.lower() in (newsletter.content or "").lower()
    logger.warning("Rule %s has unknown condition type %r", rule.id, rule.condition_type)
    return False


def _action_update(rule: Rule) -> dict:
    if rule.action_type == "category":
        return {"category": str(rule.action_value)}
    if rule.action_type == "priority":
        try:
            return {"priority": int(rule.action_value)}
        except (TypeError, ValueError):
            logger.warning("Rule %s has non-numeric priority %r", rule.id, rule.action_value)
            return {}
    if rule.action_type == "folder":
        return {"folder": str(rule.action_value)}
    logger.warning("Rule %s has unknown action type %r", rule.id, rule.action_type)
    return {}


def evaluate_rules(newsletter: Newsletter, rules: Iterable[Rule]) -> dict:
    """Return the field updates the matching rules produce, without writing anything."""
    updates: dict = {}
    for rule in order_rules(rules):
        if rule_matches(rule, newsletter):
            updates.update(_action_update(rule))
    return updates


def apply_rules(store, newsletter: Newsletter, rules: Iterable[Rule]) -> dict:
    """Apply matching rules to a stored newsletter and persist the changes."""
    updates = evaluate_rules(newsletter, rules)
    if updates and newsletter.id is not None:
        store.update_newsletter_fields(newsletter.id, updates)
        for name, value in updates.items():
            setattr(newsletter, name, value)
        logger.info("Rules updated newsletter %s: %s", newsletter.id, updates)
    return updates
