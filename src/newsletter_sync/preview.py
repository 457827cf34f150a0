"""Preview grouping - aggregates classified candidates by sender."""

from __future__ import annotations

from typing import Iterable

from .constants import SAMPLE_SUBJECTS_LIMIT
from .gate import is_whitelisted
from .models import CandidateMessage, SenderGroup


def _better_sample(current: CandidateMessage | None, msg: CandidateMessage) -> bool:
    if current is None:
        return True
    return (msg.confidence.rank, msg.score) > (current.confidence.rank, current.score)


def group_by_sender(messages: Iterable[CandidateMessage]) -> dict[str, SenderGroup]:
    """Group candidates by sender email and build SenderGroup objects."""
    groups: dict[str, SenderGroup] = {}

    for msg in messages:
        email = msg.sender_email
        if not email:
            continue
        if email not in groups:
            groups[email] = SenderGroup(email=email, name=msg.sender_name)

        group = groups[email]
        group.count += 1
        if not group.name and msg.sender_name:
            group.name = msg.sender_name

        if _better_sample(group.sample, msg):
            group.sample = msg
            group.confidence = msg.confidence
            group.score = msg.score

        if len(group.sample_subjects) < SAMPLE_SUBJECTS_LIMIT and msg.subject:
            group.sample_subjects.append(msg.subject)

    return groups


def sort_groups(groups: Iterable[SenderGroup]) -> list[SenderGroup]:
    """Order by confidence, then message count, then score, all descending."""
    return sorted(groups, key=lambda g: (-g.confidence.rank, -g.count, -g.score, g.email))


def annotate_groups(
    groups: Iterable[SenderGroup],
    whitelist: set[str],
    imported_counts: dict[str, int],
    domains: set[str] = frozenset(),
) -> list[SenderGroup]:
    groups = list(groups)
    for group in groups:
        group.is_whitelisted = is_whitelisted(group.email, whitelist, domains)
        group.imported_count = imported_counts.get(group.email, 0)
    return groups
