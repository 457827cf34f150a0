"""Whitelist admission and dedup of candidates before they reach the store."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import CandidateMessage, extract_domain, normalize_domain

logger = logging.getLogger(__name__)


def normalize_whitelist(emails: Iterable[str]) -> set[str]:
    return {e.strip().lower() for e in emails if e and e.strip()}


def normalize_domains(domains: Iterable[str]) -> set[str]:
    return {d for d in (normalize_domain(d) for d in domains) if d}


def is_whitelisted(sender_email: str, whitelist: set[str], domains: set[str] = frozenset()) -> bool:
    """Exact address match, or the sender's domain is whitelisted as a domain."""
    sender = sender_email.lower()
    return sender in whitelist or (bool(domains) and extract_domain(sender) in domains)


def admit(
    candidates: Iterable[CandidateMessage],
    whitelist: Iterable[str],
    already_imported: Iterable[str],
    domains: Iterable[str] = (),
) -> list[CandidateMessage]:
    """Return the candidates allowed to be persisted, in their original order.

    A candidate passes only when its sender address is in ``whitelist``
    (exact address match) or its sender domain is in ``domains``, and its
    provider message id is neither in ``already_imported`` nor repeated
    earlier in the batch. Address entries never imply their domain.
    """
    allowed = normalize_whitelist(whitelist)
    allowed_domains = normalize_domains(domains)
    seen = set(already_imported)
    admitted: list[CandidateMessage] = []
    not_whitelisted = duplicates = 0

    for msg in candidates:
        if not is_whitelisted(msg.sender_email, allowed, allowed_domains):
            not_whitelisted += 1
            continue
        if msg.message_id in seen:
            duplicates += 1
            continue
        seen.add(msg.message_id)
        admitted.append(msg)

    logger.debug(
        "Gate admitted %d candidates (%d not whitelisted, %d already imported)",
        len(admitted),
        not_whitelisted,
        duplicates,
    )
    return admitted


def group_admitted_by_sender(
    admitted: Iterable[CandidateMessage],
) -> dict[str, list[CandidateMessage]]:
    """Group admitted candidates by sender, keeping admission order."""
    groups: dict[str, list[CandidateMessage]] = {}
    for msg in admitted:
        groups.setdefault(msg.sender_email, []).append(msg)
    return groups
