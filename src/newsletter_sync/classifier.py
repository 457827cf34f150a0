"""Newsletter scoring and confidence tiers.

Every heuristic is a small signal function ``(msg, rubric) -> (points, reason)``
so each can be tested on its own.  The weights and tier thresholds live on a
:class:`ScoringRubric`; bump its ``version`` whenever they change.

Positive signals only ever add points, and the two penalties depend on the
sender domain and body length alone, so adding a newsletter signal to a
message can never lower its tier.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable

from . import constants as c
from .models import CandidateMessage, Classification, Confidence, extract_domain

_TRANSACTIONAL_RE = re.compile(
    r"\b(receipt|invoice|order confirmation|booking confirmation|payment confirmation|"
    r"password reset|reset your password|verification code|verify your|security alert|"
    r"sign-?in attempt|interview|job alert|connection request|meeting invitation|"
    r"calendar invite|build failed|deployment)\b",
    re.IGNORECASE,
)

_SUBJECT_RE = re.compile(
    r"(#\d+|\bissue\s*#?\d+|\bedition\s*#?\d+|\bvol\.?\s*\d+|\bnewsletter\b|\bdigest\b|"
    r"\bweekly\b|\bmonthly\b|\bbulletin\b|\bweek of\b|\broundup\b|\bthis week in\b)",
    re.IGNORECASE,
)

_BODY_PHRASE_RE = re.compile(
    r"(unsubscribe|manage (your )?subscriptions?|email preferences|update (your )?preferences|"
    r"opt[\s-]?out|you(?:'re| are) receiving this|newsletter)",
    re.IGNORECASE,
)

_STRUCTURE_RES = [
    re.compile(r"view (this( email)?|it )?(online|in (your |a )?browser)", re.IGNORECASE),
    re.compile(r"forward (this( email)?|it )?to a friend", re.IGNORECASE),
    re.compile(r"unsubscribe[\s\S]{0,80}?(click|here|link)|(click|here)[\s\S]{0,40}?unsubscribe", re.IGNORECASE),
]

_URL_RE = re.compile(r"https?://[^\s\"'<>]+")
_HTML_LINK_RE = re.compile(r"<a\s+[^>]*href", re.IGNORECASE)
_IMG_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_PIXEL_RE = re.compile(
    r"""(width\s*=\s*["']?1(px)?["']?[^>]*height\s*=\s*["']?1(px)?["']?|"""
    r"""height\s*=\s*["']?1(px)?["']?[^>]*width\s*=\s*["']?1(px)?["']?|"""
    r"""display\s*:\s*none)""",
    re.IGNORECASE,
)


@dataclass
class ScoringRubric:
    """Versioned weights and thresholds for :func:`classify`."""

    version: str = c.SCORING_RUBRIC_VERSION
    list_unsubscribe: int = c.WEIGHT_LIST_UNSUBSCRIBE
    precedence_bulk: int = c.WEIGHT_PRECEDENCE_BULK
    list_header: int = c.WEIGHT_LIST_HEADER
    max_list_headers: int = c.MAX_LIST_HEADERS
    sender_pattern: int = c.WEIGHT_SENDER_PATTERN
    automated_sender: int = c.WEIGHT_AUTOMATED_SENDER
    platform_domain: int = c.WEIGHT_PLATFORM_DOMAIN
    subject_pattern: int = c.WEIGHT_SUBJECT_PATTERN
    body_phrases: int = c.WEIGHT_BODY_PHRASES
    structure: int = c.WEIGHT_STRUCTURE
    max_structure: int = c.MAX_STRUCTURE
    html_heavy: int = c.WEIGHT_HTML_HEAVY
    tracking_pixel: int = c.WEIGHT_TRACKING_PIXEL
    image_heavy: int = c.WEIGHT_IMAGE_HEAVY
    link_density: int = c.WEIGHT_LINK_DENSITY
    personal_domain: int = c.PENALTY_PERSONAL_DOMAIN
    short_content: int = c.PENALTY_SHORT_CONTENT
    high_threshold: int = c.SCORE_HIGH
    medium_threshold: int = c.SCORE_MEDIUM
    newsletter_prefixes: list[str] = field(default_factory=lambda: list(c.NEWSLETTER_SENDER_PREFIXES))
    automated_patterns: list[str] = field(default_factory=lambda: list(c.AUTOMATED_SENDER_PATTERNS))
    platform_domains: list[str] = field(default_factory=lambda: list(c.NEWSLETTER_PLATFORM_DOMAINS))
    personal_domains: list[str] = field(default_factory=lambda: list(c.PERSONAL_DOMAINS))
    list_headers: list[str] = field(default_factory=lambda: list(c.LIST_HEADERS))

    def tier(self, score: int) -> Confidence:
        if score >= self.high_threshold:
            return Confidence.HIGH
        if score >= self.medium_threshold:
            return Confidence.MEDIUM
        return Confidence.LOW


Signal = Callable[[CandidateMessage, ScoringRubric], "tuple[int, str | None]"]


def _domain_matches(domain: str, candidates: Iterable[str]) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in candidates)


# --- header signals ---

def signal_list_unsubscribe(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if msg.headers.get("list-unsubscribe"):
        return rubric.list_unsubscribe, "Has List-Unsubscribe header"
    return 0, None


def signal_precedence(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if msg.headers.get("precedence", "").strip().lower() in ("bulk", "list"):
        return rubric.precedence_bulk, "Precedence: bulk"
    return 0, None


def signal_list_headers(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    found = sum(1 for h in rubric.list_headers if msg.headers.get(h))
    if not found:
        return 0, None
    points = min(found * rubric.list_header, rubric.max_list_headers)
    return points, f"Mailing-list headers detected (+{points})"


# --- sender signals ---

def signal_sender_pattern(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if any(msg.sender_email.startswith(p) for p in rubric.newsletter_prefixes):
        return rubric.sender_pattern, "Newsletter sender address"
    return 0, None


def signal_automated_sender(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    local = msg.sender_email.split("@", 1)[0]
    if any(p in local for p in rubric.automated_patterns):
        return rubric.automated_sender, "Automated sender address"
    return 0, None


def signal_platform_domain(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if _domain_matches(extract_domain(msg.sender_email), rubric.platform_domains):
        return rubric.platform_domain, "Sent from a newsletter platform"
    return 0, None


def signal_personal_domain(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if extract_domain(msg.sender_email) in rubric.personal_domains:
        return rubric.personal_domain, "Sent from a personal mail domain"
    return 0, None


# --- content signals ---

def signal_subject_pattern(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if _SUBJECT_RE.search(msg.subject):
        return rubric.subject_pattern, "Newsletter subject pattern"
    return 0, None


def signal_body_phrases(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if _BODY_PHRASE_RE.search(msg.text_body) or _BODY_PHRASE_RE.search(msg.html_body):
        return rubric.body_phrases, "Newsletter phrasing in body"
    return 0, None


def signal_structure(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    hits = sum(
        1 for pattern in _STRUCTURE_RES
        if pattern.search(msg.html_body) or pattern.search(msg.text_body)
    )
    if not hits:
        return 0, None
    points = min(hits * rubric.structure, rubric.max_structure)
    return points, f"Newsletter layout markers (+{points})"


def signal_html_ratio(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if msg.html_body and len(msg.html_body) > len(msg.text_body) * 2:
        return rubric.html_heavy, "HTML-heavy content"
    return 0, None


def signal_tracking_pixel(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    if any(_PIXEL_RE.search(tag) for tag in _IMG_RE.findall(msg.html_body)):
        return rubric.tracking_pixel, "Tracking pixel"
    return 0, None


def signal_image_heavy(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    images = len(_IMG_RE.findall(msg.html_body))
    if images >= c.IMAGE_HEAVY_THRESHOLD:
        return rubric.image_heavy, f"Image-heavy content ({images} images)"
    return 0, None


def signal_link_density(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    links = max(len(_URL_RE.findall(msg.text_body)), len(_HTML_LINK_RE.findall(msg.html_body)))
    if links > c.LINK_DENSITY_THRESHOLD:
        return rubric.link_density, f"High link density ({links} links)"
    return 0, None


def signal_short_content(msg: CandidateMessage, rubric: ScoringRubric) -> tuple[int, str | None]:
    length = len(msg.text_body) + len(msg.html_body)
    if length < c.SHORT_CONTENT_CHARS:
        return rubric.short_content, f"Very short content ({length} chars)"
    return 0, None


SIGNALS: list[Signal] = [
    signal_list_unsubscribe,
    signal_precedence,
    signal_list_headers,
    signal_sender_pattern,
    signal_automated_sender,
    signal_platform_domain,
    signal_subject_pattern,
    signal_body_phrases,
    signal_structure,
    signal_html_ratio,
    signal_tracking_pixel,
    signal_image_heavy,
    signal_link_density,
    signal_personal_domain,
    signal_short_content,
]

DEFAULT_RUBRIC = ScoringRubric()


def is_transactional(msg: CandidateMessage) -> bool:
    """Receipts, password resets and similar one-off mail are never newsletters."""
    return bool(_TRANSACTIONAL_RE.search(msg.subject))


def classify(msg: CandidateMessage, rubric: ScoringRubric = DEFAULT_RUBRIC) -> Classification:
    """Score a candidate and assign its confidence tier."""
    if is_transactional(msg):
        return Classification(Confidence.LOW, 0, ["Transactional subject"])

    total = 0
    reasons: list[str] = []
    for signal in SIGNALS:
        points, reason = signal(msg, rubric)
        if points:
            total += points
            reasons.append(reason)

    score = max(total, 0)
    return Classification(rubric.tier(score), score, reasons)


def classify_all(
    messages: list[CandidateMessage], rubric: ScoringRubric = DEFAULT_RUBRIC
) -> list[CandidateMessage]:
    """Annotate candidates with their classification in place."""
    for msg in messages:
        result = classify(msg, rubric)
        msg.confidence = result.confidence
        msg.score = result.score
        msg.reasons = result.reasons
    return messages
