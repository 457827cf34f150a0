"""Data models for Newsletter Sync."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .constants import DEFAULT_SYNC_FREQUENCY


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_domain(email: str) -> str:
    """Return the lower-cased domain part of an address, or ""."""
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[1].strip().strip(">").lower()


def normalize_domain(domain: str) -> str:
    """Lower-case a domain and drop a leading "@"."""
    return (domain or "").strip().lstrip("@").lower()


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 2, "medium": 1, "low": 0}[self.value]


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SenderStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class TokenSet:
    """Tokens returned by a code exchange or refresh."""

    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass
class EmailAccount:
    """One connected external mailbox."""

    user_id: int
    provider: str  # "gmail" | "outlook"
    email: str
    access_token: str
    refresh_token: str
    token_expires_at: datetime
    id: int | None = None
    sync_enabled: bool = True
    sync_frequency: int = DEFAULT_SYNC_FREQUENCY  # seconds
    last_synced_at: datetime | None = None


@dataclass
class MessageFilter:
    """Narrows what a provider lists for one account."""

    since: datetime | None = None
    senders: list[str] = field(default_factory=list)
    domains: list[str] = field(default_factory=list)
    max_results: int | None = None


@dataclass
class CandidateMessage:
    """Provider-agnostic view of one external message, not yet imported."""

    message_id: str
    sender_email: str
    sender_name: str = ""
    subject: str = ""
    text_body: str = ""
    html_body: str = ""
    received_at: datetime = field(default_factory=utcnow)
    headers: dict[str, str] = field(default_factory=dict)
    # Classifier output
    confidence: Confidence = Confidence.LOW
    score: int = 0
    reasons: list[str] = field(default_factory=list)

    @property
    def has_body(self) -> bool:
        return bool(self.text_body or self.html_body)

    @property
    def sender_display(self) -> str:
        if self.sender_name:
            return f"{self.sender_name} <{self.sender_email}>"
        return self.sender_email

    def to_dict(self) -> dict:
        data = asdict(self)
        data["received_at"] = _iso(self.received_at)
        data["confidence"] = self.confidence.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> CandidateMessage:
        return cls(
            message_id=data["message_id"],
            sender_email=(data.get("sender_email") or "").lower(),
            sender_name=data.get("sender_name") or "",
            subject=data.get("subject") or "",
            text_body=data.get("text_body") or "",
            html_body=data.get("html_body") or "",
            received_at=_parse_iso(data.get("received_at")) or utcnow(),
            headers=dict(data.get("headers") or {}),
            confidence=Confidence(data.get("confidence") or "low"),
            score=int(data.get("score") or 0),
            reasons=list(data.get("reasons") or []),
        )


@dataclass
class Classification:
    confidence: Confidence
    score: int
    reasons: list[str] = field(default_factory=list)


@dataclass
class WhitelistEntry:
    user_id: int
    email: str
    name: str | None = None
    domain: str = ""
    id: int | None = None


@dataclass
class WhitelistedDomain:
    """Accepts every sender address under one domain, kept apart from address entries."""

    user_id: int
    domain: str
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Newsletter:
    """A persisted newsletter."""

    user_id: int
    email_account_id: int | None
    message_id: str
    subject: str
    sender: str
    sender_email: str
    content: str = ""
    html_content: str = ""
    id: int | None = None
    is_read: bool = False
    is_starred: bool = False
    is_archived: bool = False
    category: str = "uncategorized"
    priority: int = 0
    folder: str = "inbox"
    received_at: datetime = field(default_factory=utcnow)
    imported_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @classmethod
    def from_candidate(
        cls, candidate: CandidateMessage, account: EmailAccount
    ) -> Newsletter:
        return cls(
            user_id=account.user_id,
            email_account_id=account.id,
            message_id=candidate.message_id,
            subject=candidate.subject,
            sender=candidate.sender_display,
            sender_email=candidate.sender_email,
            content=candidate.text_body,
            html_content=candidate.html_body,
            received_at=candidate.received_at,
        )


@dataclass
class Rule:
    """A user-defined condition/action pair applied after import."""

    user_id: int
    name: str
    condition_type: str  # "sender" | "subject" | "content"
    condition_value: str
    action_type: str  # "category" | "priority" | "folder"
    action_value: str
    id: int | None = None
    is_active: bool = True
    priority: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SenderGroup:
    """Preview aggregate for one sender address."""

    email: str
    name: str
    count: int = 0
    confidence: Confidence = Confidence.LOW
    score: int = 0
    sample: CandidateMessage | None = None
    sample_subjects: list[str] = field(default_factory=list)
    is_whitelisted: bool = False
    imported_count: int = 0

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "name": self.name,
            "count": self.count,
            "confidence": self.confidence.value,
            "score": self.score,
            "sample": self.sample.to_dict() if self.sample else None,
            "sample_subjects": list(self.sample_subjects),
            "is_whitelisted": self.is_whitelisted,
            "imported_count": self.imported_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SenderGroup:
        sample = data.get("sample")
        return cls(
            email=data["email"],
            name=data.get("name") or "",
            count=data.get("count", 0),
            confidence=Confidence(data.get("confidence") or "low"),
            score=data.get("score", 0),
            sample=CandidateMessage.from_dict(sample) if sample else None,
            sample_subjects=list(data.get("sample_subjects") or []),
            is_whitelisted=data.get("is_whitelisted", False),
            imported_count=data.get("imported_count", 0),
        )


@dataclass
class PreviewResult:
    account_id: int
    groups: list[SenderGroup] = field(default_factory=list)
    candidates: list[CandidateMessage] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def total_messages(self) -> int:
        return len(self.candidates)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "groups": [g.to_dict() for g in self.groups],
            "candidates": [c.to_dict() for c in self.candidates],
            "generated_at": _iso(self.generated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> PreviewResult:
        return cls(
            account_id=data["account_id"],
            groups=[SenderGroup.from_dict(g) for g in data.get("groups", [])],
            candidates=[CandidateMessage.from_dict(c) for c in data.get("candidates", [])],
            generated_at=_parse_iso(data.get("generated_at")) or utcnow(),
        )


@dataclass
class SenderResult:
    email: str
    status: SenderStatus
    count: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "status": self.status.value,
            "count": self.count,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SenderResult:
        return cls(
            email=data["email"],
            status=SenderStatus(data["status"]),
            count=data.get("count", 0),
            error=data.get("error"),
        )


@dataclass
class ImportResult:
    account_id: int
    imported_count: int = 0
    skipped_count: int = 0
    total_processed: int = 0
    results: list[SenderResult] = field(default_factory=list)


@dataclass
class AccountSyncResult:
    account_id: int
    email: str
    provider: str
    success: bool = True
    synced_count: int = 0
    total_processed: int = 0
    results: list[SenderResult] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    message: str = ""


@dataclass
class SyncReport:
    success: bool = True
    synced_count: int = 0
    accounts: list[AccountSyncResult] = field(default_factory=list)
    message: str = ""

    @property
    def failed_accounts(self) -> list[AccountSyncResult]:
        return [a for a in self.accounts if not a.success]

    @property
    def per_sender_results(self) -> list[SenderResult]:
        return [r for a in self.accounts for r in a.results]


@dataclass
class SyncProgress:
    """Cache-resident snapshot of one account's sync run."""

    user_id: int
    account_id: int
    status: SyncStatus = SyncStatus.IDLE
    progress: int = 0  # percent
    synced: int = 0
    total_processed: int = 0
    total: int = 0
    results: list[SenderResult] = field(default_factory=list)
    message: str = ""
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "account_id": self.account_id,
            "status": self.status.value,
            "progress": self.progress,
            "synced": self.synced,
            "total_processed": self.total_processed,
            "total": self.total,
            "results": [r.to_dict() for r in self.results],
            "message": self.message,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SyncProgress:
        return cls(
            user_id=data["user_id"],
            account_id=data["account_id"],
            status=SyncStatus(data.get("status", "idle")),
            progress=data.get("progress", 0),
            synced=data.get("synced", 0),
            total_processed=data.get("total_processed", 0),
            total=data.get("total", 0),
            results=[SenderResult.from_dict(r) for r in data.get("results", [])],
            message=data.get("message", ""),
            updated_at=_parse_iso(data.get("updated_at")) or utcnow(),
        )
