"""Shared fixtures for tests."""

from __future__ import annotations

import copy
from datetime import timedelta

import pytest

from newsletter_sync.cache import MemoryCache
from newsletter_sync.config import Settings
from newsletter_sync.errors import ProviderPermanent
from newsletter_sync.models import CandidateMessage, EmailAccount, TokenSet, utcnow
from newsletter_sync.providers.base import ProviderClient, ProviderRegistry
from newsletter_sync.store import SQLiteStore
from newsletter_sync.sync import SyncOrchestrator

NEWSLETTER_HTML = (
    "<html><body><p>This week in Python: three new releases and a tutorial.</p>"
    '<a href="https://example.com/1">one</a><a href="https://example.com/2">two</a>'
    '<p><a href="https://example.com/browser">View in browser</a></p>'
    '<p>You are receiving this because you subscribed. '
    '<a href="https://example.com/unsub">Unsubscribe here</a></p>'
    '<img src="https://t.example.com/open.gif" width="1" height="1"></body></html>'
)


class FakeProviderClient(ProviderClient):
    """In-memory provider: messages are keyed by account email."""

    def __init__(self, provider: str = "gmail"):
        super().__init__(Settings())
        self.provider = provider
        self.messages: dict[str, list[CandidateMessage]] = {}
        self.list_errors: dict[str, Exception] = {}
        self.refresh_errors: dict[str, Exception] = {}
        self.full_messages: dict[str, CandidateMessage | Exception] = {}
        self.list_calls: list = []
        self.refreshed: list[str] = []

    def get_auth_url(self, state: str) -> str:
        return f"https://auth.example.com/{self.provider}?state={state}"

    def exchange_code(self, code: str) -> TokenSet:
        if code == "bad-code":
            raise ProviderPermanent("invalid authorization code", provider=self.provider)
        return TokenSet(f"access-{code}", f"refresh-{code}", utcnow() + timedelta(hours=1))

    def refresh_tokens(self, refresh_token: str) -> TokenSet:
        if refresh_token in self.refresh_errors:
            raise self.refresh_errors[refresh_token]
        self.refreshed.append(refresh_token)
        return TokenSet("fresh-access", "", utcnow() + timedelta(hours=1))

    def get_user_email(self, access_token: str) -> str:
        return "reader@example.com"

    def list_candidate_messages(self, account, message_filter):
        self.list_calls.append((account.email, message_filter))
        if account.email in self.list_errors:
            raise self.list_errors[account.email]
        messages = self.messages.get(account.email, [])
        if message_filter.since:
            messages = [m for m in messages if m.received_at >= message_filter.since]
        # domain entries list all recent mail and leave the matching to the gate
        if message_filter.senders and not message_filter.domains:
            messages = [m for m in messages if m.sender_email in message_filter.senders]
        return copy.deepcopy(messages)

    def fetch_message(self, account, message_id):
        result = self.full_messages[message_id]
        if isinstance(result, Exception):
            raise result
        return copy.deepcopy(result)


@pytest.fixture
def newsletter_message() -> CandidateMessage:
    return CandidateMessage(
        message_id="msg_nl_001",
        sender_email="newsletter@pythonweekly.com",
        sender_name="Python Weekly",
        subject="Python Weekly - Issue #642",
        text_body="This week in Python: three new releases. Unsubscribe: https://example.com/unsub",
        html_body=NEWSLETTER_HTML,
        headers={
            "list-unsubscribe": "<https://example.com/unsub>",
            "list-id": "<weekly.pythonweekly.com>",
            "precedence": "bulk",
        },
    )


@pytest.fixture
def personal_message() -> CandidateMessage:
    return CandidateMessage(
        message_id="msg_ps_001",
        sender_email="alice.smith@gmail.com",
        sender_name="Alice Smith",
        subject="Re: Lunch tomorrow?",
        text_body="Sounds good, see you at noon.",
    )


@pytest.fixture
def make_message():
    def _make(message_id: str, sender_email: str, subject: str = "Weekly digest", **kwargs) -> CandidateMessage:
        kwargs.setdefault("text_body", f"Body of {message_id}. " * 10)
        return CandidateMessage(
            message_id=message_id,
            sender_email=sender_email,
            subject=subject,
            **kwargs,
        )

    return _make


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    with SQLiteStore(db_path=tmp_path / "newsletters.db") as s:
        yield s


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def make_account(store):
    def _make(
        email: str = "reader@example.com",
        provider: str = "gmail",
        user_id: int = 1,
        refresh_token: str = "refresh",
        expires_in: timedelta = timedelta(hours=1),
        **kwargs,
    ) -> EmailAccount:
        return store.upsert_account(
            EmailAccount(
                user_id=user_id,
                provider=provider,
                email=email,
                access_token="access",
                refresh_token=refresh_token,
                token_expires_at=utcnow() + expires_in,
                **kwargs,
            )
        )

    return _make


@pytest.fixture
def fake_gmail() -> FakeProviderClient:
    return FakeProviderClient("gmail")


@pytest.fixture
def fake_outlook() -> FakeProviderClient:
    return FakeProviderClient("outlook")


@pytest.fixture
def registry(fake_gmail, fake_outlook) -> ProviderRegistry:
    return ProviderRegistry([fake_gmail, fake_outlook])


@pytest.fixture
def orchestrator(store, cache, registry) -> SyncOrchestrator:
    return SyncOrchestrator(store, cache, registry, max_workers=4)
