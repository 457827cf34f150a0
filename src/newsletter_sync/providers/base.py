"""
Abstract base class for mail provider clients.
Defines the interface that the Gmail and Outlook clients implement.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from ..config import Settings
from ..constants import PROVIDER_TIMEOUT_SECONDS, TOKEN_REFRESH_MARGIN
from ..errors import AuthExpired, ProviderPermanent
from ..models import CandidateMessage, EmailAccount, MessageFilter, TokenSet, utcnow

logger = logging.getLogger(__name__)


class ProviderClient(ABC):
    """
    OAuth client and read-only message API for one mail provider.

    Implementations translate provider failures into AuthExpired,
    ProviderTransient or ProviderPermanent.
    """

    provider: str = ""

    def __init__(self, settings: Settings, timeout: float = PROVIDER_TIMEOUT_SECONDS):
        self.settings = settings
        self.timeout = timeout

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """Return the provider consent URL; ``state`` comes back on the redirect."""

    @abstractmethod
    def exchange_code(self, code: str) -> TokenSet:
        """Exchange an authorization code for tokens."""

    @abstractmethod
    def refresh_tokens(self, refresh_token: str) -> TokenSet:
        """Obtain a new access token. Raises AuthExpired if consent was revoked."""

    @abstractmethod
    def get_user_email(self, access_token: str) -> str:
        """Return the mailbox address the token belongs to."""

    @abstractmethod
    def list_candidate_messages(
        self, account: EmailAccount, message_filter: MessageFilter
    ) -> list[CandidateMessage]:
        """List and normalize candidate messages for an account."""

    @abstractmethod
    def fetch_message(self, account: EmailAccount, message_id: str) -> CandidateMessage:
        """Fetch one message with its full body."""

    def needs_refresh(self, account: EmailAccount, now: datetime | None = None) -> bool:
        if account.token_expires_at is None:
            return True
        now = now or utcnow()
        return account.token_expires_at - now <= TOKEN_REFRESH_MARGIN

    def ensure_fresh_token(self, account: EmailAccount) -> TokenSet | None:
        """Refresh the account's tokens when they are about to expire.

        Returns the new TokenSet (which the caller must persist) or None when
        the current token is still good.
        """
        if not self.needs_refresh(account):
            return None
        if not account.refresh_token:
            raise AuthExpired(
                f"No refresh token for {account.email}; reconnect the account",
                provider=self.provider,
            )
        logger.info("Refreshing %s token for %s", self.provider, account.email)
        tokens = self.refresh_tokens(account.refresh_token)
        if not tokens.refresh_token:
            tokens.refresh_token = account.refresh_token
        return tokens


class ProviderRegistry:
    """Selects the client for a provider tag."""

    def __init__(self, clients: Iterable[ProviderClient]):
        self._clients = {client.provider: client for client in clients}

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderRegistry:
        from .gmail import GmailClient
        from .outlook import OutlookClient

        return cls([GmailClient(settings), OutlookClient(settings)])

    @property
    def providers(self) -> list[str]:
        return sorted(self._clients)

    def client_for(self, provider: str) -> ProviderClient:
        try:
            return self._clients[provider]
        except KeyError:
            raise ProviderPermanent(f"Unsupported email provider: {provider!r}", provider=provider) from None

    def get_auth_url(self, provider: str) -> str:
        return self.client_for(provider).get_auth_url(state=provider)

    def handle_callback(self, provider: str, code: str) -> TokenSet:
        return self.client_for(provider).exchange_code(code)

    def get_user_info(self, provider: str, access_token: str) -> dict:
        return {"email": self.client_for(provider).get_user_email(access_token)}
