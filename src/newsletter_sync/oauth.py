"""OAuth connect/callback handling for email accounts."""

from __future__ import annotations

import logging
from typing import Mapping

from .constants import PROVIDER_GMAIL
from .errors import OAuthCallbackError, ProviderError
from .models import EmailAccount
from .providers.base import ProviderRegistry

logger = logging.getLogger(__name__)


def build_connect_url(registry: ProviderRegistry, provider: str) -> str:
    """Consent URL for connecting a mailbox; the provider travels in ``state``."""
    return registry.get_auth_url(provider)


def handle_oauth_callback(
    registry: ProviderRegistry,
    store,
    user_id: int,
    params: Mapping[str, str],
) -> EmailAccount:
    """Complete an OAuth redirect and create or refresh the connected account.

    ``params`` are the redirect's query parameters (``code``, ``state``,
    ``error``, ``error_description``).
    """
    if params.get("error"):
        raise OAuthCallbackError(params["error"], params.get("error_description"))

    code = params.get("code")
    if not code:
        raise OAuthCallbackError("missing_code", "No authorization code received")

    provider = params.get("state") or PROVIDER_GMAIL

    try:
        tokens = registry.handle_callback(provider, code)
        email = registry.get_user_info(provider, tokens.access_token)["email"]
    except ProviderError as exc:
        raise OAuthCallbackError("exchange_failed", str(exc)) from exc

    if not email:
        raise OAuthCallbackError("no_email", f"{provider} did not return a mailbox address")

    account = store.upsert_account(
        EmailAccount(
            user_id=user_id,
            provider=provider,
            email=email,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
        )
    )
    logger.info("Connected %s account %s for user %s", provider, email, user_id)
    return account
