"""Outlook client: Microsoft identity platform OAuth via msal and Microsoft Graph mail."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator

import httpx
import msal
import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..constants import (
    GRAPH_BASE_URL,
    MAX_CANDIDATES,
    MICROSOFT_LOGIN_URL,
    OUTLOOK_SCOPES,
    PAGE_SIZE,
    PROVIDER_OUTLOOK,
)
from ..errors import AuthExpired, ClassificationSkipped, ProviderPermanent, ProviderTransient
from ..models import CandidateMessage, EmailAccount, MessageFilter, TokenSet, utcnow
from ..normalizer import normalize_outlook
from .base import ProviderClient

logger = logging.getLogger(__name__)

MESSAGE_FIELDS = "id,subject,from,sender,receivedDateTime,body,bodyPreview,internetMessageHeaders"
AUTH_EXPIRED_ERRORS = ("invalid_grant", "interaction_required", "consent_required")
TRANSIENT_TOKEN_ERRORS = ("temporarily_unavailable", "server_error")
SENDERS_PER_FILTER = 15


def _is_retryable_status(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TimeoutException)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or ""
    return body.get("error_description") or str(error or "")


@contextmanager
def outlook_errors() -> Iterator[None]:
    """Translate httpx failures into the provider error taxonomy."""
    try:
        yield
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        message = f"Graph API error {status}: {_error_message(exc.response)}"
        if status == 401:
            raise AuthExpired(message, provider=PROVIDER_OUTLOOK, status=status) from exc
        if status == 429 or status >= 500:
            raise ProviderTransient(message, provider=PROVIDER_OUTLOOK, status=status) from exc
        raise ProviderPermanent(message, provider=PROVIDER_OUTLOOK, status=status) from exc
    except httpx.TransportError as exc:
        raise ProviderTransient(f"Outlook request failed: {exc}", provider=PROVIDER_OUTLOOK) from exc


def build_filter(message_filter: MessageFilter) -> str:
    """OData ``$filter`` expression for a message filter ("" when unfiltered)."""
    clauses = []
    if message_filter.since:
        since = message_filter.since.strftime("%Y-%m-%dT%H:%M:%SZ")
        clauses.append(f"receivedDateTime ge {since}")
    if message_filter.senders:
        senders = " or ".join(
            "from/emailAddress/address eq '{}'".format(s.replace("'", "''"))
            for s in sorted(set(message_filter.senders))
        )
        clauses.append(f"({senders})")
    return " and ".join(clauses)


def _token_set(result: dict, fallback_refresh_token: str = "") -> TokenSet:
    return TokenSet(
        access_token=result["access_token"],
        refresh_token=result.get("refresh_token") or fallback_refresh_token,
        expires_at=utcnow() + timedelta(seconds=int(result.get("expires_in", 3600))),
    )


def _raise_for_token_error(result: dict) -> None:
    """msal reports failures in the result dict instead of raising."""
    if "access_token" in result:
        return
    error = result.get("error", "")
    message = f"Token request failed: {result.get('error_description') or error or 'unknown error'}"
    if error in AUTH_EXPIRED_ERRORS:
        raise AuthExpired(message, provider=PROVIDER_OUTLOOK)
    if error in TRANSIENT_TOKEN_ERRORS:
        raise ProviderTransient(message, provider=PROVIDER_OUTLOOK)
    raise ProviderPermanent(message, provider=PROVIDER_OUTLOOK)


class OutlookClient(ProviderClient):
    """
    Outlook provider: msal for the Microsoft identity platform, httpx for Graph.

    Pass ``msal_app`` (anything with the ConfidentialClientApplication token
    methods) or ``http_client`` (e.g. one built on ``httpx.MockTransport``)
    to replace the network.
    """

    provider = PROVIDER_OUTLOOK

    def __init__(self, settings, http_client: httpx.Client | None = None, msal_app=None, **kwargs):
        super().__init__(settings, **kwargs)
        self._http = http_client or httpx.Client(timeout=self.timeout)
        self._msal_app = msal_app

    @property
    def authority(self) -> str:
        return f"{MICROSOFT_LOGIN_URL}/{self.settings.outlook_tenant}"

    def _get_msal_app(self) -> msal.ConfidentialClientApplication:
        """Created on first use; msal fetches the tenant metadata on construction."""
        if self._msal_app is None:
            try:
                self._msal_app = msal.ConfidentialClientApplication(
                    self.settings.outlook_client_id,
                    authority=self.authority,
                    client_credential=self.settings.outlook_client_secret,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                raise ProviderTransient(f"Microsoft login unavailable: {exc}", provider=self.provider) from exc
            except ValueError as exc:
                raise ProviderPermanent(f"Invalid Outlook configuration: {exc}", provider=self.provider) from exc
        return self._msal_app

    # --- OAuth ---

    def get_auth_url(self, state: str) -> str:
        return self._get_msal_app().get_authorization_request_url(
            OUTLOOK_SCOPES,
            state=state,
            redirect_uri=self.settings.outlook_redirect_uri,
            prompt="consent",
            response_mode="query",
        )

    def exchange_code(self, code: str) -> TokenSet:
        app = self._get_msal_app()
        try:
            result = app.acquire_token_by_authorization_code(
                code, scopes=OUTLOOK_SCOPES, redirect_uri=self.settings.outlook_redirect_uri
            )
        except requests.RequestException as exc:
            raise ProviderTransient(f"Token request failed: {exc}", provider=self.provider) from exc
        _raise_for_token_error(result)
        return _token_set(result)

    def refresh_tokens(self, refresh_token: str) -> TokenSet:
        app = self._get_msal_app()
        try:
            result = app.acquire_token_by_refresh_token(refresh_token, scopes=OUTLOOK_SCOPES)
        except requests.RequestException as exc:
            raise ProviderTransient(f"Token refresh failed: {exc}", provider=self.provider) from exc
        _raise_for_token_error(result)
        return _token_set(result, fallback_refresh_token=refresh_token)

    # --- Graph ---

    @retry(
        retry=retry_if_exception(_is_retryable_status),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        stop=stop_after_attempt(4),
        reraise=True,
    )
    def _get(self, access_token: str, url: str, params: dict | None = None) -> dict:
        response = self._http.get(
            url,
            params=params,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Prefer": 'outlook.body-content-type="html"',
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def get_user_email(self, access_token: str) -> str:
        with outlook_errors():
            me = self._get(access_token, f"{GRAPH_BASE_URL}/me")
        return (me.get("mail") or me.get("userPrincipalName") or "").lower()

    def _list_pages(self, account: EmailAccount, params: dict, limit: int) -> list[dict]:
        items: list[dict] = []
        url: str | None = f"{GRAPH_BASE_URL}/me/messages"
        while url and len(items) < limit:
            with outlook_errors():
                page = self._get(account.access_token, url, params)
            items.extend(page.get("value", []))
            url = page.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None
        return items[:limit]

    def list_candidate_messages(
        self, account: EmailAccount, message_filter: MessageFilter
    ) -> list[CandidateMessage]:
        limit = message_filter.max_results or MAX_CANDIDATES
        # Graph cannot filter on the sender domain, so domain entries list all recent mail
        senders = [] if message_filter.domains else sorted(set(message_filter.senders))
        chunks = [
            MessageFilter(since=message_filter.since, senders=senders[i:i + SENDERS_PER_FILTER])
            for i in range(0, len(senders), SENDERS_PER_FILTER)
        ] or [MessageFilter(since=message_filter.since)]

        raw_items: list[dict] = []
        for chunk in chunks:
            params = {"$top": PAGE_SIZE, "$select": MESSAGE_FIELDS}
            odata_filter = build_filter(chunk)
            if odata_filter:
                params["$filter"] = odata_filter
            # Graph rejects $orderby unless it leads the $filter
            if not odata_filter or odata_filter.startswith("receivedDateTime"):
                params["$orderby"] = "receivedDateTime desc"
            raw_items.extend(self._list_pages(account, params, limit - len(raw_items)))
            if len(raw_items) >= limit:
                break

        messages: list[CandidateMessage] = []
        seen: set[str] = set()
        for raw in raw_items:
            try:
                msg = normalize_outlook(raw)
            except ClassificationSkipped as exc:
                logger.info("Skipping Outlook message: %s", exc)
                continue
            if msg.message_id not in seen:
                seen.add(msg.message_id)
                messages.append(msg)

        logger.info("Found %d candidate messages for %s", len(messages), account.email)
        return messages

    def fetch_message(self, account: EmailAccount, message_id: str) -> CandidateMessage:
        with outlook_errors():
            raw = self._get(
                account.access_token,
                f"{GRAPH_BASE_URL}/me/messages/{message_id}",
                {"$select": MESSAGE_FIELDS},
            )
        return normalize_outlook(raw)

    def close(self) -> None:
        self._http.close()
