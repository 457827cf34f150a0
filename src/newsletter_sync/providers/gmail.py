"""Gmail API client: OAuth web flow, message listing and batched full fetches."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timezone
from typing import Callable, Iterator

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..constants import (
    BATCH_SIZE,
    GMAIL_SCOPES,
    GMAIL_SEARCH_QUERIES,
    GOOGLE_AUTH_URI,
    GOOGLE_TOKEN_URI,
    MAX_CANDIDATES,
    PAGE_SIZE,
    PROVIDER_GMAIL,
)
from ..errors import (
    AuthExpired,
    ClassificationSkipped,
    ProviderError,
    ProviderPermanent,
    ProviderTransient,
)
from ..models import CandidateMessage, EmailAccount, MessageFilter, TokenSet, utcnow
from ..normalizer import normalize_gmail
from .base import ProviderClient

logger = logging.getLogger(__name__)

SENDERS_PER_QUERY = 20


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in (429, 500, 502, 503)


def translate_http_error(exc: HttpError) -> ProviderError:
    status = exc.resp.status
    message = f"Gmail API error {status}: {exc._get_reason()}"
    if status == 401:
        return AuthExpired(message, provider=PROVIDER_GMAIL, status=status)
    if status == 429 or status >= 500:
        return ProviderTransient(message, provider=PROVIDER_GMAIL, status=status)
    return ProviderPermanent(message, provider=PROVIDER_GMAIL, status=status)


@contextmanager
def gmail_errors() -> Iterator[None]:
    """Translate Google client exceptions into the provider error taxonomy."""
    try:
        yield
    except HttpError as exc:
        raise translate_http_error(exc) from exc
    except RefreshError as exc:
        raise AuthExpired(f"Gmail refresh failed: {exc}", provider=PROVIDER_GMAIL) from exc
    except (TransportError, TimeoutError, ConnectionError) as exc:
        raise ProviderTransient(f"Gmail request failed: {exc}", provider=PROVIDER_GMAIL) from exc


def _to_utc(expiry) -> object:
    if expiry is None:
        return utcnow()
    return expiry if expiry.tzinfo else expiry.replace(tzinfo=timezone.utc)


def _default_service_factory(credentials: Credentials):
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=60),
    stop=stop_after_attempt(5),
    reraise=True,
)
def _execute(request) -> dict:
    return request.execute()


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=60),
    stop=stop_after_attempt(5),
    reraise=True,
)
def _execute_batch(batch: BatchHttpRequest) -> None:
    batch.execute()


def build_queries(message_filter: MessageFilter) -> list[str]:
    """Gmail search queries for a filter: sender queries, or the newsletter searches.

    Whitelisted domains go into the same ``from:`` clause; Gmail matches a
    bare domain against the sender address.
    """
    suffix = f" after:{message_filter.since:%Y/%m/%d}" if message_filter.since else ""
    terms = sorted(set(message_filter.senders)) + sorted(set(message_filter.domains))
    if terms:
        return [
            "from:(" + " OR ".join(terms[i:i + SENDERS_PER_QUERY]) + ")" + suffix
            for i in range(0, len(terms), SENDERS_PER_QUERY)
        ]
    return [q + suffix for q in GMAIL_SEARCH_QUERIES]


def list_message_ids(
    service,
    query: str | None = None,
    max_results: int | None = None,
) -> list[str]:
    """List all message IDs matching the query, handling pagination."""
    ids: list[str] = []
    page_token: str | None = None

    while True:
        kwargs: dict = {"userId": "me", "maxResults": PAGE_SIZE, "fields": "messages/id,nextPageToken"}
        if query:
            kwargs["q"] = query
        if page_token:
            kwargs["pageToken"] = page_token

        resp = _execute(service.users().messages().list(**kwargs))
        for msg in resp.get("messages", []):
            ids.append(msg["id"])
            if max_results and len(ids) >= max_results:
                return ids[:max_results]

        page_token = resp.get("nextPageToken")
        if not page_token:
            break

    return ids


def fetch_full_messages(
    service,
    message_ids: list[str],
    callback: Callable[[int, int], None] | None = None,
) -> list[CandidateMessage]:
    """Fetch and normalize full messages in batches using BatchHttpRequest.

    Items rejected with a retryable status (per-item 429 rateLimitExceeded,
    5xx) are requested again one by one; if they still fail the error is
    raised as ``ProviderTransient``. Other failures and messages that cannot
    be normalized are skipped.
    """
    results: dict[str, CandidateMessage] = {}
    retry_ids: list[str] = []
    total_batches = (len(message_ids) + BATCH_SIZE - 1) // BATCH_SIZE

    def _store_result(msg_id: str, raw: dict) -> None:
        try:
            results[msg_id] = normalize_gmail(raw)
        except ClassificationSkipped as exc:
            logger.info("Skipping Gmail message %s: %s", msg_id, exc)

    for batch_num in range(total_batches):
        chunk = message_ids[batch_num * BATCH_SIZE:(batch_num + 1) * BATCH_SIZE]
        batch = service.new_batch_http_request()

        def _make_callback(msg_id: str):
            def _cb(request_id, response, exception):
                if exception is None:
                    _store_result(msg_id, response)
                elif _is_retryable_http_error(exception):
                    retry_ids.append(msg_id)
                else:
                    logger.warning("Skipping Gmail message %s: %s", msg_id, exception)

            return _cb

        for msg_id in chunk:
            batch.add(
                service.users().messages().get(userId="me", id=msg_id, format="full"),
                callback=_make_callback(msg_id),
            )

        _execute_batch(batch)

        if callback:
            callback(batch_num + 1, total_batches)

    if retry_ids:
        logger.info("Retrying %d rate-limited Gmail messages", len(retry_ids))
    for msg_id in retry_ids:
        with gmail_errors():
            raw = _execute(service.users().messages().get(userId="me", id=msg_id, format="full"))
        _store_result(msg_id, raw)

    return [results[i] for i in message_ids if i in results]


class GmailClient(ProviderClient):
    """
    Gmail provider using the Google API client.

    ``service_factory`` builds a Gmail service from credentials and
    ``flow_factory`` builds the OAuth flow; both exist so tests can stub
    the network.
    """

    provider = PROVIDER_GMAIL

    def __init__(self, settings, service_factory=None, flow_factory=None, **kwargs):
        super().__init__(settings, **kwargs)
        self._service_factory = service_factory or _default_service_factory
        self._flow_factory = flow_factory or self._default_flow

    def _client_config(self) -> dict:
        return {
            "web": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.settings.google_redirect_uri],
            }
        }

    def _default_flow(self) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=GMAIL_SCOPES,
            redirect_uri=self.settings.google_redirect_uri,
            autogenerate_code_verifier=False,
        )

    def _credentials(self, access_token: str, refresh_token: str | None = None, expiry=None) -> Credentials:
        if expiry is not None:
            # google-auth compares expiry against naive UTC
            expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
        return Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=GMAIL_SCOPES,
            expiry=expiry,
        )

    def _service(self, account: EmailAccount):
        return self._service_factory(
            self._credentials(account.access_token, account.refresh_token, account.token_expires_at)
        )

    # --- OAuth ---

    def get_auth_url(self, state: str) -> str:
        flow = self._flow_factory()
        url, _ = flow.authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
            state=state,
        )
        return url

    def exchange_code(self, code: str) -> TokenSet:
        flow = self._flow_factory()
        try:
            flow.fetch_token(code=code)
        except OAuth2Error as exc:
            raise ProviderPermanent(f"Gmail code exchange failed: {exc}", provider=self.provider) from exc
        creds = flow.credentials
        return TokenSet(
            access_token=creds.token,
            refresh_token=creds.refresh_token or "",
            expires_at=_to_utc(creds.expiry),
        )

    def refresh_tokens(self, refresh_token: str) -> TokenSet:
        creds = self._credentials(access_token=None, refresh_token=refresh_token)
        with gmail_errors():
            creds.refresh(Request())
        return TokenSet(
            access_token=creds.token,
            refresh_token=creds.refresh_token or refresh_token,
            expires_at=_to_utc(creds.expiry),
        )

    def get_user_email(self, access_token: str) -> str:
        service = self._service_factory(self._credentials(access_token))
        with gmail_errors():
            profile = _execute(service.users().getProfile(userId="me"))
        return profile["emailAddress"].lower()

    # --- messages ---

    def list_candidate_messages(
        self, account: EmailAccount, message_filter: MessageFilter
    ) -> list[CandidateMessage]:
        service = self._service(account)
        limit = message_filter.max_results or MAX_CANDIDATES
        queries = build_queries(message_filter)
        # only the generic newsletter searches may partially fail
        tolerate_failures = not (message_filter.senders or message_filter.domains)

        ids: dict[str, None] = {}
        failures = 0
        for query in queries:
            remaining = limit - len(ids)
            if remaining <= 0:
                break
            try:
                with gmail_errors():
                    found = list_message_ids(service, query=query, max_results=remaining)
            except (AuthExpired, ProviderPermanent):
                raise
            except ProviderTransient as exc:
                failures += 1
                logger.warning("Gmail search %r failed for %s: %s", query, account.email, exc)
                if not tolerate_failures or failures == len(queries):
                    raise
                continue
            for msg_id in found:
                ids.setdefault(msg_id, None)

        logger.info("Found %d candidate messages for %s", len(ids), account.email)
        if not ids:
            return []

        with gmail_errors():
            return fetch_full_messages(service, list(ids)[:limit])

    def fetch_message(self, account: EmailAccount, message_id: str) -> CandidateMessage:
        service = self._service(account)
        with gmail_errors():
            raw = _execute(service.users().messages().get(userId="me", id=message_id, format="full"))
        return normalize_gmail(raw)
