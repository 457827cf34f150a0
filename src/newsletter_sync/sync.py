"""Sync orchestrator: preview, whitelist commit and multi-account sync runs."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Mapping

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from .cache import CachePort
from .classifier import DEFAULT_RUBRIC, ScoringRubric, classify_all
from .constants import (
    ARCHIVE_RETENTION,
    INITIAL_SYNC_WINDOW,
    PREVIEW_CACHE_TTL,
    PROGRESS_CACHE_TTL,
    SYNC_OVERLAP,
)
from .errors import (
    AccountNotFound,
    DuplicateSkipped,
    NewsletterNotFound,
    NewsletterSyncError,
    ProviderError,
    StoreWriteFailed,
)
from .gate import (
    admit,
    group_admitted_by_sender,
    is_whitelisted,
    normalize_domains,
    normalize_whitelist,
)
from .models import (
    AccountSyncResult,
    CandidateMessage,
    EmailAccount,
    ImportResult,
    MessageFilter,
    Newsletter,
    PreviewResult,
    Rule,
    SenderResult,
    SenderStatus,
    SyncProgress,
    SyncReport,
    SyncStatus,
    utcnow,
)
from .preview import annotate_groups, group_by_sender, sort_groups
from .providers.base import ProviderClient, ProviderRegistry
from .rules import apply_rules
from .store import Store

logger = logging.getLogger(__name__)

NO_WHITELIST_MESSAGE = "No whitelisted senders configured"


def progress_key(user_id: int, account_id: int) -> str:
    return f"sync-progress:{user_id}:{account_id}"


def preview_key(account_id: int) -> str:
    return f"preview:{account_id}"


@retry(
    retry=retry_if_exception_type(StoreWriteFailed),
    wait=wait_fixed(0.2),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _insert_with_retry(store: Store, newsletter: Newsletter) -> Newsletter:
    return store.insert_newsletter(newsletter)


@dataclass
class _ImportOutcome:
    synced: int = 0
    skipped: int = 0
    processed: int = 0
    results: list[SenderResult] = field(default_factory=list)
    # received_at of the oldest candidate that failed and must be listed again
    oldest_failure: datetime | None = None

    def record_failure(self, msg: CandidateMessage) -> None:
        if self.oldest_failure is None or msg.received_at < self.oldest_failure:
            self.oldest_failure = msg.received_at

    def watermark(self, started_at: datetime) -> datetime:
        """The last_synced_at value that keeps failed candidates inside the next window."""
        if self.oldest_failure is None:
            return started_at
        return min(started_at, self.oldest_failure)


class SyncOrchestrator:
    """
    Drives provider clients, the classifier, the whitelist gate and the store.

    Accounts of one run are processed concurrently; writes for a single
    account are serialized by a per-account lock.
    """

    def __init__(
        self,
        store: Store,
        cache: CachePort,
        registry: ProviderRegistry,
        rubric: ScoringRubric = DEFAULT_RUBRIC,
        max_workers: int = 4,
    ):
        self.store = store
        self.cache = cache
        self.registry = registry
        self.rubric = rubric
        self.max_workers = max(1, max_workers)
        self._locks: defaultdict[int, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    # --- helpers ---

    def _account_lock(self, account_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks[account_id]

    def _load_account(self, account_id: int) -> EmailAccount:
        account = self.store.find_account_by_id(account_id)
        if account is None:
            raise AccountNotFound(f"Email account {account_id} not found")
        return account

    def _whitelist(self, user_id: int) -> set[str]:
        return normalize_whitelist(e.email for e in self.store.find_whitelist_by_user(user_id))

    def _whitelisted_domains(self, user_id: int) -> set[str]:
        return normalize_domains(d.domain for d in self.store.find_whitelisted_domains_by_user(user_id))

    def _publish(self, progress: SyncProgress) -> None:
        progress.updated_at = utcnow()
        self.cache.set(
            progress_key(progress.user_id, progress.account_id),
            progress.to_dict(),
            ttl_seconds=PROGRESS_CACHE_TTL,
        )

    def _ensure_token(self, account: EmailAccount, client: ProviderClient) -> None:
        tokens = client.ensure_fresh_token(account)
        if tokens is None:
            return
        self.store.update_account_tokens(account.id, tokens)
        account.access_token = tokens.access_token
        account.refresh_token = tokens.refresh_token
        account.token_expires_at = tokens.expires_at

    def _acquire_candidates(
        self, account: EmailAccount, message_filter: MessageFilter
    ) -> list[CandidateMessage]:
        """Refresh the token if needed, list candidates and classify them."""
        client = self.registry.client_for(account.provider)
        self._ensure_token(account, client)
        candidates = client.list_candidate_messages(account, message_filter)
        return classify_all(candidates, self.rubric)

    @staticmethod
    def _since(account: EmailAccount, now: datetime) -> datetime:
        if account.last_synced_at:
            return account.last_synced_at - SYNC_OVERLAP
        return now - INITIAL_SYNC_WINDOW

    # --- preview ---

    def start_preview(self, account_id: int) -> PreviewResult:
        """List and classify recent mail grouped by sender. Writes nothing to the store."""
        account = self._load_account(account_id)
        candidates = self._acquire_candidates(
            account, MessageFilter(since=utcnow() - INITIAL_SYNC_WINDOW)
        )

        groups = sort_groups(group_by_sender(candidates).values())
        annotate_groups(
            groups,
            self._whitelist(account.user_id),
            self.store.count_imported_by_sender(account.id),
            self._whitelisted_domains(account.user_id),
        )

        result = PreviewResult(account_id=account.id, groups=groups, candidates=candidates)
        self.cache.set(preview_key(account.id), result.to_dict(), ttl_seconds=PREVIEW_CACHE_TTL)
        logger.info(
            "Preview for %s: %d messages from %d senders",
            account.email,
            result.total_messages,
            len(groups),
        )
        return result

    def cached_preview(self, account_id: int) -> PreviewResult | None:
        data = self.cache.get(preview_key(account_id))
        return PreviewResult.from_dict(data) if data else None

    @staticmethod
    def _candidates_from_preview(preview_data) -> list[CandidateMessage]:
        if isinstance(preview_data, PreviewResult):
            items: Iterable = preview_data.candidates
        elif isinstance(preview_data, Mapping):
            items = preview_data.get("candidates") or [
                g["sample"] for g in preview_data.get("groups", []) if g.get("sample")
            ]
        else:
            items = preview_data
        return [c if isinstance(c, CandidateMessage) else CandidateMessage.from_dict(c) for c in items]

    # --- import ---

    def _import_candidates(
        self,
        account: EmailAccount,
        candidates: list[CandidateMessage],
        whitelist: set[str],
        progress: SyncProgress,
        domains: set[str] = frozenset(),
    ) -> _ImportOutcome:
        outcome = _ImportOutcome()

        with self._account_lock(account.id):
            already = self.store.find_imported_message_ids(account.id)
            admitted = admit(candidates, whitelist, already, domains=domains)
            whitelisted = [c for c in candidates if is_whitelisted(c.sender_email, whitelist, domains)]
            outcome.skipped = len(whitelisted) - len(admitted)

            rules: list[Rule] = self.store.find_active_rules_by_user(account.user_id)
            by_sender = group_admitted_by_sender(admitted)
            client = None
            if any(not c.has_body for c in admitted):
                client = self.registry.client_for(account.provider)
                self._ensure_token(account, client)

            progress.total = len(admitted)
            self._publish(progress)

            for sender, messages in by_sender.items():
                imported = 0
                error = None
                for msg in messages:
                    try:
                        self._import_one(account, client, msg, rules)
                        imported += 1
                    except DuplicateSkipped:
                        outcome.skipped += 1
                    except (ProviderError, StoreWriteFailed) as exc:
                        error = error or str(exc)
                        outcome.record_failure(msg)
                        logger.warning(
                            "Import of %s from %s failed for %s: %s",
                            msg.message_id,
                            sender,
                            account.email,
                            exc,
                        )
                    outcome.processed += 1
                    progress.total_processed = outcome.processed
                    progress.synced = outcome.synced + imported
                    progress.progress = outcome.processed * 100 // max(progress.total, 1)
                    self._publish(progress)

                outcome.synced += imported
                status = SenderStatus.ERROR if error else SenderStatus.SUCCESS
                outcome.results.append(SenderResult(sender, status, imported, error))

            for sender in sorted({c.sender_email for c in whitelisted} - set(by_sender)):
                outcome.results.append(SenderResult(sender, SenderStatus.SKIPPED))

        return outcome

    def _import_one(
        self,
        account: EmailAccount,
        client: ProviderClient | None,
        msg: CandidateMessage,
        rules: list[Rule],
    ) -> Newsletter:
        if not msg.has_body and client is not None:
            full = client.fetch_message(account, msg.message_id)
            msg.text_body = full.text_body
            msg.html_body = full.html_body

        newsletter = _insert_with_retry(self.store, Newsletter.from_candidate(msg, account))
        if rules:
            apply_rules(self.store, newsletter, rules)
        return newsletter

    def commit_whitelist_and_import(
        self,
        account_id: int,
        accepted_senders: Iterable[str],
        preview_data=None,
        accepted_domains: Iterable[str] = (),
    ) -> ImportResult:
        """Whitelist the accepted senders (and domains) and import their messages.

        ``preview_data`` (a PreviewResult, its ``to_dict()`` form, or a list
        of candidates) is reused when given; otherwise the accepted senders'
        messages are listed again from the provider. Domain entries are stored
        apart from address entries and admit every sender of that domain.
        """
        account = self._load_account(account_id)
        accepted = normalize_whitelist(accepted_senders)
        domains = normalize_domains(accepted_domains)
        started_at = utcnow()

        candidates = None
        if preview_data is not None:
            candidates = self._candidates_from_preview(preview_data)
        names = {c.sender_email: c.sender_name for c in candidates or [] if c.sender_name}
        for email in sorted(accepted):
            self.store.upsert_whitelist_entry(account.user_id, email, names.get(email))
        for domain in sorted(domains):
            self.store.upsert_whitelisted_domain(account.user_id, domain)

        progress = SyncProgress(
            user_id=account.user_id,
            account_id=account.id,
            status=SyncStatus.SYNCING,
            message=f"Importing from {len(accepted)} senders and {len(domains)} domains",
        )
        self._publish(progress)

        try:
            if candidates is None:
                candidates = self._acquire_candidates(
                    account,
                    MessageFilter(
                        since=started_at - INITIAL_SYNC_WINDOW,
                        senders=sorted(accepted),
                        domains=sorted(domains),
                    ),
                )
            outcome = self._import_candidates(account, candidates, accepted, progress, domains)
        except NewsletterSyncError as exc:
            progress.status = SyncStatus.ERROR
            progress.message = str(exc)
            self._publish(progress)
            raise

        self.store.update_account_last_synced(account.id, outcome.watermark(started_at))
        self.cache.delete(preview_key(account.id))

        progress.status = SyncStatus.SUCCESS
        progress.progress = 100
        progress.results = outcome.results
        progress.message = f"Imported {outcome.synced} newsletters"
        self._publish(progress)

        logger.info(
            "Imported %d newsletters for %s (%d skipped)",
            outcome.synced,
            account.email,
            outcome.skipped,
        )
        return ImportResult(
            account_id=account.id,
            imported_count=outcome.synced,
            skipped_count=outcome.skipped,
            total_processed=outcome.processed,
            results=outcome.results,
        )

    # --- sync runs ---

    def _sync_account(self, account: EmailAccount) -> AccountSyncResult:
        result = AccountSyncResult(account_id=account.id, email=account.email, provider=account.provider)
        progress = SyncProgress(
            user_id=account.user_id, account_id=account.id, status=SyncStatus.SYNCING
        )
        started_at = utcnow()

        try:
            whitelist = self._whitelist(account.user_id)
            domains = self._whitelisted_domains(account.user_id)
            if not whitelist and not domains:
                result.message = NO_WHITELIST_MESSAGE
                progress.status = SyncStatus.SUCCESS
                progress.progress = 100
                progress.message = NO_WHITELIST_MESSAGE
                self._publish(progress)
                return result

            self._publish(progress)
            candidates = self._acquire_candidates(
                account,
                MessageFilter(
                    since=self._since(account, started_at),
                    senders=sorted(whitelist),
                    domains=sorted(domains),
                ),
            )
            outcome = self._import_candidates(account, candidates, whitelist, progress, domains)
            self.store.update_account_last_synced(account.id, outcome.watermark(started_at))
            if outcome.oldest_failure is not None:
                logger.info(
                    "Keeping %s sync window open from %s for failed messages",
                    account.email,
                    outcome.oldest_failure,
                )
        except NewsletterSyncError as exc:
            logger.warning("Sync failed for %s: %s", account.email, exc)
            return self._account_failed(result, progress, exc)
        except Exception as exc:
            logger.exception("Unexpected error syncing %s", account.email)
            return self._account_failed(result, progress, exc)

        result.synced_count = outcome.synced
        result.total_processed = outcome.processed
        result.results = outcome.results
        result.message = f"Synced {outcome.synced} newsletters"

        progress.status = SyncStatus.SUCCESS
        progress.progress = 100
        progress.results = outcome.results
        progress.message = result.message
        self._publish(progress)
        return result

    def _account_failed(
        self, result: AccountSyncResult, progress: SyncProgress, exc: Exception
    ) -> AccountSyncResult:
        result.success = False
        result.error = str(exc)
        result.error_type = type(exc).__name__
        result.message = f"Sync failed: {exc}"
        progress.status = SyncStatus.ERROR
        progress.message = result.message
        self._publish(progress)
        return result

    def _fan_out(self, accounts: list[EmailAccount]) -> SyncReport:
        if len(accounts) == 1:
            results = [self._sync_account(accounts[0])]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(accounts))) as pool:
                futures = [pool.submit(self._sync_account, a) for a in accounts]
                results = [f.result() for f in futures]

        synced = sum(r.synced_count for r in results)
        failed = [r for r in results if not r.success]
        message = f"Synced {synced} newsletters from {len(results) - len(failed)} of {len(results)} accounts"
        if failed:
            message += "; failed: " + ", ".join(r.email for r in failed)
        return SyncReport(
            success=len(failed) < len(results),
            synced_count=synced,
            accounts=results,
            message=message,
        )

    def run_manual_sync(self, user_id: int, account_id: int | None = None) -> SyncReport:
        """Sync one of the user's accounts, or all of them."""
        if account_id is not None:
            account = self.store.find_account_by_id(account_id)
            if account is None or account.user_id != user_id:
                raise AccountNotFound(f"Email account {account_id} not found")
            accounts = [account]
        else:
            accounts = self.store.find_accounts_by_user(user_id)

        if not accounts:
            return SyncReport(success=True, message="No email accounts connected")
        return self._fan_out(accounts)

    @staticmethod
    def is_due(account: EmailAccount, now: datetime) -> bool:
        if account.last_synced_at is None:
            return True
        return now - account.last_synced_at >= timedelta(seconds=account.sync_frequency)

    def run_scheduled_sync(self, now: datetime | None = None) -> SyncReport:
        """Sync every enabled account whose sync frequency has elapsed."""
        now = now or utcnow()
        accounts = [a for a in self.store.find_sync_enabled_accounts() if self.is_due(a, now)]
        if not accounts:
            return SyncReport(success=True, message="No accounts due for sync")
        logger.info("Scheduled sync of %d accounts", len(accounts))
        return self._fan_out(accounts)

    # --- progress, rules, housekeeping ---

    def get_progress(self, user_id: int, account_id: int) -> SyncProgress | None:
        """Latest progress snapshot, or one derived from the store when none is cached."""
        account = self.store.find_account_by_id(account_id)
        if account is None or account.user_id != user_id:
            return None

        data = self.cache.get(progress_key(user_id, account_id))
        if data:
            return SyncProgress.from_dict(data)

        count = self.store.count_newsletters_by_account(account_id)
        synced_before = account.last_synced_at is not None
        return SyncProgress(
            user_id=user_id,
            account_id=account_id,
            status=SyncStatus.SUCCESS if synced_before else SyncStatus.IDLE,
            progress=100 if synced_before else 0,
            synced=count,
            total_processed=count,
            total=count,
            updated_at=account.last_synced_at or utcnow(),
        )

    def apply_rules_to_newsletter(self, newsletter_id: int) -> dict:
        newsletter = self.store.find_newsletter_by_id(newsletter_id)
        if newsletter is None:
            raise NewsletterNotFound(f"Newsletter {newsletter_id} not found")
        rules = self.store.find_active_rules_by_user(newsletter.user_id)
        return apply_rules(self.store, newsletter, rules)

    def purge_archived(self, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - ARCHIVE_RETENTION
        removed = self.store.purge_archived(cutoff)
        logger.info("Purged %d archived newsletters older than %s", removed, cutoff.date())
        return removed
