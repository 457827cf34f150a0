"""Tests for the sync orchestrator."""

import copy
import threading
from datetime import timedelta

import pytest

from newsletter_sync import sync as sync_module
from newsletter_sync.constants import INITIAL_SYNC_WINDOW, SYNC_OVERLAP
from newsletter_sync.errors import (
    AccountNotFound,
    AuthExpired,
    NewsletterNotFound,
    ProviderTransient,
    StoreWriteFailed,
)
from newsletter_sync.models import (
    Confidence,
    Newsletter,
    Rule,
    SenderStatus,
    SyncStatus,
    utcnow,
)
from newsletter_sync.sync import NO_WHITELIST_MESSAGE, progress_key


@pytest.fixture
def account(make_account):
    return make_account()


@pytest.fixture
def digest_messages(make_message):
    return [
        make_message("m1", "new@digest.io", subject="Digest #1"),
        make_message("m2", "new@digest.io", subject="Digest #2"),
        make_message("m3", "alerts@digest.io", subject="Price alert"),
    ]


# --- preview ---


def test_preview_groups_by_sender(orchestrator, fake_gmail, account, digest_messages, store):
    """new@digest.io x2 and alerts@digest.io x1 give two groups; nothing is stored."""
    fake_gmail.messages[account.email] = digest_messages

    result = orchestrator.start_preview(account.id)

    groups = {g.email: g for g in result.groups}
    assert set(groups) == {"new@digest.io", "alerts@digest.io"}
    assert groups["new@digest.io"].count == 2
    assert groups["alerts@digest.io"].count == 1
    assert result.total_messages == 3
    assert store.count_newsletters_by_account(account.id) == 0
    assert store.find_whitelist_by_user(account.user_id) == []


def test_preview_lists_recent_mail_without_sender_filter(orchestrator, fake_gmail, account):
    orchestrator.start_preview(account.id)
    _, message_filter = fake_gmail.list_calls[0]
    assert message_filter.senders == []
    assert utcnow() - message_filter.since >= INITIAL_SYNC_WINDOW - timedelta(minutes=1)


def test_preview_marks_whitelisted_and_imported(orchestrator, fake_gmail, account, digest_messages, store):
    store.upsert_whitelist_entry(account.user_id, "new@digest.io")
    store.insert_newsletter(Newsletter.from_candidate(digest_messages[0], account))
    fake_gmail.messages[account.email] = digest_messages

    result = orchestrator.start_preview(account.id)

    groups = {g.email: g for g in result.groups}
    assert groups["new@digest.io"].is_whitelisted
    assert groups["new@digest.io"].imported_count == 1
    assert not groups["alerts@digest.io"].is_whitelisted


def test_preview_is_cached(orchestrator, fake_gmail, account, digest_messages):
    fake_gmail.messages[account.email] = digest_messages
    orchestrator.start_preview(account.id)

    cached = orchestrator.cached_preview(account.id)
    assert cached is not None
    assert {c.message_id for c in cached.candidates} == {"m1", "m2", "m3"}


def test_preview_unknown_account(orchestrator):
    with pytest.raises(AccountNotFound):
        orchestrator.start_preview(404)


# --- commit ---


def test_commit_is_idempotent(orchestrator, fake_gmail, account, digest_messages, store):
    """Running the same commit twice never double-inserts."""
    fake_gmail.messages[account.email] = digest_messages

    first = orchestrator.commit_whitelist_and_import(account.id, ["new@digest.io"])
    second = orchestrator.commit_whitelist_and_import(account.id, ["new@digest.io"])

    assert first.imported_count == 2
    assert first.skipped_count == 0
    assert second.imported_count == 0
    assert second.skipped_count == 2
    assert [r.status for r in second.results] == [SenderStatus.SKIPPED]
    assert store.find_imported_message_ids(account.id) == {"m1", "m2"}


def test_commit_with_previously_imported_message(orchestrator, account, make_message, store):
    """A message already in the store yields nothing new."""
    msg = make_message("msg-42", "new@digest.io")
    store.insert_newsletter(Newsletter.from_candidate(msg, account))

    result = orchestrator.commit_whitelist_and_import(
        account.id, ["new@digest.io"], preview_data=[msg.to_dict()]
    )

    assert result.imported_count == 0
    assert result.skipped_count == 1
    assert store.count_newsletters_by_account(account.id) == 1


def test_commit_whitelists_accepted_senders(orchestrator, fake_gmail, account, digest_messages, store):
    fake_gmail.messages[account.email] = digest_messages
    orchestrator.commit_whitelist_and_import(account.id, ["New@Digest.io", "alerts@digest.io"])
    assert {e.email for e in store.find_whitelist_by_user(account.user_id)} == {
        "new@digest.io",
        "alerts@digest.io",
    }


def test_commit_from_preview_skips_listing(orchestrator, fake_gmail, account, digest_messages):
    fake_gmail.messages[account.email] = digest_messages
    preview = orchestrator.start_preview(account.id)
    calls = len(fake_gmail.list_calls)

    result = orchestrator.commit_whitelist_and_import(account.id, ["alerts@digest.io"], preview_data=preview)

    assert len(fake_gmail.list_calls) == calls
    assert result.imported_count == 1
    assert orchestrator.cached_preview(account.id) is None


def test_commit_gates_by_whitelist_not_confidence(orchestrator, account, make_message, newsletter_message, store):
    """Only accepted senders are imported, whatever the classifier thinks."""
    low = make_message("low-1", "friend@example.com", subject="Notes from the trip")
    low.confidence = Confidence.LOW
    newsletter_message.confidence = Confidence.HIGH

    result = orchestrator.commit_whitelist_and_import(
        account.id, ["friend@example.com"], preview_data=[low, newsletter_message]
    )

    assert result.imported_count == 1
    assert store.find_imported_message_ids(account.id) == {"low-1"}


def test_commit_fetches_missing_bodies(orchestrator, fake_gmail, account, make_message, store):
    bare = make_message("m1", "new@digest.io", text_body="")
    fake_gmail.full_messages["m1"] = make_message("m1", "new@digest.io", text_body="full text", html_body="<p>full</p>")

    orchestrator.commit_whitelist_and_import(account.id, ["new@digest.io"], preview_data=[bare])

    stored = store.find_newsletter_by_account_and_message_id(account.id, "m1")
    assert stored.content == "full text"
    assert stored.html_content == "<p>full</p>"


def test_sender_failure_does_not_stop_other_senders(orchestrator, fake_gmail, account, make_message):
    broken = make_message("a-1", "a@x.com", text_body="")
    fake_gmail.full_messages["a-1"] = ProviderTransient("timeout", provider="gmail")
    ok = make_message("b-1", "b@x.com")

    result = orchestrator.commit_whitelist_and_import(account.id, ["a@x.com", "b@x.com"], preview_data=[broken, ok])

    by_sender = {r.email: r for r in result.results}
    assert by_sender["a@x.com"].status == SenderStatus.ERROR
    assert "timeout" in by_sender["a@x.com"].error
    assert by_sender["b@x.com"].status == SenderStatus.SUCCESS
    assert by_sender["b@x.com"].count == 1
    assert result.imported_count == 1


def test_store_write_is_retried(orchestrator, account, make_message, store, monkeypatch):
    calls = []
    original = store.insert_newsletter

    def flaky(newsletter):
        calls.append(newsletter.message_id)
        if len(calls) == 1:
            raise StoreWriteFailed("database is locked")
        return original(newsletter)

    monkeypatch.setattr(store, "insert_newsletter", flaky)
    result = orchestrator.commit_whitelist_and_import(
        account.id, ["new@digest.io"], preview_data=[make_message("m1", "new@digest.io")]
    )
    assert result.imported_count == 1
    assert calls == ["m1", "m1"]


def test_failed_message_does_not_stop_rest_of_sender(orchestrator, fake_gmail, account, make_message):
    fake_gmail.full_messages["m1"] = ProviderTransient("timeout", provider="gmail")
    messages = [
        make_message("m1", "new@digest.io", text_body=""),
        make_message("m2", "new@digest.io"),
        make_message("m3", "new@digest.io"),
    ]

    result = orchestrator.commit_whitelist_and_import(account.id, ["new@digest.io"], preview_data=messages)

    [sender] = result.results
    assert sender.status == SenderStatus.ERROR
    assert sender.count == 2
    assert "timeout" in sender.error
    assert result.imported_count == 2
    assert result.total_processed == 3


def test_store_write_failing_after_retries(orchestrator, account, digest_messages, store, monkeypatch):
    calls = []

    def locked(newsletter):
        calls.append(newsletter.message_id)
        raise StoreWriteFailed("database is locked")

    monkeypatch.setattr(sync_module._insert_with_retry.retry, "sleep", lambda seconds: None)
    monkeypatch.setattr(store, "insert_newsletter", locked)

    result = orchestrator.commit_whitelist_and_import(account.id, ["new@digest.io"], preview_data=digest_messages)

    [sender] = result.results
    assert sender.status == SenderStatus.ERROR
    assert sender.count == 0
    assert "database is locked" in sender.error
    assert result.imported_count == 0
    assert result.total_processed == 2
    assert calls == ["m1", "m1", "m1", "m2", "m2", "m2"]


def test_concurrent_commits_import_each_message_once(orchestrator, account, digest_messages, store):
    barrier = threading.Barrier(2)
    results = []
    errors = []

    def commit():
        barrier.wait()
        try:
            results.append(
                orchestrator.commit_whitelist_and_import(
                    account.id,
                    ["new@digest.io", "alerts@digest.io"],
                    preview_data=copy.deepcopy(digest_messages),
                )
            )
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=commit) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert len(results) == 2
    assert sum(r.imported_count for r in results) == len(digest_messages)
    assert store.count_newsletters_by_account(account.id) == len(digest_messages)
    assert store.find_imported_message_ids(account.id) == {"m1", "m2", "m3"}


def test_commit_whitelists_domains(orchestrator, account, make_message, store):
    messages = [
        make_message("m1", "new@digest.io"),
        make_message("m2", "alerts@digest.io"),
        make_message("m3", "friend@example.org"),
    ]

    result = orchestrator.commit_whitelist_and_import(account.id, [], preview_data=messages, accepted_domains=["@Digest.IO"])

    assert result.imported_count == 2
    assert [d.domain for d in store.find_whitelisted_domains_by_user(account.user_id)] == ["digest.io"]
    assert store.find_whitelist_by_user(account.user_id) == []
    assert store.find_imported_message_ids(account.id) == {"m1", "m2"}


def test_commit_applies_rules(orchestrator, account, make_message, store):
    store.insert_rule(
        Rule(
            user_id=account.user_id,
            name="digest",
            condition_type="sender",
            condition_value="new@digest.io",
            action_type="category",
            action_value="digests",
        )
    )
    orchestrator.commit_whitelist_and_import(
        account.id, ["new@digest.io"], preview_data=[make_message("m1", "new@digest.io")]
    )
    assert store.find_newsletter_by_account_and_message_id(account.id, "m1").category == "digests"


def test_commit_publishes_progress(orchestrator, cache, account, digest_messages):
    orchestrator.commit_whitelist_and_import(account.id, ["new@digest.io"], preview_data=digest_messages)

    progress = orchestrator.get_progress(account.user_id, account.id)
    assert progress.status == SyncStatus.SUCCESS
    assert progress.progress == 100
    assert progress.synced == 2
    assert progress.total == 2
    assert cache.get(progress_key(account.user_id, account.id)) is not None


def test_commit_provider_error_marks_progress(orchestrator, fake_gmail, account):
    fake_gmail.list_errors[account.email] = ProviderTransient("503", provider="gmail")
    with pytest.raises(ProviderTransient):
        orchestrator.commit_whitelist_and_import(account.id, ["new@digest.io"])
    assert orchestrator.get_progress(account.user_id, account.id).status == SyncStatus.ERROR


# --- manual / scheduled sync ---


def test_manual_sync_without_whitelist(orchestrator, fake_gmail, account):
    report = orchestrator.run_manual_sync(account.user_id)

    assert report.success
    assert report.synced_count == 0
    assert report.accounts[0].message == NO_WHITELIST_MESSAGE
    assert fake_gmail.list_calls == []


def test_manual_sync_window_uses_overlap(orchestrator, fake_gmail, make_account, store):
    last = utcnow() - timedelta(hours=3)
    account = make_account(last_synced_at=last)
    store.upsert_whitelist_entry(account.user_id, "new@digest.io")

    orchestrator.run_manual_sync(account.user_id, account.id)

    _, message_filter = fake_gmail.list_calls[0]
    assert message_filter.since == last - SYNC_OVERLAP
    assert message_filter.senders == ["new@digest.io"]
    assert store.find_account_by_id(account.id).last_synced_at > last


def test_failed_message_is_retried_on_next_sync(orchestrator, fake_gmail, make_account, make_message, store):
    """A message that failed to import stays inside the next sync window."""
    account = make_account(last_synced_at=utcnow() - timedelta(hours=1))
    store.upsert_whitelist_entry(account.user_id, "new@digest.io")
    received = utcnow() - timedelta(minutes=90)
    fake_gmail.messages[account.email] = [make_message("m1", "new@digest.io", text_body="", received_at=received)]
    fake_gmail.full_messages["m1"] = ProviderTransient("timeout", provider="gmail")

    first = orchestrator.run_manual_sync(account.user_id, account.id)

    assert first.synced_count == 0
    assert first.accounts[0].results[0].status == SenderStatus.ERROR
    assert store.find_account_by_id(account.id).last_synced_at <= received

    fake_gmail.full_messages["m1"] = make_message("m1", "new@digest.io", received_at=received)
    second = orchestrator.run_manual_sync(account.user_id, account.id)

    _, message_filter = fake_gmail.list_calls[-1]
    assert message_filter.since <= received
    assert second.synced_count == 1
    assert store.find_imported_message_ids(account.id) == {"m1"}
    assert store.find_account_by_id(account.id).last_synced_at > received


def test_manual_sync_with_only_whitelisted_domains(orchestrator, fake_gmail, account, make_message, store):
    store.upsert_whitelisted_domain(account.user_id, "digest.io")
    fake_gmail.messages[account.email] = [
        make_message("m1", "new@digest.io"),
        make_message("m2", "alerts@digest.io"),
        make_message("m3", "friend@example.com"),
    ]

    report = orchestrator.run_manual_sync(account.user_id)

    _, message_filter = fake_gmail.list_calls[0]
    assert message_filter.domains == ["digest.io"]
    assert report.synced_count == 2
    assert store.find_imported_message_ids(account.id) == {"m1", "m2"}


def test_address_entry_does_not_whitelist_its_domain(orchestrator, fake_gmail, account, make_message, store):
    store.upsert_whitelist_entry(account.user_id, "new@digest.io")
    fake_gmail.messages[account.email] = [
        make_message("m1", "new@digest.io"),
        make_message("m2", "alerts@digest.io"),
    ]

    report = orchestrator.run_manual_sync(account.user_id)

    assert report.synced_count == 1
    assert store.find_imported_message_ids(account.id) == {"m1"}


def test_preview_marks_domain_whitelisted_senders(orchestrator, fake_gmail, account, digest_messages, make_message, store):
    store.upsert_whitelisted_domain(account.user_id, "digest.io")
    fake_gmail.messages[account.email] = digest_messages + [make_message("m4", "friend@example.com")]

    groups = {g.email: g for g in orchestrator.start_preview(account.id).groups}

    assert groups["new@digest.io"].is_whitelisted
    assert groups["alerts@digest.io"].is_whitelisted
    assert not groups["friend@example.com"].is_whitelisted


def test_manual_sync_one_revoked_account(orchestrator, fake_gmail, make_account, make_message, store):
    """Three accounts, one with a revoked refresh token: two succeed."""
    a = make_account(email="a@example.com")
    b = make_account(email="b@example.com")
    c = make_account(email="c@example.com", refresh_token="revoked", expires_in=-timedelta(minutes=1))
    fake_gmail.refresh_errors["revoked"] = AuthExpired("token revoked", provider="gmail")
    store.upsert_whitelist_entry(1, "new@digest.io")
    fake_gmail.messages[a.email] = [make_message("a-1", "new@digest.io")]
    fake_gmail.messages[b.email] = [make_message("b-1", "new@digest.io")]

    report = orchestrator.run_manual_sync(1)

    assert report.success
    assert report.synced_count == 2
    assert [r.account_id for r in report.accounts] == [a.id, b.id, c.id]
    assert [r.account_id for r in report.failed_accounts] == [c.id]
    assert report.failed_accounts[0].error_type == "AuthExpired"
    assert orchestrator.get_progress(1, c.id).status == SyncStatus.ERROR


def test_manual_sync_all_accounts_failing(orchestrator, fake_gmail, account, store):
    store.upsert_whitelist_entry(account.user_id, "new@digest.io")
    fake_gmail.list_errors[account.email] = ProviderTransient("timeout", provider="gmail")

    report = orchestrator.run_manual_sync(account.user_id)

    assert not report.success
    assert report.accounts[0].error_type == "ProviderTransient"


def test_manual_sync_refreshes_expiring_token(orchestrator, fake_gmail, make_account, store):
    account = make_account(expires_in=timedelta(minutes=2))
    store.upsert_whitelist_entry(account.user_id, "new@digest.io")

    orchestrator.run_manual_sync(account.user_id, account.id)

    assert fake_gmail.refreshed == ["refresh"]
    loaded = store.find_account_by_id(account.id)
    assert loaded.access_token == "fresh-access"
    assert loaded.refresh_token == "refresh"


def test_manual_sync_routes_to_provider(orchestrator, fake_gmail, fake_outlook, make_account, store):
    account = make_account(provider="outlook")
    store.upsert_whitelist_entry(account.user_id, "new@digest.io")
    orchestrator.run_manual_sync(account.user_id)
    assert len(fake_outlook.list_calls) == 1
    assert fake_gmail.list_calls == []


def test_manual_sync_other_users_account(orchestrator, make_account):
    account = make_account(user_id=2)
    with pytest.raises(AccountNotFound):
        orchestrator.run_manual_sync(1, account.id)


def test_manual_sync_without_accounts(orchestrator):
    report = orchestrator.run_manual_sync(1)
    assert report.success
    assert report.accounts == []


def test_scheduled_sync_runs_due_accounts(orchestrator, fake_gmail, make_account, store):
    now = utcnow()
    due = make_account(email="due@example.com", last_synced_at=now - timedelta(hours=2))
    make_account(email="recent@example.com", last_synced_at=now - timedelta(minutes=10))
    never = make_account(email="never@example.com")
    paused = make_account(email="paused@example.com")
    store.set_account_sync_enabled(paused.id, False)
    store.upsert_whitelist_entry(1, "new@digest.io")

    report = orchestrator.run_scheduled_sync(now=now)

    assert [r.account_id for r in report.accounts] == [due.id, never.id]
    assert sorted(email for email, _ in fake_gmail.list_calls) == ["due@example.com", "never@example.com"]


# --- progress and rules ---


def test_progress_falls_back_to_store_count(orchestrator, account, make_message, store):
    store.insert_newsletter(Newsletter.from_candidate(make_message("m1", "new@digest.io"), account))

    progress = orchestrator.get_progress(account.user_id, account.id)

    assert progress.status == SyncStatus.IDLE
    assert progress.synced == 1


def test_progress_hidden_from_other_users(orchestrator, account):
    assert orchestrator.get_progress(account.user_id + 1, account.id) is None
    assert orchestrator.get_progress(account.user_id, 404) is None


def test_apply_rules_to_newsletter(orchestrator, account, make_message, store):
    nl = store.insert_newsletter(Newsletter.from_candidate(make_message("m1", "new@digest.io", subject="Weekly digest"), account))
    store.insert_rule(
        Rule(
            user_id=account.user_id,
            name="folder",
            condition_type="subject",
            condition_value="weekly",
            action_type="folder",
            action_value="reading",
        )
    )

    assert orchestrator.apply_rules_to_newsletter(nl.id) == {"folder": "reading"}
    assert store.find_newsletter_by_id(nl.id).folder == "reading"


def test_apply_rules_to_missing_newsletter(orchestrator):
    with pytest.raises(NewsletterNotFound):
        orchestrator.apply_rules_to_newsletter(404)


def test_purge_archived(orchestrator, account, make_message, store):
    old = Newsletter.from_candidate(make_message("m1", "new@digest.io"), account)
    old.is_archived = True
    old.deleted_at = utcnow() - timedelta(days=30)
    store.insert_newsletter(old)

    assert orchestrator.purge_archived() == 1
