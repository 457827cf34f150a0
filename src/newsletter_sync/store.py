"""Store port and its SQLite implementation.

The engine only talks to the :class:`Store` protocol; :class:`SQLiteStore`
is the bundled backend.  ``(email_account_id, message_id)`` is a unique
index, so a second insert of the same message is rejected by the database
even if two syncs of one account race.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .constants import STORE_DB_PATH
from .errors import DuplicateSkipped, StoreWriteFailed
from .models import (
    EmailAccount,
    Newsletter,
    Rule,
    TokenSet,
    WhitelistedDomain,
    WhitelistEntry,
    extract_domain,
    normalize_domain,
    utcnow,
)

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS email_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    provider TEXT NOT NULL CHECK (provider IN ('gmail', 'outlook')),
    email TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    token_expires_at TEXT NOT NULL,
    sync_enabled INTEGER DEFAULT 1,
    sync_frequency INTEGER DEFAULT 3600,
    last_synced_at TEXT,
    UNIQUE (user_id, provider, email)
);

CREATE TABLE IF NOT EXISTS whitelist (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    email TEXT NOT NULL,
    name TEXT,
    domain TEXT,
    UNIQUE (user_id, email)
);

CREATE TABLE IF NOT EXISTS whitelisted_domains (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    domain TEXT NOT NULL,
    created_at TEXT,
    UNIQUE (user_id, domain)
);

CREATE TABLE IF NOT EXISTS newsletters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    email_account_id INTEGER,
    message_id TEXT NOT NULL,
    subject TEXT,
    sender TEXT,
    sender_email TEXT,
    content TEXT,
    html_content TEXT,
    is_read INTEGER DEFAULT 0,
    is_starred INTEGER DEFAULT 0,
    is_archived INTEGER DEFAULT 0,
    category TEXT DEFAULT 'uncategorized',
    priority INTEGER DEFAULT 0,
    folder TEXT DEFAULT 'inbox',
    received_at TEXT,
    imported_at TEXT,
    deleted_at TEXT,
    FOREIGN KEY (email_account_id) REFERENCES email_accounts(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS newsletters_dedup
    ON newsletters (email_account_id, message_id);

CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    condition_type TEXT NOT NULL CHECK (condition_type IN ('sender', 'subject', 'content')),
    condition_value TEXT NOT NULL,
    action_type TEXT NOT NULL CHECK (action_type IN ('category', 'priority', 'folder')),
    action_value TEXT NOT NULL,
    is_active INTEGER DEFAULT 1,
    priority INTEGER DEFAULT 0,
    created_at TEXT
);
"""

NEWSLETTER_MUTABLE_FIELDS = {
    "category",
    "priority",
    "folder",
    "is_read",
    "is_starred",
    "is_archived",
    "deleted_at",
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class Store(Protocol):
    """Persistence operations the sync engine needs."""

    def find_accounts_by_user(self, user_id: int) -> list[EmailAccount]: ...
    def find_account_by_id(self, account_id: int) -> EmailAccount | None: ...
    def find_sync_enabled_accounts(self) -> list[EmailAccount]: ...
    def upsert_account(self, account: EmailAccount) -> EmailAccount: ...
    def update_account_tokens(self, account_id: int, tokens: TokenSet) -> None: ...
    def update_account_last_synced(self, account_id: int, when: datetime) -> None: ...
    def find_whitelist_by_user(self, user_id: int) -> list[WhitelistEntry]: ...
    def upsert_whitelist_entry(
        self, user_id: int, email: str, name: str | None = None
    ) -> WhitelistEntry: ...
    def find_whitelisted_domains_by_user(self, user_id: int) -> list[WhitelistedDomain]: ...
    def upsert_whitelisted_domain(self, user_id: int, domain: str) -> WhitelistedDomain: ...
    def find_newsletter_by_account_and_message_id(
        self, account_id: int, message_id: str
    ) -> Newsletter | None: ...
    def find_imported_message_ids(self, account_id: int) -> set[str]: ...
    def find_newsletter_by_id(self, newsletter_id: int) -> Newsletter | None: ...
    def insert_newsletter(self, newsletter: Newsletter) -> Newsletter: ...
    def update_newsletter_fields(self, newsletter_id: int, fields: dict) -> None: ...
    def count_newsletters_by_account(self, account_id: int) -> int: ...
    def count_imported_by_sender(self, account_id: int) -> dict[str, int]: ...
    def find_active_rules_by_user(self, user_id: int) -> list[Rule]: ...


class SQLiteStore:
    """SQLite-backed store, safe to share between sync worker threads."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or STORE_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(_CREATE_TABLES_SQL)

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._lock, self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StoreWriteFailed(str(exc)) from exc

    # --- row mapping ---

    @staticmethod
    def _account(row: sqlite3.Row) -> EmailAccount:
        return EmailAccount(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            email=row["email"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=_dt(row["token_expires_at"]),
            sync_enabled=bool(row["sync_enabled"]),
            sync_frequency=row["sync_frequency"],
            last_synced_at=_dt(row["last_synced_at"]),
        )

    @staticmethod
    def _newsletter(row: sqlite3.Row) -> Newsletter:
        return Newsletter(
            id=row["id"],
            user_id=row["user_id"],
            email_account_id=row["email_account_id"],
            message_id=row["message_id"],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            sender_email=row["sender_email"] or "",
            content=row["content"] or "",
            html_content=row["html_content"] or "",
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            is_archived=bool(row["is_archived"]),
            category=row["category"],
            priority=row["priority"],
            folder=row["folder"],
            received_at=_dt(row["received_at"]),
            imported_at=_dt(row["imported_at"]),
            deleted_at=_dt(row["deleted_at"]),
        )

    @staticmethod
    def _rule(row: sqlite3.Row) -> Rule:
        return Rule(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            condition_type=row["condition_type"],
            condition_value=row["condition_value"],
            action_type=row["action_type"],
            action_value=row["action_value"],
            is_active=bool(row["is_active"]),
            priority=row["priority"],
            created_at=_dt(row["created_at"]),
        )

    # --- accounts ---

    def find_accounts_by_user(self, user_id: int) -> list[EmailAccount]:
        rows = self._query(
            "SELECT * FROM email_accounts WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [self._account(r) for r in rows]

    def find_account_by_id(self, account_id: int) -> EmailAccount | None:
        rows = self._query("SELECT * FROM email_accounts WHERE id = ?", (account_id,))
        return self._account(rows[0]) if rows else None

    def find_sync_enabled_accounts(self) -> list[EmailAccount]:
        rows = self._query("SELECT * FROM email_accounts WHERE sync_enabled = 1 ORDER BY id")
        return [self._account(r) for r in rows]

    def upsert_account(self, account: EmailAccount) -> EmailAccount:
        """Insert an account, or refresh tokens of the existing (user, provider, email) row."""
        email = account.email.lower()
        self._write(
            "INSERT INTO email_accounts (user_id, provider, email, access_token, refresh_token, "
            "token_expires_at, sync_enabled, sync_frequency, last_synced_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (user_id, provider, email) DO UPDATE SET "
            "access_token = excluded.access_token, "
            "refresh_token = COALESCE(NULLIF(excluded.refresh_token, ''), email_accounts.refresh_token), "
            "token_expires_at = excluded.token_expires_at",
            (
                account.user_id,
                account.provider,
                email,
                account.access_token,
                account.refresh_token,
                _iso(account.token_expires_at),
                int(account.sync_enabled),
                account.sync_frequency,
                _iso(account.last_synced_at),
            ),
        )
        rows = self._query(
            "SELECT * FROM email_accounts WHERE user_id = ? AND provider = ? AND email = ?",
            (account.user_id, account.provider, email),
        )
        return self._account(rows[0])

    def update_account_tokens(self, account_id: int, tokens: TokenSet) -> None:
        self._write(
            "UPDATE email_accounts SET access_token = ?, refresh_token = ?, token_expires_at = ? "
            "WHERE id = ?",
            (tokens.access_token, tokens.refresh_token, _iso(tokens.expires_at), account_id),
        )

    def update_account_last_synced(self, account_id: int, when: datetime) -> None:
        self._write(
            "UPDATE email_accounts SET last_synced_at = ? WHERE id = ?",
            (_iso(when), account_id),
        )

    def set_account_sync_enabled(self, account_id: int, enabled: bool) -> None:
        self._write(
            "UPDATE email_accounts SET sync_enabled = ? WHERE id = ?",
            (int(enabled), account_id),
        )

    def set_account_sync_frequency(self, account_id: int, seconds: int) -> None:
        self._write(
            "UPDATE email_accounts SET sync_frequency = ? WHERE id = ?",
            (seconds, account_id),
        )

    def delete_account(self, account_id: int, delete_newsletters: bool = True) -> None:
        """Remove an account; its newsletters are deleted or detached, never left dangling."""
        with self._lock, self._conn:
            if delete_newsletters:
                self._conn.execute(
                    "DELETE FROM newsletters WHERE email_account_id = ?", (account_id,)
                )
            else:
                self._conn.execute(
                    "UPDATE newsletters SET email_account_id = NULL WHERE email_account_id = ?",
                    (account_id,),
                )
            self._conn.execute("DELETE FROM email_accounts WHERE id = ?", (account_id,))

    # --- whitelist ---

    def find_whitelist_by_user(self, user_id: int) -> list[WhitelistEntry]:
        rows = self._query(
            "SELECT * FROM whitelist WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [
            WhitelistEntry(
                id=r["id"], user_id=r["user_id"], email=r["email"], name=r["name"], domain=r["domain"]
            )
            for r in rows
        ]

    def upsert_whitelist_entry(
        self, user_id: int, email: str, name: str | None = None
    ) -> WhitelistEntry:
        """Add a sender to the whitelist; an existing entry is left untouched."""
        email = email.strip().lower()
        self._write(
            "INSERT INTO whitelist (user_id, email, name, domain) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (user_id, email) DO NOTHING",
            (user_id, email, name, extract_domain(email)),
        )
        r = self._query(
            "SELECT * FROM whitelist WHERE user_id = ? AND email = ?", (user_id, email)
        )[0]
        return WhitelistEntry(
            id=r["id"], user_id=r["user_id"], email=r["email"], name=r["name"], domain=r["domain"]
        )

    def delete_whitelist_entry(self, user_id: int, email: str) -> bool:
        cursor = self._write(
            "DELETE FROM whitelist WHERE user_id = ? AND email = ?",
            (user_id, email.strip().lower()),
        )
        return cursor.rowcount > 0

    @staticmethod
    def _domain(row: sqlite3.Row) -> WhitelistedDomain:
        return WhitelistedDomain(
            id=row["id"], user_id=row["user_id"], domain=row["domain"], created_at=_dt(row["created_at"])
        )

    def find_whitelisted_domains_by_user(self, user_id: int) -> list[WhitelistedDomain]:
        rows = self._query(
            "SELECT * FROM whitelisted_domains WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [self._domain(r) for r in rows]

    def upsert_whitelisted_domain(self, user_id: int, domain: str) -> WhitelistedDomain:
        """Accept every sender of ``domain``; an existing entry is left untouched."""
        domain = normalize_domain(domain)
        if not domain:
            raise ValueError("domain must not be empty")
        self._write(
            "INSERT INTO whitelisted_domains (user_id, domain, created_at) VALUES (?, ?, ?) "
            "ON CONFLICT (user_id, domain) DO NOTHING",
            (user_id, domain, _iso(utcnow())),
        )
        rows = self._query(
            "SELECT * FROM whitelisted_domains WHERE user_id = ? AND domain = ?", (user_id, domain)
        )
        return self._domain(rows[0])

    def delete_whitelisted_domain(self, user_id: int, domain: str) -> bool:
        cursor = self._write(
            "DELETE FROM whitelisted_domains WHERE user_id = ? AND domain = ?",
            (user_id, normalize_domain(domain)),
        )
        return cursor.rowcount > 0

    # --- newsletters ---

    def find_newsletter_by_account_and_message_id(
        self, account_id: int, message_id: str
    ) -> Newsletter | None:
        rows = self._query(
            "SELECT * FROM newsletters WHERE email_account_id = ? AND message_id = ?",
            (account_id, message_id),
        )
        return self._newsletter(rows[0]) if rows else None

    def find_imported_message_ids(self, account_id: int) -> set[str]:
        rows = self._query(
            "SELECT message_id FROM newsletters WHERE email_account_id = ?", (account_id,)
        )
        return {r["message_id"] for r in rows}

    def find_newsletter_by_id(self, newsletter_id: int) -> Newsletter | None:
        rows = self._query("SELECT * FROM newsletters WHERE id = ?", (newsletter_id,))
        return self._newsletter(rows[0]) if rows else None

    def find_newsletters_by_user(self, user_id: int) -> list[Newsletter]:
        rows = self._query(
            "SELECT * FROM newsletters WHERE user_id = ? ORDER BY received_at DESC", (user_id,)
        )
        return [self._newsletter(r) for r in rows]

    def insert_newsletter(self, newsletter: Newsletter) -> Newsletter:
        """Insert a newsletter and return it with its id set.

        Raises DuplicateSkipped when the (account, message id) pair exists.
        """
        try:
            cursor = self._write(
                "INSERT INTO newsletters (user_id, email_account_id, message_id, subject, sender, "
                "sender_email, content, html_content, is_read, is_starred, is_archived, category, "
                "priority, folder, received_at, imported_at, deleted_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    newsletter.user_id,
                    newsletter.email_account_id,
                    newsletter.message_id,
                    newsletter.subject,
                    newsletter.sender,
                    newsletter.sender_email,
                    newsletter.content,
                    newsletter.html_content,
                    int(newsletter.is_read),
                    int(newsletter.is_starred),
                    int(newsletter.is_archived),
                    newsletter.category,
                    newsletter.priority,
                    newsletter.folder,
                    _iso(newsletter.received_at),
                    _iso(newsletter.imported_at),
                    _iso(newsletter.deleted_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" not in str(exc):
                raise StoreWriteFailed(str(exc)) from exc
            raise DuplicateSkipped(
                f"message {newsletter.message_id} already imported for account "
                f"{newsletter.email_account_id}"
            ) from exc
        newsletter.id = cursor.lastrowid
        return newsletter

    def update_newsletter_fields(self, newsletter_id: int, fields: dict) -> None:
        unknown = set(fields) - NEWSLETTER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update newsletter fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = tuple(
            _iso(v) if isinstance(v, datetime) else int(v) if isinstance(v, bool) else v
            for v in fields.values()
        )
        self._write(
            f"UPDATE newsletters SET {assignments} WHERE id = ?", values + (newsletter_id,)
        )

    def count_newsletters_by_account(self, account_id: int) -> int:
        return self._query(
            "SELECT COUNT(*) AS c FROM newsletters WHERE email_account_id = ?", (account_id,)
        )[0]["c"]

    def count_imported_by_sender(self, account_id: int) -> dict[str, int]:
        rows = self._query(
            "SELECT sender_email, COUNT(*) AS c FROM newsletters "
            "WHERE email_account_id = ? GROUP BY sender_email",
            (account_id,),
        )
        return {r["sender_email"]: r["c"] for r in rows if r["sender_email"]}

    def purge_archived(self, older_than: datetime) -> int:
        """Delete archived newsletters binned before ``older_than``."""
        cursor = self._write(
            "DELETE FROM newsletters WHERE is_archived = 1 AND deleted_at IS NOT NULL "
            "AND deleted_at < ?",
            (_iso(older_than),),
        )
        return cursor.rowcount

    # --- rules ---

    def find_active_rules_by_user(self, user_id: int) -> list[Rule]:
        rows = self._query(
            "SELECT * FROM rules WHERE user_id = ? AND is_active = 1", (user_id,)
        )
        return [self._rule(r) for r in rows]

    def find_rules_by_user(self, user_id: int) -> list[Rule]:
        rows = self._query("SELECT * FROM rules WHERE user_id = ? ORDER BY id", (user_id,))
        return [self._rule(r) for r in rows]

    def insert_rule(self, rule: Rule) -> Rule:
        cursor = self._write(
            "INSERT INTO rules (user_id, name, condition_type, condition_value, action_type, "
            "action_value, is_active, priority, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                rule.user_id,
                rule.name,
                rule.condition_type,
                rule.condition_value,
                rule.action_type,
                str(rule.action_value),
                int(rule.is_active),
                rule.priority,
                _iso(rule.created_at or utcnow()),
            ),
        )
        rule.id = cursor.lastrowid
        return rule

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # --- context manager ---

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()
