"""
SQLite-backed directory of account and certificate records.

Lookups return None when no record matches and raise DirectoryError when the
database itself fails, so callers never mistake a broken backend for a
missing record.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from acme_certmanager import exceptions
from acme_certmanager.records import Account, Certificate

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    private_key_ref TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS certificates (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    domains TEXT NOT NULL,
    challenge_type TEXT NOT NULL,
    certificate_ref TEXT NOT NULL,
    key_ref TEXT,
    issued_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_accounts_deleted_at ON accounts(deleted_at);
CREATE INDEX IF NOT EXISTS idx_certificates_account_id ON certificates(account_id);
"""


def _to_text(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("Naive datetime not allowed in the directory")
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Database:
    """
    A single SQLite connection shared by worker threads.

    Statements are serialized behind a lock; every write runs in its own
    transaction.
    """

    def __init__(self, path: Path | str = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()

        with self._lock:
            self.conn.executescript(SCHEMA)
        logger.debug(f"Opened directory database at {self.path}")

    @contextmanager
    def transaction(self):
        """Run the enclosed statements atomically."""
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                yield self.conn
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AccountDirectory:
    """Account records keyed by a unique email."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            private_key_ref=row["private_key_ref"],
            created_at=_from_text(row["created_at"]),
            deleted_at=_from_text(row["deleted_at"]),
        )

    def _find_one(self, operation: str, sql: str, params: tuple) -> Account | None:
        try:
            rows = self.db.query(sql, params)
        except sqlite3.Error as e:
            logger.error(f"Directory lookup {operation} failed: {e}")
            raise exceptions.DirectoryError(operation, e) from e
        return self._row_to_account(rows[0]) if rows else None

    def find_by_email(self, email: str) -> Account | None:
        """
        Find an account by exact email match.

        Soft-removed accounts are still returned so that an email always
        resolves to the same identifier while its record exists.
        """
        return self._find_one("find_by_email", "SELECT * FROM accounts WHERE email = ?", (email,))

    def find_by_id(self, account_id: str) -> Account | None:
        return self._find_one("find_by_id", "SELECT * FROM accounts WHERE id = ?", (account_id,))

    def create(self, account: Account) -> None:
        """
        Insert a new account record.

        Raises:
            exceptions.DuplicateAccount: If a record with the same email exists.
            exceptions.DirectoryError: If the insert fails for any other reason.
        """
        created_at = _to_text(account.created_at)
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO accounts (id, email, private_key_ref, created_at, updated_at, deleted_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account.id,
                        account.email,
                        account.private_key_ref,
                        created_at,
                        created_at,
                        _to_text(account.deleted_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "accounts.email" in str(e):
                raise exceptions.DuplicateAccount(account.email, e) from e
            raise exceptions.DirectoryError("create_account", e) from e
        except sqlite3.Error as e:
            raise exceptions.DirectoryError("create_account", e) from e


class CertificateDirectory:
    """Metadata of issued certificates. Records are only written after the chain is stored."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _row_to_certificate(row: sqlite3.Row) -> Certificate:
        return Certificate(
            id=row["id"],
            account_id=row["account_id"],
            domains=json.loads(row["domains"]),
            challenge_type=row["challenge_type"],
            certificate_ref=row["certificate_ref"],
            key_ref=row["key_ref"],
            issued_at=_from_text(row["issued_at"]),
        )

    def create(self, certificate: Certificate) -> None:
        """
        Insert the record of an issued certificate.

        Raises:
            ValueError: If the certificate has not been marked issued.
            exceptions.DirectoryError: If the insert fails.
        """
        if not certificate.is_issued:
            raise ValueError(f"Certificate '{certificate.id}' has not been issued")

        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO certificates
                        (id, account_id, domains, challenge_type, certificate_ref, key_ref, issued_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        certificate.id,
                        certificate.account_id,
                        json.dumps(certificate.domains),
                        certificate.challenge_type,
                        certificate.certificate_ref,
                        certificate.key_ref,
                        _to_text(certificate.issued_at),
                    ),
                )
        except sqlite3.Error as e:
            raise exceptions.DirectoryError("create_certificate", e) from e

    def find_by_id(self, certificate_id: str) -> Certificate | None:
        try:
            rows = self.db.query("SELECT * FROM certificates WHERE id = ?", (certificate_id,))
        except sqlite3.Error as e:
            raise exceptions.DirectoryError("find_certificate", e) from e
        return self._row_to_certificate(rows[0]) if rows else None

    def list_for_account(self, account_id: str) -> list[Certificate]:
        try:
            rows = self.db.query(
                "SELECT * FROM certificates WHERE account_id = ? ORDER BY issued_at, id", (account_id,)
            )
        except sqlite3.Error as e:
            raise exceptions.DirectoryError("list_certificates", e) from e
        return [self._row_to_certificate(row) for row in rows]
