"""SQLite-backed persistence for users, payments and provisioned servers."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from passlib.context import CryptContext

from .models import PaymentRecord, ProvisionedServer, ProvisioningFailureRecord, User

_SQLITE_URL_PREFIXES = ("sqlite:///", "sqlite://")

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database.

    Accepts either a filesystem path or a ``sqlite:///`` connection string.
    """

    if env_value:
        raw = env_value.strip()
        for prefix in _SQLITE_URL_PREFIXES:
            if raw.startswith(prefix):
                raw = raw[len(prefix):]
                break
        return Path(raw).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "gamehost.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


class Database:
    """Simple wrapper around SQLite for the hosting backend's durable state."""

    def __init__(self, path: Path, *, busy_timeout: float = 30.0) -> None:
        _ensure_directory(path)
        self._path = path
        self._busy_timeout = busy_timeout

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=self._busy_timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    billing_customer_id TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS payments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    transaction_ref TEXT NOT NULL UNIQUE,
                    event_id TEXT,
                    amount INTEGER,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS servers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    payment_id INTEGER NOT NULL UNIQUE REFERENCES payments(id),
                    external_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    plan TEXT NOT NULL,
                    memory_mb INTEGER NOT NULL,
                    slots INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS provisioning_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    payment_id INTEGER NOT NULL REFERENCES payments(id),
                    user_id INTEGER NOT NULL,
                    plan TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    message TEXT NOT NULL,
                    needs_audit INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_payments_user_id ON payments(user_id);
                CREATE INDEX IF NOT EXISTS idx_servers_user_id ON servers(user_id);
                CREATE INDEX IF NOT EXISTS idx_failures_unresolved
                    ON provisioning_failures(resolved_at);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(self, email: str, password: str) -> User:
        """Create a new customer account with a hashed password."""

        normalized_email = _normalize_email(email or "")
        if not normalized_email:
            raise ValueError("Email must not be empty")
        if not password:
            raise ValueError("Password must not be empty")

        created_at = _current_timestamp()
        password_hash = hash_password(password)

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, created_at)
                    VALUES (?, ?, ?)
                    """,
                    (normalized_email, password_hash, _serialize_datetime(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that email already exists") from exc
            user_id = cursor.lastrowid

        return User(
            id=int(user_id),
            email=normalized_email,
            billing_customer_id=None,
            created_at=created_at,
        )

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (_normalize_email(email),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def authenticate_user(self, email: str, password: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (_normalize_email(email),),
            ).fetchone()
        if row is None:
            return None
        stored_hash = row["password_hash"]
        if not stored_hash or not verify_password(password, stored_hash):
            return None
        return self._row_to_user(row)

    def set_billing_customer(self, user_id: int, customer_id: str) -> User:
        """Attach the external billing customer reference to a user."""

        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET billing_customer_id = ? WHERE id = ?",
                (customer_id, user_id),
            )
            if cursor.rowcount == 0:
                raise ValueError("User not found")

        refreshed = self.get_user(user_id)
        if refreshed is None:
            raise ValueError("User not found")
        return refreshed

    # ------------------------------------------------------------------
    # Payment ledger
    # ------------------------------------------------------------------
    def insert_payment_if_absent(
        self,
        *,
        user_id: int,
        transaction_ref: str,
        event_id: Optional[str],
        amount: Optional[int],
        currency: str,
        status: str,
    ) -> Tuple[PaymentRecord, bool]:
        """Insert a payment unless one already exists for ``transaction_ref``.

        Returns the stored record and ``True`` when this call created it. The
        conditional write relies on the UNIQUE constraint so concurrent callers
        cannot both observe a fresh insert.
        """

        created_at = _current_timestamp()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO payments (
                    user_id, transaction_ref, event_id, amount, currency, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(transaction_ref) DO NOTHING
                """,
                (
                    user_id,
                    transaction_ref,
                    event_id,
                    amount,
                    currency,
                    status,
                    _serialize_datetime(created_at),
                ),
            )
            created = cursor.rowcount == 1
            row = conn.execute(
                "SELECT * FROM payments WHERE transaction_ref = ?",
                (transaction_ref,),
            ).fetchone()

        if row is None:
            raise RuntimeError(f"Failed to load payment {transaction_ref} after insert")
        return self._row_to_payment(row), created

    def get_payment(self, payment_id: int) -> Optional[PaymentRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_payment(row)

    def get_payment_by_reference(self, transaction_ref: str) -> Optional[PaymentRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payments WHERE transaction_ref = ?",
                (transaction_ref,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_payment(row)

    def list_payments_for_user(self, user_id: int) -> List[PaymentRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM payments WHERE user_id = ? ORDER BY id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_payment(row) for row in rows]

    def count_payments(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM payments").fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Provisioned servers
    # ------------------------------------------------------------------
    def create_server(
        self,
        *,
        user_id: int,
        payment_id: int,
        external_id: str,
        name: str,
        plan: str,
        memory_mb: int,
        slots: int,
        status: str,
    ) -> ProvisionedServer:
        created_at = _current_timestamp()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO servers (
                    user_id, payment_id, external_id, name, plan, memory_mb, slots, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    payment_id,
                    external_id,
                    name,
                    plan,
                    memory_mb,
                    slots,
                    status,
                    _serialize_datetime(created_at),
                ),
            )
            server_id = cursor.lastrowid

        return ProvisionedServer(
            id=int(server_id),
            user_id=user_id,
            payment_id=payment_id,
            external_id=external_id,
            name=name,
            plan=plan,
            memory_mb=memory_mb,
            slots=slots,
            status=status,
            created_at=created_at,
        )

    def get_server_for_payment(self, payment_id: int) -> Optional[ProvisionedServer]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM servers WHERE payment_id = ?",
                (payment_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_server(row)

    def list_servers_for_user(self, user_id: int) -> List[ProvisionedServer]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM servers WHERE user_id = ? ORDER BY id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_server(row) for row in rows]

    # ------------------------------------------------------------------
    # Provisioning follow-up queue
    # ------------------------------------------------------------------
    def record_provisioning_failure(
        self,
        *,
        payment_id: int,
        user_id: int,
        plan: str,
        kind: str,
        message: str,
        needs_audit: bool = False,
    ) -> ProvisioningFailureRecord:
        created_at = _current_timestamp()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO provisioning_failures (
                    payment_id, user_id, plan, kind, message, needs_audit, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payment_id,
                    user_id,
                    plan,
                    kind,
                    message,
                    int(bool(needs_audit)),
                    _serialize_datetime(created_at),
                ),
            )
            failure_id = cursor.lastrowid

        return ProvisioningFailureRecord(
            id=int(failure_id),
            payment_id=payment_id,
            user_id=user_id,
            plan=plan,
            kind=kind,
            message=message,
            needs_audit=bool(needs_audit),
            created_at=created_at,
        )

    def get_provisioning_failure(self, failure_id: int) -> Optional[ProvisioningFailureRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM provisioning_failures WHERE id = ?",
                (failure_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_failure(row)

    def list_provisioning_failures(self, *, include_resolved: bool = False) -> List[ProvisioningFailureRecord]:
        query = "SELECT * FROM provisioning_failures"
        if not include_resolved:
            query += " WHERE resolved_at IS NULL"
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_failure(row) for row in rows]

    def resolve_provisioning_failure(self, failure_id: int) -> Optional[ProvisioningFailureRecord]:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE provisioning_failures
                   SET resolved_at = ?
                 WHERE id = ? AND resolved_at IS NULL
                """,
                (_serialize_datetime(_current_timestamp()), failure_id),
            )
        return self.get_provisioning_failure(failure_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            email=str(row["email"]),
            billing_customer_id=row["billing_customer_id"],
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_payment(self, row: sqlite3.Row) -> PaymentRecord:
        amount = row["amount"]
        return PaymentRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            transaction_ref=str(row["transaction_ref"]),
            event_id=row["event_id"],
            amount=int(amount) if amount is not None else None,
            currency=str(row["currency"]),
            status=str(row["status"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_server(self, row: sqlite3.Row) -> ProvisionedServer:
        return ProvisionedServer(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            payment_id=int(row["payment_id"]),
            external_id=str(row["external_id"]),
            name=str(row["name"]),
            plan=str(row["plan"]),
            memory_mb=int(row["memory_mb"]),
            slots=int(row["slots"]),
            status=str(row["status"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_failure(self, row: sqlite3.Row) -> ProvisioningFailureRecord:
        resolved_at = row["resolved_at"]
        return ProvisioningFailureRecord(
            id=int(row["id"]),
            payment_id=int(row["payment_id"]),
            user_id=int(row["user_id"]),
            plan=str(row["plan"]),
            kind=str(row["kind"]),
            message=str(row["message"]),
            needs_audit=bool(row["needs_audit"]),
            created_at=_parse_datetime(str(row["created_at"])),
            resolved_at=_parse_datetime(str(resolved_at)) if resolved_at else None,
        )


__all__ = ["Database", "hash_password", "resolve_database_path", "verify_password"]
