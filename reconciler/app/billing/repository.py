"""PostgreSQL persistence for billing accounts and the audit log."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterable, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import AccountNotFoundError, StoreUnavailableError
from .models import (
    AccountMutation,
    AccountSnapshot,
    AuditEntry,
    BillingEventType,
    EventOrigin,
    SwapOutcome,
    SwapResult,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from reconciler.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "reconciler":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]

logger = logging.getLogger(__name__)

_MUTABLE_COLUMNS = (
    "is_entitled",
    "plan",
    "external_customer_id",
    "external_subscription_id",
    "last_event_applied_at",
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_account(row: dict) -> AccountSnapshot:
    return AccountSnapshot(
        account_id=row["account_id"],
        email=row.get("email"),
        external_customer_id=row.get("external_customer_id"),
        external_subscription_id=row.get("external_subscription_id"),
        is_entitled=bool(row["is_entitled"]),
        plan=row.get("plan") or "free",
        version=int(row["version"]),
        last_event_applied_at=row.get("last_event_applied_at"),
        billing_updated_at=row.get("billing_updated_at"),
    )


def _row_to_audit_entry(row: dict) -> AuditEntry:
    return AuditEntry(
        entry_id=int(row["entry_id"]),
        account_id=row["account_id"],
        event_type=BillingEventType(row["event_type"]),
        origin=EventOrigin(row["origin"]),
        previous_state=row.get("previous_state") or {},
        new_state=row.get("new_state") or {},
        source_event_id=row.get("source_event_id"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


class _PostgresRepository:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            logger.critical("Billing store query failed: %s", exc)
            raise StoreUnavailableError(str(exc)) from exc


class PostgresAccountStore(_PostgresRepository):
    """Versioned account rows in ``billing_accounts``."""

    def read(self, account_id: str) -> AccountSnapshot:
        with self._cursor() as cursor:
            row = self._select(cursor, account_id)
        if not row:
            raise AccountNotFoundError(account_id)
        return _row_to_account(row)

    def compare_and_swap(
        self,
        account_id: str,
        expected_version: int,
        mutation: AccountMutation,
    ) -> SwapResult:
        assignments = {
            column: value for column, value in mutation.assignments().items() if column in _MUTABLE_COLUMNS
        }
        set_clauses = [
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column))
            for column in assignments
        ]
        set_clauses.append(sql.SQL("version = version + 1"))
        set_clauses.append(sql.SQL("billing_updated_at = NOW()"))
        query = sql.SQL(
            """
            UPDATE billing_accounts
            SET {assignments}
            WHERE account_id = %(account_id)s AND version = %(expected_version)s
            RETURNING *
            """
        ).format(assignments=sql.SQL(", ").join(set_clauses))

        with self._cursor() as cursor:
            cursor.execute(
                query,
                {**assignments, "account_id": account_id, "expected_version": expected_version},
            )
            row = cursor.fetchone()
            if row:
                return SwapResult(outcome=SwapOutcome.APPLIED, snapshot=_row_to_account(row))
            current = self._select(cursor, account_id)

        if not current:
            raise AccountNotFoundError(account_id)
        return SwapResult(outcome=SwapOutcome.VERSION_MISMATCH, snapshot=_row_to_account(current))

    def ensure_account(self, account_id: str, *, email: Optional[str] = None) -> AccountSnapshot:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_accounts (account_id, email)
                VALUES (%s, %s)
                ON CONFLICT (account_id) DO NOTHING
                """,
                (account_id, email),
            )
            row = self._select(cursor, account_id)
        if not row:
            raise StoreUnavailableError(f"Failed to persist billing account {account_id}")
        return _row_to_account(row)

    def find_by_external_customer_id(self, customer_id: str) -> Optional[AccountSnapshot]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_accounts
                WHERE external_customer_id = %s
                LIMIT 1
                """,
                (customer_id,),
            )
            row = cursor.fetchone()
        return _row_to_account(row) if row else None

    def list_subscribed_accounts(
        self,
        *,
        after_account_id: Optional[str],
        limit: int,
    ) -> Sequence[AccountSnapshot]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_accounts
                WHERE external_subscription_id IS NOT NULL
                  AND (%(after)s::text IS NULL OR account_id > %(after)s)
                ORDER BY account_id
                LIMIT %(limit)s
                """,
                {"after": after_account_id, "limit": limit},
            )
            rows = cursor.fetchall() or []
        return [_row_to_account(row) for row in rows]

    def list_entitled_without_subscription(self, *, limit: int) -> Sequence[AccountSnapshot]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_accounts
                WHERE is_entitled = TRUE AND external_subscription_id IS NULL
                ORDER BY account_id
                LIMIT %s
                """,
                (limit,),
            )
            rows = cursor.fetchall() or []
        return [_row_to_account(row) for row in rows]

    @staticmethod
    def _select(cursor: PgCursor, account_id: str) -> Optional[dict]:
        cursor.execute(
            """
            SELECT *
            FROM billing_accounts
            WHERE account_id = %s
            LIMIT 1
            """,
            (account_id,),
        )
        return cursor.fetchone()


class PostgresAuditTrail(_PostgresRepository):
    """Append-only rows in ``billing_audit_log``."""

    def record(self, entry: AuditEntry) -> AuditEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_audit_log (
                    account_id,
                    event_type,
                    origin,
                    previous_state,
                    new_state,
                    source_event_id,
                    metadata,
                    created_at
                )
                VALUES (%(account_id)s, %(event_type)s, %(origin)s, %(previous_state)s,
                        %(new_state)s, %(source_event_id)s, %(metadata)s, %(created_at)s)
                RETURNING *
                """,
                {
                    "account_id": entry.account_id,
                    "event_type": entry.event_type.value,
                    "origin": entry.origin.value,
                    "previous_state": psycopg2.extras.Json(entry.previous_state),
                    "new_state": psycopg2.extras.Json(entry.new_state),
                    "source_event_id": entry.source_event_id,
                    "metadata": psycopg2.extras.Json(entry.metadata),
                    "created_at": entry.created_at,
                },
            )
            row = cursor.fetchone()
        if not row:
            raise StoreUnavailableError("Failed to persist billing audit entry")
        return _row_to_audit_entry(row)

    def list_for_account(self, account_id: str, *, limit: int = 50) -> Sequence[AuditEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_audit_log
                WHERE account_id = %s
                ORDER BY created_at DESC, entry_id DESC
                LIMIT %s
                """,
                (account_id, limit),
            )
            rows = cursor.fetchall() or []
        return [_row_to_audit_entry(row) for row in rows]

    def latest(self, *, origin: Optional[EventOrigin] = None) -> Optional[AuditEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_audit_log
                WHERE %(origin)s::text IS NULL OR origin = %(origin)s
                ORDER BY created_at DESC, entry_id DESC
                LIMIT 1
                """,
                {"origin": origin.value if origin else None},
            )
            row = cursor.fetchone()
        return _row_to_audit_entry(row) if row else None


__all__ = ["PostgresAccountStore", "PostgresAuditTrail", "managed_connection"]
