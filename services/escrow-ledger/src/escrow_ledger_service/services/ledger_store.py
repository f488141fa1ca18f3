"""SQLite-backed storage for the escrow ledger."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

# Category of the per-steward synthetic task that carries withdrawal PAYOUTs
SYSTEM_WITHDRAWAL_CATEGORY = "SYSTEM_WITHDRAWAL"

# Charge statuses that mean "the money is sitting in escrow"
ESCROWED_CHARGE_STATUSES: tuple[str, ...] = ("HELD", "DISPUTED")

ACTIVE_DISPUTE_STATUSES: tuple[str, ...] = ("OPEN", "UNDER_REVIEW")


def utc_now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return to_iso(datetime.now(UTC))


def to_iso(moment: datetime) -> str:
    """Format a datetime in the fixed-width form used for every stored timestamp."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse a stored (or client-supplied) ISO 8601 timestamp into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class DuplicateMilestonesError(Exception):
    """Raised when milestones already exist for a task."""


class HeldChargeConflictError(Exception):
    """Raised when the database refuses a second HELD charge for the same task."""


class LedgerStore:
    """
    SQLite-backed storage for tasks, transactions, disputes, milestones
    and security events.

    Writes that must land together are wrapped in atomic(), which holds
    the connection lock and an IMMEDIATE transaction for the whole block.
    Reads performed inside the block see the state they are about to change.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "client_id",
        "steward_id",
        "category",
        "status",
        "agreed_price",
        "currency",
        "expires_at",
        "is_expired",
        "actual_end",
        "metadata",
        "created_at",
        "updated_at",
    )
    _TRANSACTION_COLUMNS: tuple[str, ...] = (
        "tx_id",
        "task_id",
        "milestone_id",
        "amount",
        "platform_fee",
        "currency",
        "type",
        "status",
        "provider_transaction_id",
        "reference",
        "payment_method",
        "metadata",
        "created_at",
        "updated_at",
    )
    _DISPUTE_COLUMNS: tuple[str, ...] = (
        "dispute_id",
        "task_id",
        "transaction_id",
        "raised_by",
        "reason",
        "status",
        "resolution",
        "created_at",
        "updated_at",
    )
    _MILESTONE_COLUMNS: tuple[str, ...] = (
        "milestone_id",
        "task_id",
        "name",
        "description",
        "amount",
        "percentage",
        "position",
        "status",
        "due_date",
        "completed_at",
        "created_at",
    )
    _SECURITY_EVENT_COLUMNS: tuple[str, ...] = (
        "event_id",
        "type",
        "user_id",
        "severity",
        "details",
        "created_at",
    )
    _JSON_COLUMNS = frozenset({"metadata", "details"})

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    steward_id TEXT,
                    category TEXT NOT NULL,
                    status TEXT NOT NULL,
                    agreed_price INTEGER NOT NULL CHECK (agreed_price >= 0),
                    currency TEXT NOT NULL,
                    expires_at TEXT,
                    is_expired INTEGER NOT NULL DEFAULT 0,
                    actual_end TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    tx_id TEXT PRIMARY KEY,
                    task_id TEXT REFERENCES tasks(task_id),
                    milestone_id TEXT,
                    amount INTEGER NOT NULL,
                    platform_fee INTEGER NOT NULL DEFAULT 0,
                    currency TEXT NOT NULL,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    provider_transaction_id TEXT,
                    reference TEXT,
                    payment_method TEXT,
                    metadata TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS disputes (
                    dispute_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    transaction_id TEXT NOT NULL REFERENCES transactions(tx_id),
                    raised_by TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    status TEXT NOT NULL,
                    resolution TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS milestones (
                    milestone_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    name TEXT NOT NULL,
                    description TEXT,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    percentage REAL NOT NULL,
                    position INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    due_date TEXT,
                    completed_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS security_events (
                    event_id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    user_id TEXT,
                    severity TEXT NOT NULL,
                    details TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_held_charge_per_task
                    ON transactions(task_id)
                    WHERE type = 'CHARGE' AND status = 'HELD';

                CREATE UNIQUE INDEX IF NOT EXISTS ux_active_dispute_per_task
                    ON disputes(task_id)
                    WHERE status IN ('OPEN', 'UNDER_REVIEW');

                CREATE INDEX IF NOT EXISTS ix_transactions_task_type_status
                    ON transactions(task_id, type, status);

                CREATE INDEX IF NOT EXISTS ix_transactions_provider
                    ON transactions(provider_transaction_id);

                CREATE INDEX IF NOT EXISTS ix_transactions_reference
                    ON transactions(reference);

                CREATE INDEX IF NOT EXISTS ix_tasks_steward
                    ON tasks(steward_id);
                """
            )
            self._db.commit()

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Run a block as one commit-or-abort unit.

        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._db.in_transaction:
                yield
                return

            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._db.commit()

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    @staticmethod
    def new_id(prefix: str) -> str:
        """Generate a prefixed identifier (e.g. tx-<uuid4>)."""
        return f"{prefix}-{uuid.uuid4()}"

    def _row_to_dict(self, row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for column in columns:
            value = row[column]
            if column in self._JSON_COLUMNS:
                value = json.loads(value) if value else {}
            elif column == "is_expired":
                value = bool(value)
            result[column] = value
        return result

    def _encode(self, column: str, value: Any) -> Any:
        if column in self._JSON_COLUMNS:
            return json.dumps(value if value is not None else {}, default=str)
        if isinstance(value, bool):
            return int(value)
        return value

    def _insert(self, table: str, columns: tuple[str, ...], data: dict[str, Any]) -> None:
        values = tuple(self._encode(column, data.get(column)) for column in columns)
        placeholders = ", ".join("?" for _ in columns)
        query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # nosec B608
        self._db.execute(query, values)

    def _update(
        self,
        table: str,
        key_column: str,
        key: str,
        columns: tuple[str, ...],
        updates: dict[str, Any],
        expected_status: str | None,
    ) -> int:
        if len(updates) == 0:
            return 0

        if any(column not in columns for column in updates):
            msg = f"Attempted to update unknown {table} column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [self._encode(column, value) for column, value in updates.items()]

        query = f"UPDATE {table} SET {set_clause} WHERE {key_column} = ?"  # nosec B608
        params.append(key)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self.atomic():
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def _select_one(
        self,
        query: str,
        params: tuple[object, ...],
        columns: tuple[str, ...],
    ) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_dict(row, columns)

    def _select_many(
        self,
        query: str,
        params: tuple[object, ...] | list[object],
        columns: tuple[str, ...],
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_dict(row, columns) for row in rows]

    def _tx_select(self, alias: str = "") -> str:
        prefix = f"{alias}." if alias else ""
        return ", ".join(f"{prefix}{column}" for column in self._TRANSACTION_COLUMNS)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def upsert_task(self, task_data: dict[str, Any]) -> dict[str, Any]:
        """Insert a task or overwrite the mirrored fields of an existing one."""
        now = utc_now_iso()
        with self.atomic():
            existing = self.get_task(task_data["task_id"])
            if existing is None:
                row = {
                    "is_expired": False,
                    "actual_end": None,
                    "metadata": {},
                    "expires_at": None,
                    "steward_id": None,
                    **task_data,
                    "created_at": now,
                    "updated_at": now,
                }
                self._insert("tasks", self._TASK_COLUMNS, row)
            else:
                updates = {
                    column: value
                    for column, value in task_data.items()
                    if column in self._TASK_COLUMNS and column not in ("task_id", "created_at")
                }
                updates["updated_at"] = now
                self._update(
                    "tasks", "task_id", task_data["task_id"], self._TASK_COLUMNS, updates, None
                )
        task = self.get_task(task_data["task_id"])
        if task is None:
            msg = f"Task {task_data['task_id']} not found after upsert"
            raise RuntimeError(msg)
        return task

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        return self._select_one(
            f"SELECT {', '.join(self._TASK_COLUMNS)} FROM tasks WHERE task_id = ?",  # nosec B608
            (task_id,),
            self._TASK_COLUMNS,
        )

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        stamped = {**updates, "updated_at": utc_now_iso()}
        return self._update(
            "tasks", "task_id", task_id, self._TASK_COLUMNS, stamped, expected_status
        )

    def list_expired_open_tasks(self, now_iso: str) -> list[dict[str, Any]]:
        """OPEN tasks whose expiry has passed and that are not yet flagged expired."""
        return self._select_many(
            f"SELECT {', '.join(self._TASK_COLUMNS)} FROM tasks "  # nosec B608
            "WHERE status = 'OPEN' AND is_expired = 0 "
            "AND expires_at IS NOT NULL AND expires_at <= ? ORDER BY expires_at",
            (now_iso,),
            self._TASK_COLUMNS,
        )

    def get_or_create_withdrawal_task(self, steward_id: str, currency: str) -> dict[str, Any]:
        """Return the steward's synthetic withdrawal task, creating it on first use."""
        with self.atomic():
            existing = self._select_one(
                f"SELECT {', '.join(self._TASK_COLUMNS)} FROM tasks "  # nosec B608
                "WHERE client_id = ? AND steward_id = ? AND category = ?",
                (steward_id, steward_id, SYSTEM_WITHDRAWAL_CATEGORY),
                self._TASK_COLUMNS,
            )
            if existing is not None:
                return existing

            now = utc_now_iso()
            row = {
                "task_id": self.new_id("wdt"),
                "client_id": steward_id,
                "steward_id": steward_id,
                "category": SYSTEM_WITHDRAWAL_CATEGORY,
                "status": "DONE",
                "agreed_price": 0,
                "currency": currency,
                "expires_at": None,
                "is_expired": False,
                "actual_end": None,
                "metadata": {},
                "created_at": now,
                "updated_at": now,
            }
            self._insert("tasks", self._TASK_COLUMNS, row)
        return row

    def get_steward_currency(self, steward_id: str) -> str | None:
        """Currency of any task the steward works on."""
        with self._lock:
            row = self._db.execute(
                "SELECT currency FROM tasks WHERE steward_id = ? "
                "ORDER BY category = ?, created_at LIMIT 1",
                (steward_id, SYSTEM_WITHDRAWAL_CATEGORY),
            ).fetchone()
        return str(row[0]) if row is not None else None

    def count_done_tasks(self, steward_id: str) -> int:
        """Count real (non-withdrawal) DONE tasks for a steward."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM tasks WHERE steward_id = ? AND status = 'DONE' "
                "AND category != ?",
                (steward_id, SYSTEM_WITHDRAWAL_CATEGORY),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def insert_transaction(self, tx_data: dict[str, Any]) -> dict[str, Any]:
        """Insert a ledger row. Missing optional columns default to NULL and an empty trail."""
        now = utc_now_iso()
        row = {
            "milestone_id": None,
            "platform_fee": 0,
            "provider_transaction_id": None,
            "reference": None,
            "payment_method": None,
            "metadata": [],
            **tx_data,
            "created_at": tx_data.get("created_at", now),
            "updated_at": now,
        }
        with self.atomic():
            try:
                self._insert("transactions", self._TRANSACTION_COLUMNS, row)
            except sqlite3.IntegrityError as exc:
                if "ux_held_charge_per_task" in str(exc) or "transactions.task_id" in str(exc):
                    raise HeldChargeConflictError(str(exc)) from exc
                raise
        return row

    def get_transaction(self, tx_id: str) -> dict[str, Any] | None:
        """Fetch a ledger row by ID."""
        return self._select_one(
            f"SELECT {self._tx_select()} FROM transactions WHERE tx_id = ?",  # nosec B608
            (tx_id,),
            self._TRANSACTION_COLUMNS,
        )

    def update_transaction(
        self,
        tx_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update ledger row columns and return the number of affected rows."""
        stamped = {**updates, "updated_at": utc_now_iso()}
        try:
            return self._update(
                "transactions",
                "tx_id",
                tx_id,
                self._TRANSACTION_COLUMNS,
                stamped,
                expected_status,
            )
        except sqlite3.IntegrityError as exc:
            if "transactions.task_id" in str(exc):
                raise HeldChargeConflictError(str(exc)) from exc
            raise

    def count_escrowed_charges(self, task_id: str) -> int:
        """Count CHARGE rows of a task that are HELD or DISPUTED."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM transactions WHERE task_id = ? AND type = 'CHARGE' "
                "AND status IN (?, ?)",
                (task_id, *ESCROWED_CHARGE_STATUSES),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def list_task_transactions(
        self,
        task_id: str,
        *,
        tx_type: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """Ledger rows of a task, oldest first, optionally filtered."""
        query = f"SELECT {self._tx_select()} FROM transactions WHERE task_id = ?"  # nosec B608
        params: list[object] = [task_id]
        if tx_type is not None:
            query += " AND type = ?"
            params.append(tx_type)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at, rowid"
        return self._select_many(query, params, self._TRANSACTION_COLUMNS)

    def list_stale_held_charges(self, cutoff_iso: str) -> list[dict[str, Any]]:
        """HELD charges created at or before the cutoff whose task is DONE."""
        return self._select_many(
            f"SELECT {self._tx_select('t')} FROM transactions t "  # nosec B608
            "JOIN tasks k ON k.task_id = t.task_id "
            "WHERE t.type = 'CHARGE' AND t.status = 'HELD' AND t.created_at <= ? "
            "AND k.status = 'DONE' ORDER BY t.created_at, t.rowid",
            (cutoff_iso,),
            self._TRANSACTION_COLUMNS,
        )

    def find_withdrawal(
        self,
        provider_transaction_id: str | None,
        reference: str | None,
    ) -> dict[str, Any] | None:
        """Locate a withdrawal PAYOUT by provider id or by our transfer reference."""
        if provider_transaction_id is None and reference is None:
            return None
        return self._select_one(
            f"SELECT {self._tx_select('t')} FROM transactions t "  # nosec B608
            "JOIN tasks k ON k.task_id = t.task_id "
            "WHERE t.type = 'PAYOUT' AND k.category = ? "
            "AND ((? IS NOT NULL AND t.provider_transaction_id = ?) "
            "OR (? IS NOT NULL AND t.reference = ?)) "
            "ORDER BY t.created_at DESC, t.rowid DESC LIMIT 1",
            (
                SYSTEM_WITHDRAWAL_CATEGORY,
                provider_transaction_id,
                provider_transaction_id,
                reference,
                reference,
            ),
            self._TRANSACTION_COLUMNS,
        )

    def list_steward_payouts(self, steward_id: str) -> list[dict[str, Any]]:
        """
        PAYOUT rows linked to the steward's tasks, including the withdrawal task.

        Each row carries an extra "task_category" key.
        """
        columns = (*self._TRANSACTION_COLUMNS, "task_category")
        return self._select_many(
            f"SELECT {self._tx_select('t')}, k.category AS task_category "  # nosec B608
            "FROM transactions t JOIN tasks k ON k.task_id = t.task_id "
            "WHERE k.steward_id = ? AND t.type = 'PAYOUT' ORDER BY t.created_at, t.rowid",
            (steward_id,),
            columns,
        )

    def list_steward_history(
        self,
        steward_id: str,
        *,
        limit: int,
        offset: int,
        status: str | None,
        tx_type: str | None,
    ) -> tuple[list[dict[str, Any]], int]:
        """PAYOUT/REFUND/TIP rows of the steward's tasks, newest first, plus the total count."""
        where = "WHERE k.steward_id = ? AND t.type IN ('PAYOUT', 'REFUND', 'TIP')"
        params: list[object] = [steward_id]
        if status is not None:
            where += " AND t.status = ?"
            params.append(status)
        if tx_type is not None:
            where += " AND t.type = ?"
            params.append(tx_type)

        base = "FROM transactions t JOIN tasks k ON k.task_id = t.task_id " + where
        columns = (*self._TRANSACTION_COLUMNS, "task_category")
        rows = self._select_many(
            f"SELECT {self._tx_select('t')}, k.category AS task_category "  # nosec B608
            + base
            + " ORDER BY t.created_at DESC, t.rowid DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
            columns,
        )
        with self._lock:
            total_row = self._db.execute("SELECT COUNT(*) " + base, params).fetchone()  # nosec B608
        total = int(total_row[0]) if total_row is not None else 0
        return rows, total

    def list_payouts(
        self,
        *,
        limit: int,
        offset: int,
        status: str | None,
        steward_id: str | None,
    ) -> tuple[list[dict[str, Any]], int]:
        """
        PAYOUT rows across all stewards, newest first, plus the total count.

        Rows carry the task's category, steward and client. Withdrawals come
        from the steward's SYSTEM_WITHDRAWAL task.
        """
        where = "WHERE t.type = 'PAYOUT'"
        params: list[object] = []
        if status is not None:
            where += " AND t.status = ?"
            params.append(status)
        if steward_id is not None:
            where += " AND k.steward_id = ?"
            params.append(steward_id)

        base = "FROM transactions t JOIN tasks k ON k.task_id = t.task_id " + where
        columns = (*self._TRANSACTION_COLUMNS, "task_category", "steward_id", "client_id")
        rows = self._select_many(
            f"SELECT {self._tx_select('t')}, k.category AS task_category, "  # nosec B608
            "k.steward_id AS steward_id, k.client_id AS client_id "
            + base
            + " ORDER BY t.created_at DESC, t.rowid DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
            columns,
        )
        with self._lock:
            total_row = self._db.execute("SELECT COUNT(*) " + base, params).fetchone()  # nosec B608
        return rows, int(total_row[0]) if total_row is not None else 0

    def find_milestone_transaction(
        self,
        milestone_id: str,
        statuses: tuple[str, ...],
        tx_type: str = "CHARGE",
    ) -> dict[str, Any] | None:
        """Most recent ledger row of a milestone with one of the given statuses."""
        placeholders = ", ".join("?" for _ in statuses)
        return self._select_one(
            f"SELECT {self._tx_select()} FROM transactions "  # nosec B608
            f"WHERE milestone_id = ? AND type = ? AND status IN ({placeholders}) "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (milestone_id, tx_type, *statuses),
            self._TRANSACTION_COLUMNS,
        )

    def count_transactions_by_status(self) -> dict[str, int]:
        """Count ledger rows grouped by status."""
        with self._lock:
            rows = self._db.execute(
                "SELECT status, COUNT(*) FROM transactions GROUP BY status"
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def total_held_amount(self) -> int:
        """Sum of all CHARGE amounts currently in escrow."""
        with self._lock:
            row = self._db.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM transactions "
                "WHERE type = 'CHARGE' AND status IN (?, ?)",
                ESCROWED_CHARGE_STATUSES,
            ).fetchone()
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def insert_dispute(self, dispute_data: dict[str, Any]) -> dict[str, Any]:
        """Insert a dispute row."""
        now = utc_now_iso()
        row = {"resolution": None, **dispute_data, "created_at": now, "updated_at": now}
        with self.atomic():
            self._insert("disputes", self._DISPUTE_COLUMNS, row)
        return row

    def get_dispute(self, dispute_id: str) -> dict[str, Any] | None:
        """Fetch a dispute by ID."""
        return self._select_one(
            f"SELECT {', '.join(self._DISPUTE_COLUMNS)} FROM disputes "  # nosec B608
            "WHERE dispute_id = ?",
            (dispute_id,),
            self._DISPUTE_COLUMNS,
        )

    def update_dispute(self, dispute_id: str, updates: dict[str, Any]) -> int:
        """Update dispute columns and return the number of affected rows."""
        stamped = {**updates, "updated_at": utc_now_iso()}
        return self._update(
            "disputes", "dispute_id", dispute_id, self._DISPUTE_COLUMNS, stamped, None
        )

    def get_active_dispute(self, task_id: str) -> dict[str, Any] | None:
        """The OPEN or UNDER_REVIEW dispute of a task, if any."""
        return self._select_one(
            f"SELECT {', '.join(self._DISPUTE_COLUMNS)} FROM disputes "  # nosec B608
            "WHERE task_id = ? AND status IN (?, ?)",
            (task_id, *ACTIVE_DISPUTE_STATUSES),
            self._DISPUTE_COLUMNS,
        )

    def list_active_disputed_task_ids(self, steward_id: str) -> set[str]:
        """IDs of the steward's tasks that have an OPEN or UNDER_REVIEW dispute."""
        with self._lock:
            rows = self._db.execute(
                "SELECT d.task_id FROM disputes d JOIN tasks k ON k.task_id = d.task_id "
                "WHERE k.steward_id = ? AND d.status IN (?, ?)",
                (steward_id, *ACTIVE_DISPUTE_STATUSES),
            ).fetchall()
        return {str(row[0]) for row in rows}

    def list_disputes(self, status: str | None) -> list[dict[str, Any]]:
        """List disputes, newest first, optionally filtered by status."""
        query = f"SELECT {', '.join(self._DISPUTE_COLUMNS)} FROM disputes"  # nosec B608
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, rowid DESC"
        return self._select_many(query, params, self._DISPUTE_COLUMNS)

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def insert_milestones(self, task_id: str, milestones: list[dict[str, Any]]) -> None:
        """Insert all milestones of a task at once; a task gets milestones only once."""
        with self.atomic():
            if self.count_milestones(task_id) > 0:
                raise DuplicateMilestonesError(f"Milestones already exist for task {task_id}")
            for milestone in milestones:
                self._insert("milestones", self._MILESTONE_COLUMNS, milestone)

    def count_milestones(self, task_id: str) -> int:
        """Count milestones of a task."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM milestones WHERE task_id = ?",
                (task_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def list_milestones(self, task_id: str) -> list[dict[str, Any]]:
        """Milestones of a task in their configured order."""
        return self._select_many(
            f"SELECT {', '.join(self._MILESTONE_COLUMNS)} FROM milestones "  # nosec B608
            "WHERE task_id = ? ORDER BY position",
            (task_id,),
            self._MILESTONE_COLUMNS,
        )

    def get_milestone(self, milestone_id: str) -> dict[str, Any] | None:
        """Fetch a milestone by ID."""
        return self._select_one(
            f"SELECT {', '.join(self._MILESTONE_COLUMNS)} FROM milestones "  # nosec B608
            "WHERE milestone_id = ?",
            (milestone_id,),
            self._MILESTONE_COLUMNS,
        )

    def update_milestone(
        self,
        milestone_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update milestone columns and return the number of affected rows."""
        return self._update(
            "milestones",
            "milestone_id",
            milestone_id,
            self._MILESTONE_COLUMNS,
            updates,
            expected_status,
        )

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def insert_security_event(
        self,
        event_type: str,
        details: dict[str, Any],
        *,
        user_id: str | None = None,
        severity: str = "HIGH",
    ) -> dict[str, Any]:
        """Append an audit row. Security events are never updated or deleted."""
        row = {
            "event_id": self.new_id("sev"),
            "type": event_type,
            "user_id": user_id,
            "severity": severity,
            "details": details,
            "created_at": utc_now_iso(),
        }
        with self.atomic():
            self._insert("security_events", self._SECURITY_EVENT_COLUMNS, row)
        return row

    def list_security_events(
        self,
        *,
        event_type: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Security events, newest first."""
        query = (
            f"SELECT {', '.join(self._SECURITY_EVENT_COLUMNS)} FROM security_events"  # nosec B608
        )
        params: list[object] = []
        if event_type is not None:
            query += " WHERE type = ?"
            params.append(event_type)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return self._select_many(query, params, self._SECURITY_EVENT_COLUMNS)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
