"""
SQLite persistence for orders, order items, proofs and the order event log.

This module is deliberately dumb: it stores and returns plain dictionaries.
Lifecycle rules and normalisation into ``Proof`` models live in
``proof_store``.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .utils import ensure_directory

# Default database path
DEFAULT_DB_PATH = Path("data/proofs.db")

PROOF_COLUMNS = (
    "id",
    "order_id",
    "order_item_id",
    "file_url",
    "file_public_id",
    "title",
    "status",
    "cut_lines",
    "admin_notes",
    "customer_notes",
    "extracted_width",
    "extracted_height",
    "replaced",
    "replaced_at",
    "original_file_name",
    "customer_file_url",
    "customer_file_public_id",
    "uploaded_at",
    "sent_at",
    "approved_at",
    "changes_requested_at",
)

_DATETIME_COLUMNS = {"replaced_at", "uploaded_at", "sent_at", "approved_at", "changes_requested_at", "created_at", "timestamp"}


def _serialize_value(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _DATETIME_COLUMNS and isinstance(value, datetime):
        return value.isoformat()
    if column == "cut_lines":
        return json.dumps(list(value))
    if column == "replaced":
        return int(bool(value))
    return value


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class ProofDatabase:
    """
    SQLite database for proof persistence.

    Thread-safe: each call opens its own connection and SQLite serialises
    writers with WAL mode. Callers that need read-check-write atomicity
    wrap their calls in ``transaction()``.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    transaction = _get_connection

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    order_number TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS order_items (
                    id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                    product_name TEXT NOT NULL,
                    quantity INTEGER NOT NULL DEFAULT 1,
                    calculator_selections TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS proofs (
                    id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                    order_item_id TEXT,
                    file_url TEXT NOT NULL,
                    file_public_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending'
                           CHECK(status IN ('pending','sent','approved','changes_requested')),
                    cut_lines TEXT,
                    admin_notes TEXT,
                    customer_notes TEXT,
                    extracted_width REAL,
                    extracted_height REAL,
                    replaced INTEGER NOT NULL DEFAULT 0,
                    replaced_at TEXT,
                    original_file_name TEXT,
                    customer_file_url TEXT,
                    customer_file_public_id TEXT,
                    uploaded_at TEXT NOT NULL,
                    sent_at TEXT,
                    approved_at TEXT,
                    changes_requested_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS order_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                    proof_id TEXT,
                    timestamp TEXT NOT NULL,
                    message TEXT NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_proofs_order ON proofs(order_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_proofs_item ON proofs(order_id, order_item_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_items_order ON order_items(order_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_order ON order_events(order_id)")

    # Orders

    def insert_order(self, order_id: str, order_number: Optional[str], created_at: datetime) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO orders (id, order_number, created_at) VALUES (?, ?, ?)",
                (order_id, order_number, created_at.isoformat()),
            )

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            if not row:
                return None
            return {
                "id": row["id"],
                "order_number": row["order_number"],
                "created_at": _deserialize_datetime(row["created_at"]),
            }

    # Order items

    def insert_item(self, item: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO order_items (id, order_id, product_name, quantity, calculator_selections)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    item["id"],
                    item["order_id"],
                    item["product_name"],
                    item.get("quantity", 1),
                    json.dumps(item.get("calculator_selections") or {}),
                ),
            )

    def list_items(self, order_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM order_items WHERE order_id = ? ORDER BY rowid", (order_id,)).fetchall()
            return [
                {
                    "id": row["id"],
                    "order_id": row["order_id"],
                    "product_name": row["product_name"],
                    "quantity": row["quantity"],
                    "calculator_selections": json.loads(row["calculator_selections"] or "{}"),
                }
                for row in rows
            ]

    # Proofs

    def insert_proof(self, proof: Dict[str, Any], conn: Optional[sqlite3.Connection] = None) -> None:
        columns = [column for column in PROOF_COLUMNS if column in proof]
        placeholders = ", ".join("?" for _ in columns)
        values = [_serialize_value(column, proof[column]) for column in columns]
        sql = f"INSERT INTO proofs ({', '.join(columns)}) VALUES ({placeholders})"
        if conn is not None:
            conn.execute(sql, values)
            return
        with self._get_connection() as own_conn:
            own_conn.execute(sql, values)

    def update_proof(self, proof_id: str, fields: Dict[str, Any], conn: Optional[sqlite3.Connection] = None) -> bool:
        """
        Update proof columns.

        Returns:
            True if a row was updated, False if the proof does not exist
        """
        unknown = set(fields) - set(PROOF_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown proof columns: {sorted(unknown)}")
        if not fields:
            return True
        updates = ", ".join(f"{column} = ?" for column in fields)
        values = [_serialize_value(column, value) for column, value in fields.items()]
        values.append(proof_id)
        sql = f"UPDATE proofs SET {updates} WHERE id = ?"
        if conn is not None:
            return conn.execute(sql, values).rowcount > 0
        with self._get_connection() as own_conn:
            return own_conn.execute(sql, values).rowcount > 0

    def delete_proof(self, proof_id: str) -> bool:
        """
        Delete a proof record.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM proofs WHERE id = ?", (proof_id,))
            return cursor.rowcount > 0

    def get_proof(self, proof_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM proofs WHERE id = ?", (proof_id,)).fetchone()
            return self._row_to_proof_dict(row) if row else None

    def list_proofs(self, order_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM proofs WHERE order_id = ? ORDER BY uploaded_at, rowid", (order_id,)
            ).fetchall()
            return [self._row_to_proof_dict(row) for row in rows]

    # Events

    def add_event(self, order_id: str, message: str, timestamp: datetime, proof_id: Optional[str] = None) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO order_events (order_id, proof_id, timestamp, message) VALUES (?, ?, ?, ?)",
                (order_id, proof_id, timestamp.isoformat(), message),
            )

    def list_events(self, order_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM order_events WHERE order_id = ? ORDER BY id", (order_id,)).fetchall()
            return [
                {
                    "timestamp": _deserialize_datetime(row["timestamp"]),
                    "message": row["message"],
                    "proof_id": row["proof_id"],
                }
                for row in rows
            ]

    def _row_to_proof_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a proof data dictionary."""
        data = {column: row[column] for column in PROOF_COLUMNS}
        data["cut_lines"] = json.loads(row["cut_lines"] or "[]")
        data["replaced"] = bool(row["replaced"])
        for column in _DATETIME_COLUMNS & set(PROOF_COLUMNS):
            data[column] = _deserialize_datetime(row[column])
        return data
