"""
Order stores - persistence collaborators for the sync orchestrator.

Every store offers the same four operations the engine relies on
(find_by_identity, find_by_heuristic_keys, create, update). A create or
update of one order applies completely or not at all.

SqliteOrderStore follows the patterns in orderq/infrastructure/database.py.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from orderq.config import HEURISTIC_AMOUNT_TOLERANCE
from orderq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from orderq.observability.logging import get_logger
from orderq.orders.errors import PersistenceError
from orderq.orders.models import CanonicalOrder, Item
from orderq.orders.normalizer import product_key as make_product_key

logger = get_logger(__name__)


class OrderStore(Protocol):
    def find_by_identity(self, user_id: str, keys: list[str]) -> list[CanonicalOrder]: ...

    def find_by_heuristic_keys(
        self,
        user_id: str,
        platform: str,
        product_key: str,
        amount: float,
        order_date: datetime,
        window_days: int,
    ) -> list[CanonicalOrder]: ...

    def create(self, order: CanonicalOrder) -> CanonicalOrder: ...

    def update(self, order: CanonicalOrder) -> CanonicalOrder: ...


def _within_window(a: datetime | None, b: datetime, window_days: int) -> bool:
    return a is not None and abs(a - b) <= timedelta(days=window_days)


class InMemoryOrderStore:
    """
    Dict-backed store. Hands out copies so callers never hold live state.

    Thread-safe: independent users may sync into one instance concurrently.
    """

    def __init__(self, amount_tolerance: float = HEURISTIC_AMOUNT_TOLERANCE):
        self.amount_tolerance = amount_tolerance
        self._orders: dict[str, CanonicalOrder] = {}
        self._identities: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def find_by_identity(self, user_id: str, keys: list[str]) -> list[CanonicalOrder]:
        with self._lock:
            order_ids = {self._identities[(user_id, k)] for k in keys if (user_id, k) in self._identities}
            return [self._orders[oid].model_copy(deep=True) for oid in sorted(order_ids)]

    def find_by_heuristic_keys(
        self,
        user_id: str,
        platform: str,
        product_key: str,
        amount: float,
        order_date: datetime,
        window_days: int,
    ) -> list[CanonicalOrder]:
        if not product_key:
            return []
        with self._lock:
            return [
                o.model_copy(deep=True)
                for o in self._orders.values()
                if o.user_id == user_id
                and o.platform == platform
                and o.has_real_product
                and make_product_key(o.product_name) == product_key
                and o.amount is not None
                and abs(o.amount - amount) <= self.amount_tolerance
                and _within_window(o.order_date, order_date, window_days)
            ]

    def create(self, order: CanonicalOrder) -> CanonicalOrder:
        with self._lock:
            if order.id in self._orders:
                raise PersistenceError(f"Order {order.id} already exists", order_id=order.id)
            self._claim_identities(order)
            self._orders[order.id] = order.model_copy(deep=True)
        logger.info("Created order %s for user %s", order.id, order.user_id)
        return order

    def update(self, order: CanonicalOrder) -> CanonicalOrder:
        with self._lock:
            if order.id not in self._orders:
                raise PersistenceError(f"Order {order.id} not found", order_id=order.id)
            self._claim_identities(order)
            self._orders[order.id] = order.model_copy(deep=True)
        logger.info("Updated order %s", order.id)
        return order

    def get_by_id(self, order_id: str) -> CanonicalOrder | None:
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def list_by_user(self, user_id: str) -> list[CanonicalOrder]:
        with self._lock:
            orders = [o.model_copy(deep=True) for o in self._orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at)

    def _claim_identities(self, order: CanonicalOrder) -> None:
        # Check every key before writing any, so a conflict leaves no trace
        for key in order.identity_keys:
            owner = self._identities.get((order.user_id, key))
            if owner is not None and owner != order.id:
                raise PersistenceError(
                    f"Identity {key[:12]} already belongs to order {owner}", order_id=order.id
                )
        for key in order.identity_keys:
            self._identities[(order.user_id, key)] = order.id


class SqliteOrderStore:
    """
    SQLite-backed store over canonical_orders, order_items and order_identities.

    Args:
        db_path: Database file; defaults to ORDERQ_DB_PATH. Must be initialized
            with init_database() first.
    """

    def __init__(self, db_path: Path | None = None, amount_tolerance: float = HEURISTIC_AMOUNT_TOLERANCE):
        self.db_path = db_path
        self.amount_tolerance = amount_tolerance

    def find_by_identity(self, user_id: str, keys: list[str]) -> list[CanonicalOrder]:
        """
        Orders owning any of the given identity keys.

        Args:
            user_id: Owner
            keys: Identity keys computed for a fragment

        Returns:
            Matching orders (at most one per key by schema)
        """
        if not keys:
            return []
        placeholders = ",".join("?" * len(keys))
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT o.* FROM canonical_orders o
                WHERE o.id IN (
                    SELECT order_id FROM order_identities
                    WHERE user_id = ? AND identity_key IN ({placeholders})
                )
                ORDER BY o.created_at ASC
                """,
                (user_id, *keys),
            ).fetchall()
            return self._hydrate(conn, rows)

    def find_by_heuristic_keys(
        self,
        user_id: str,
        platform: str,
        product_key: str,
        amount: float,
        order_date: datetime,
        window_days: int,
    ) -> list[CanonicalOrder]:
        """
        Orders that may be the same purchase without a shared identifier.

        Amount and product key are filtered in SQL, the date window in Python
        since order dates are stored as ISO strings.
        """
        if not product_key:
            return []
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM canonical_orders
                WHERE user_id = ? AND platform = ? AND product_key = ?
                  AND product_is_placeholder = 0
                  AND amount IS NOT NULL AND ABS(amount - ?) <= ?
                ORDER BY created_at ASC
                """,
                (user_id, platform, product_key, amount, self.amount_tolerance),
            ).fetchall()
            orders = self._hydrate(conn, rows)
        return [o for o in orders if _within_window(o.order_date, order_date, window_days)]

    @retry_on_db_lock()
    def create(self, order: CanonicalOrder) -> CanonicalOrder:
        """
        Insert an order with its items and identity keys in one transaction.

        Raises:
            PersistenceError: id or identity key already taken
        """
        db_dict = order.to_db_dict()
        try:
            with db_transaction(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO canonical_orders (
                        id, user_id, platform, order_ref, tracking_ref, amount, currency,
                        product_name, product_is_placeholder, product_key, status,
                        order_date, delivered_date, delivery_location, fragment_refs,
                        identity_keys, confidence, integrity_warnings, last_email_at,
                        created_at, updated_at
                    ) VALUES (
                        :id, :user_id, :platform, :order_ref, :tracking_ref, :amount, :currency,
                        :product_name, :product_is_placeholder, :product_key, :status,
                        :order_date, :delivered_date, :delivery_location, :fragment_refs,
                        :identity_keys, :confidence, :integrity_warnings, :last_email_at,
                        :created_at, :updated_at
                    )
                    """,
                    db_dict,
                )
                self._write_items(conn, order)
                self._write_identities(conn, order)
        except sqlite3.IntegrityError as e:
            raise PersistenceError(f"Could not create order {order.id}: {e}", order_id=order.id) from e

        logger.info("Created order %s for user %s", order.id, order.user_id)
        return order

    @retry_on_db_lock()
    def update(self, order: CanonicalOrder) -> CanonicalOrder:
        """
        Replace an order's row, items and identity keys in one transaction.

        Raises:
            PersistenceError: order missing, or a new identity key belongs to
                another order
        """
        db_dict = order.to_db_dict()
        columns = [k for k in db_dict if k not in ("id", "user_id", "created_at")]
        set_clause = ", ".join(f"{k} = :{k}" for k in columns)
        try:
            with db_transaction(self.db_path) as conn:
                cursor = conn.execute(
                    f"UPDATE canonical_orders SET {set_clause} WHERE id = :id",
                    db_dict,
                )
                if cursor.rowcount == 0:
                    raise PersistenceError(f"Order {order.id} not found", order_id=order.id)
                conn.execute("DELETE FROM order_items WHERE order_id = ?", (order.id,))
                self._write_items(conn, order)
                self._write_identities(conn, order)
        except sqlite3.IntegrityError as e:
            raise PersistenceError(f"Could not update order {order.id}: {e}", order_id=order.id) from e

        logger.info("Updated order %s", order.id)
        return order

    def get_by_id(self, order_id: str) -> CanonicalOrder | None:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM canonical_orders WHERE id = ?", (order_id,)).fetchone()
            if not row:
                return None
            return self._hydrate(conn, [row])[0]

    def list_by_user(self, user_id: str) -> list[CanonicalOrder]:
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM canonical_orders WHERE user_id = ? ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
            return self._hydrate(conn, rows)

    @staticmethod
    def _write_items(conn: sqlite3.Connection, order: CanonicalOrder) -> None:
        conn.executemany(
            """
            INSERT INTO order_items (order_id, position, name, quantity, unit_price, total_price)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (order.id, pos, item.name, item.quantity, item.unit_price, item.total_price)
                for pos, item in enumerate(order.items)
            ],
        )

    @staticmethod
    def _write_identities(conn: sqlite3.Connection, order: CanonicalOrder) -> None:
        owned = {
            row["identity_key"]
            for row in conn.execute(
                "SELECT identity_key FROM order_identities WHERE order_id = ?", (order.id,)
            )
        }
        conn.executemany(
            "INSERT INTO order_identities (user_id, identity_key, order_id) VALUES (?, ?, ?)",
            [(order.user_id, key, order.id) for key in order.identity_keys if key not in owned],
        )

    @staticmethod
    def _hydrate(conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[CanonicalOrder]:
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        placeholders = ",".join("?" * len(ids))
        items: dict[str, list[Item]] = {}
        for item_row in conn.execute(
            f"SELECT * FROM order_items WHERE order_id IN ({placeholders}) ORDER BY order_id, position",
            ids,
        ):
            items.setdefault(item_row["order_id"], []).append(
                Item(
                    name=item_row["name"],
                    quantity=item_row["quantity"],
                    unit_price=item_row["unit_price"],
                    total_price=item_row["total_price"],
                )
            )
        return [CanonicalOrder.from_db_row(dict(row), items.get(row["id"], [])) for row in rows]
