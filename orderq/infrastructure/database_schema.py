"""
Database schema for the SQLite order store.

One row per canonical order, its items, and every identity key that
resolves to it. The identity table's primary key enforces one order per
identity per user.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from orderq.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS canonical_orders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        platform TEXT NOT NULL,
        order_ref TEXT,
        tracking_ref TEXT,
        amount REAL,
        currency TEXT NOT NULL DEFAULT 'INR',
        product_name TEXT,
        product_is_placeholder INTEGER NOT NULL DEFAULT 0,
        product_key TEXT,
        status TEXT NOT NULL,
        order_date TEXT,
        delivered_date TEXT,
        delivery_location TEXT,
        fragment_refs TEXT NOT NULL DEFAULT '[]',
        identity_keys TEXT NOT NULL DEFAULT '[]',
        confidence REAL NOT NULL DEFAULT 0,
        integrity_warnings TEXT NOT NULL DEFAULT '[]',
        last_email_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS order_items (
        order_id TEXT NOT NULL REFERENCES canonical_orders(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        name TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 1,
        unit_price REAL,
        total_price REAL,
        PRIMARY KEY (order_id, position)
    );

    CREATE TABLE IF NOT EXISTS order_identities (
        user_id TEXT NOT NULL,
        identity_key TEXT NOT NULL,
        order_id TEXT NOT NULL REFERENCES canonical_orders(id) ON DELETE CASCADE,
        PRIMARY KEY (user_id, identity_key)
    );

    CREATE INDEX IF NOT EXISTS idx_orders_user_platform
        ON canonical_orders(user_id, platform);
    CREATE INDEX IF NOT EXISTS idx_orders_product_key
        ON canonical_orders(user_id, platform, product_key);
"""


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Side Effects:
    - Creates the parent directory if needed
    - Creates tables and indexes if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()

    logger.info("Initialized order store schema at %s", db_path)
