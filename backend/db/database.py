import logging
import aiosqlite
import os

logger = logging.getLogger("bizznex.db")
DB_PATH = os.environ.get("DB_PATH", "/data/bizznex.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db

async def init_db():
    """Create all tables if they don't exist."""
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


SCHEMA = """
-- ── Account profiles (plan drives the receipt-scanner quota) ─────────────
CREATE TABLE IF NOT EXISTS profiles (
    user_id     TEXT PRIMARY KEY,
    email       TEXT,
    plan        TEXT NOT NULL DEFAULT 'starter',   -- starter | pro
    created_at  TEXT DEFAULT (datetime('now'))
);

-- Saved receipts. Money and dates stay TEXT so they reload exactly as entered.
CREATE TABLE IF NOT EXISTS receipts (
    id            TEXT PRIMARY KEY,                 -- receipt_<epoch ms>
    user_id       TEXT,
    vendor        TEXT NOT NULL DEFAULT '',
    date          TEXT NOT NULL DEFAULT '',         -- YYYY-MM-DD
    total_amount  TEXT NOT NULL DEFAULT '',
    category      TEXT NOT NULL DEFAULT '',
    items         TEXT NOT NULL DEFAULT '[]',       -- JSON [{name, price}]
    notes         TEXT NOT NULL DEFAULT '',
    status        TEXT NOT NULL DEFAULT 'Pending',  -- Pending | Reconciled
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

-- Monthly receipt-scanner usage, one row per (user, YYYY-MM)
CREATE TABLE IF NOT EXISTS receipt_scanner_usage (
    user_id     TEXT NOT NULL,
    month       TEXT NOT NULL,
    count       INTEGER NOT NULL DEFAULT 0,
    updated_at  TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (user_id, month)
);
"""
