"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database built from the production
schema in db/database.py.  Profiles are added per test through add_profile().
"""
import pytest
import aiosqlite

from db.database import SCHEMA


async def add_profile(db, user_id="user-1", email="owner@example.com", plan="starter"):
    await db.execute(
        "INSERT INTO profiles (user_id, email, plan) VALUES (?, ?, ?)", (user_id, email, plan)
    )
    await db.commit()


async def set_usage(db, user_id, month, count):
    await db.execute(
        """INSERT INTO receipt_scanner_usage (user_id, month, count) VALUES (?, ?, ?)
           ON CONFLICT(user_id, month) DO UPDATE SET count = excluded.count""",
        (user_id, month, count),
    )
    await db.commit()


def bearer(user_id="user-1", email="owner@example.com"):
    from services.auth_service import create_access_token
    return {"Authorization": f"Bearer {create_access_token(user_id, email)}"}


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.executescript(SCHEMA)
        yield conn


def make_app(db, *routers, extractor=None):
    """A bare FastAPI app with the given (router, prefix) pairs and the DB overridden."""
    from fastapi import FastAPI, HTTPException
    from db.database import get_db
    from main import http_exception_handler
    from services.extraction_service import get_receipt_extractor

    test_app = FastAPI()
    for router, prefix in routers:
        test_app.include_router(router, prefix=prefix)
    test_app.add_exception_handler(HTTPException, http_exception_handler)

    async def override_get_db():
        yield db
    test_app.dependency_overrides[get_db] = override_get_db
    if extractor is not None:
        test_app.dependency_overrides[get_receipt_extractor] = lambda: extractor
    return test_app
