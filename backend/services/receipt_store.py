"""
Receipt persistence.

Drafts are written exactly as submitted: total_amount and date stay TEXT and
items are stored as a JSON array, so a saved receipt reads back unchanged.
"""
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from models.schemas import RECEIPT_CATEGORIES, Receipt, ReceiptCreate, ReceiptDraft, ReceiptItem, ReceiptUpdate

logger = logging.getLogger("bizznex.receipts")

RECEIPT_STATUSES = ("Pending", "Reconciled")

# model field → column
_COLUMNS = {
    "vendor": "vendor",
    "date": "date",
    "total_amount": "total_amount",
    "category": "category",
    "items": "items",
    "notes": "notes",
    "status": "status",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_receipt_id() -> str:
    return f"receipt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def _dump_items(items: list[ReceiptItem]) -> str:
    return json.dumps([i.model_dump() for i in items])


def _validate(status: Optional[str] = None, category: Optional[str] = None) -> None:
    if status is not None and status not in RECEIPT_STATUSES:
        raise ValueError(f"Unknown status: {status!r}")
    # "" means the user has not picked one yet
    if category and category not in RECEIPT_CATEGORIES:
        raise ValueError(f"Unknown category: {category!r}")


def row_to_receipt(row) -> Receipt:
    return Receipt(
        id=row["id"],
        vendor=row["vendor"],
        date=row["date"],
        total_amount=row["total_amount"],
        category=row["category"],
        items=[ReceiptItem(**i) for i in json.loads(row["items"] or "[]")],
        notes=row["notes"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def insert_receipt(db: aiosqlite.Connection, user_id: Optional[str], body: ReceiptCreate) -> Receipt:
    _validate(body.status, body.category)
    receipt_id = body.id or new_receipt_id()
    now = _now()
    await db.execute(
        """INSERT INTO receipts
           (id, user_id, vendor, date, total_amount, category, items, notes,
            status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (receipt_id, user_id, body.vendor, body.date, body.total_amount, body.category,
         _dump_items(body.items), body.notes, body.status, now, now),
    )
    await db.commit()
    logger.info("Saved receipt %s (%s %s)", receipt_id, body.vendor or "?", body.total_amount or "?")
    return await get_receipt(db, user_id, receipt_id)


async def get_receipt(db: aiosqlite.Connection, user_id: Optional[str], receipt_id: str) -> Optional[Receipt]:
    async with db.execute(
        "SELECT * FROM receipts WHERE id = ? AND user_id IS ?", (receipt_id, user_id)
    ) as cur:
        row = await cur.fetchone()
    return row_to_receipt(row) if row else None


async def list_receipts(
    db: aiosqlite.Connection,
    user_id: Optional[str],
    vendor: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> list[Receipt]:
    query = "SELECT * FROM receipts WHERE user_id IS ?"
    params: list = [user_id]
    if vendor:
        query += " AND LOWER(vendor) LIKE ?"
        params.append(f"%{vendor.lower()}%")
    if start_date:
        query += " AND date >= ?"
        params.append(start_date)
    if end_date:
        query += " AND date <= ?"
        params.append(end_date)
    query += " ORDER BY date DESC, created_at DESC"

    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()
    return [row_to_receipt(r) for r in rows]


async def update_receipt(
    db: aiosqlite.Connection,
    user_id: Optional[str],
    receipt_id: str,
    body: ReceiptUpdate,
) -> Optional[Receipt]:
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    _validate(changes.get("status"), changes.get("category"))
    if "items" in changes:
        changes["items"] = _dump_items(body.items)

    sets = [f"{_COLUMNS[k]} = ?" for k in changes]
    params = list(changes.values())
    sets.append("updated_at = ?")
    params.append(_now())
    params.extend([receipt_id, user_id])

    cur = await db.execute(
        f"UPDATE receipts SET {', '.join(sets)} WHERE id = ? AND user_id IS ?", params
    )
    await db.commit()
    if cur.rowcount == 0:
        return None
    return await get_receipt(db, user_id, receipt_id)


async def delete_receipt(db: aiosqlite.Connection, user_id: Optional[str], receipt_id: str) -> bool:
    cur = await db.execute(
        "DELETE FROM receipts WHERE id = ? AND user_id IS ?", (receipt_id, user_id)
    )
    await db.commit()
    return cur.rowcount > 0


def receipt_saver(db: aiosqlite.Connection, user_id: Optional[str]):
    """An on_save callback for ReceiptScanner that writes to this store."""
    async def on_save(draft: ReceiptDraft) -> bool:
        body = ReceiptCreate(**draft.model_dump())
        await insert_receipt(db, user_id, body)
        return True
    return on_save
