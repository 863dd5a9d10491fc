"""
Receipts Router

POST   /api/receipts/scan         — upload an image/PDF (or a data URI) and get an editable draft
GET    /api/receipts/camera       — is a camera attached to this station?
POST   /api/receipts/scan/camera  — take a snapshot and scan it; 409 → fall back to upload
POST   /api/receipts              — save a finalized draft
GET    /api/receipts              — list receipts (vendor / date-range filters)
GET    /api/receipts/{id}         — one receipt
PUT    /api/receipts/{id}         — edit a saved receipt
DELETE /api/receipts/{id}         — remove a receipt
"""
import asyncio
import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse

from db.database import get_db
from models.schemas import ReceiptCreate, ReceiptUpdate
from routers.usage import quota_exceeded_response
from services.auth_service import CurrentUser, get_current_user
from services.capture_service import (
    CameraUnavailable, CapturedImage, UnsupportedFileType,
    build_capture, camera_available, capture_from_camera, decode_data_uri, read_upload,
)
from services.extraction_service import ReceiptExtractor, get_receipt_extractor
from services.receipt_store import (
    delete_receipt, get_receipt, insert_receipt, list_receipts, receipt_saver, update_receipt,
)
from services.scanner import ReceiptScanner
from services.usage_service import QuotaExceeded, UsageMeter

logger = logging.getLogger("bizznex.receipts")
router = APIRouter()


def _scanner(db, user: CurrentUser, extractor: ReceiptExtractor) -> ReceiptScanner:
    return ReceiptScanner(
        extractor=extractor,
        meter=UsageMeter(db, user.user_id, user.plan),
        on_save=receipt_saver(db, user.user_id),
    )


async def _scan(scanner: ReceiptScanner, captured: Optional[CapturedImage]):
    try:
        result = await scanner.ingest(captured)
    except QuotaExceeded as e:
        logger.info("Scan refused, quota used up (%s)", e.usage.current_usage)
        return quota_exceeded_response(e)
    return result.model_dump(by_alias=True)


# ── Scanning ──────────────────────────────────────────────────────────────────

@router.post("/scan")
async def scan_receipt(
    file: Optional[UploadFile] = File(None),
    image_data: Optional[str] = Form(None),
    user: CurrentUser = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
    extractor: ReceiptExtractor = Depends(get_receipt_extractor),
):
    """
    Accepts either a multipart `file` (image or PDF) or `image_data`, a
    base64 data URI as produced by a browser canvas.
    """
    try:
        if file is not None:
            captured = await read_upload(file)
        elif image_data:
            data, mime = decode_data_uri(image_data)
            captured = build_capture(data, mime, "capture.jpg")
        else:
            captured = None
    except UnsupportedFileType as e:
        raise HTTPException(status_code=415, detail=str(e))

    scanner = _scanner(db, user, extractor)
    if captured is None:
        # nothing captured: hand back the untouched draft
        return scanner.result().model_dump(by_alias=True)

    logger.info("Scan: %r (%s, %d KB) for %s",
                captured.filename, captured.content_type, captured.size // 1024, user.user_id)
    return await _scan(scanner, captured)


@router.get("/camera")
async def camera_status():
    available = await asyncio.to_thread(camera_available)
    return {"success": True, "data": {"available": available}}


@router.post("/scan/camera")
async def scan_from_camera(
    user: CurrentUser = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
    extractor: ReceiptExtractor = Depends(get_receipt_extractor),
):
    try:
        captured = await asyncio.to_thread(capture_from_camera)
    except CameraUnavailable as e:
        logger.warning("Camera capture failed: %s", e)
        return JSONResponse(status_code=409, content={
            "success": False,
            "fallback": "upload",
            "message": str(e),
        })
    return await _scan(_scanner(db, user, extractor), captured)


# ── Saved receipts ────────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_receipt(
    body: ReceiptCreate,
    user: CurrentUser = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    try:
        receipt = await insert_receipt(db, user.user_id, body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except aiosqlite.IntegrityError:
        raise HTTPException(status_code=409, detail=f"Receipt {body.id} already exists")
    return {"success": True, "data": receipt.model_dump(by_alias=True)}


@router.get("")
async def get_receipts(
    vendor: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    receipts = await list_receipts(db, user.user_id, vendor, start_date, end_date)
    return {"success": True, "data": [r.model_dump(by_alias=True) for r in receipts]}


@router.get("/{receipt_id}")
async def get_one_receipt(
    receipt_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    receipt = await get_receipt(db, user.user_id, receipt_id)
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return {"success": True, "data": receipt.model_dump(by_alias=True)}


@router.put("/{receipt_id}")
async def edit_receipt(
    receipt_id: str,
    body: ReceiptUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    try:
        receipt = await update_receipt(db, user.user_id, receipt_id, body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return {"success": True, "data": receipt.model_dump(by_alias=True)}


@router.delete("/{receipt_id}")
async def remove_receipt(
    receipt_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    if not await delete_receipt(db, user.user_id, receipt_id):
        raise HTTPException(status_code=404, detail="Receipt not found")
    logger.info("Deleted receipt %s", receipt_id)
    return {"success": True, "message": "Receipt deleted successfully"}
