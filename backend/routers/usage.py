"""
Receipt-scanner usage

GET  /api/receipt-scanner-usage  — this month's usage for the caller (read-only)
POST /api/receipt-scanner-usage  — count one scan; 403 once the quota is used up

Every failure body carries canUseFeature: false so clients can gate the
scanner on this endpoint alone.
"""
import logging

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from db.database import get_db
from services.auth_service import CurrentUser, get_current_user
from services.usage_service import QuotaExceeded, UsageMeter

logger = logging.getLogger("bizznex.usage")
router = APIRouter()


async def get_usage_user(
    request: Request,
    db: aiosqlite.Connection = Depends(get_db),
) -> CurrentUser:
    try:
        return await get_current_user(request, db)
    except HTTPException as e:
        raise HTTPException(
            status_code=e.status_code,
            detail={"message": e.detail, "canUseFeature": False},
        ) from e


def quota_exceeded_response(e: QuotaExceeded) -> JSONResponse:
    usage = e.usage
    return JSONResponse(status_code=403, content={
        "success": False,
        "message": str(e),
        "canUseFeature": False,
        "data": {
            "currentUsage": usage.current_usage,
            "limit": usage.limit,
            "remaining": 0,
        },
    })


@router.get("")
async def get_usage(
    user: CurrentUser = Depends(get_usage_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    usage = await UsageMeter(db, user.user_id, user.plan).check()
    return {"success": True, "data": usage.model_dump(by_alias=True)}


@router.post("")
async def increment_usage(
    user: CurrentUser = Depends(get_usage_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    try:
        usage = await UsageMeter(db, user.user_id, user.plan).increment()
    except QuotaExceeded as e:
        return quota_exceeded_response(e)
    return {"success": True, "data": usage.model_dump(by_alias=True)}
