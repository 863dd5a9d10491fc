from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
import time

from db.database import init_db
from routers import receipts, usage

# ── Logging setup ─────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Quiet noisy libraries unless we're in DEBUG
if LOG_LEVEL != "DEBUG":
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)

logger = logging.getLogger("bizznex")

VERSION = "0.1.0"

app = FastAPI(
    title="Bizznex — Receipt Scanner",
    description="Receipt capture, AI extraction and bookkeeping for small businesses",
    version=VERSION,
)

_cors_origins = os.environ.get("CORS_ORIGINS", "").strip()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins.split(",") if _cors_origins else ["*"],
    allow_credentials=bool(_cors_origins),  # only send credentials when origins are explicit
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(receipts.router, prefix="/api/receipts", tags=["receipts"])
app.include_router(usage.router, prefix="/api/receipt-scanner-usage", tags=["usage"])


async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Every error body has the same {success, message} shape.  A dict detail
    is merged in as-is, so a router can add fields next to the message.
    """
    if isinstance(exc.detail, dict):
        content = {"success": False, **exc.detail}
    else:
        content = {"success": False, "message": exc.detail}
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )

app.add_exception_handler(HTTPException, http_exception_handler)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    if LOG_LEVEL == "DEBUG" or response.status_code >= 400:
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.DEBUG,
            "%s %s → %s (%.0fms)",
            request.method, request.url.path, response.status_code, elapsed,
        )
    return response

@app.on_event("startup")
async def on_startup():
    logger.info("Starting Bizznex v%s  LOG_LEVEL=%s  DB=%s  model=%s",
                VERSION, LOG_LEVEL, os.environ.get("DB_PATH", "(default)"),
                os.environ.get("RECEIPT_MODEL", "(default)"))
    if not os.environ.get("ANTHROPIC_API_KEY"):
        logger.warning("ANTHROPIC_API_KEY not set; scans will return an empty draft to fill in by hand")
    await init_db()

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}
