"""
Extraction Service — sends one receipt image to Claude Vision with a fixed
instruction and turns the JSON reply into a ReceiptDraft.

The client is constructed explicitly (ReceiptExtractor.from_env() in the app,
a fake in tests).  Failures are raised as ExtractionError subclasses; callers
that want the "always give the user an editable form" behaviour use
extract_or_default(), which pairs the error with default_draft().
"""
import base64
import json
import logging
import os
import re
from datetime import date, datetime
from typing import Optional

import anthropic

from models.schemas import RECEIPT_CATEGORIES, ReceiptDraft, ReceiptItem
from services.image_service import prepare_image_for_vision

logger = logging.getLogger("bizznex.extract")

ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
RECEIPT_MODEL = os.environ.get("RECEIPT_MODEL", "claude-sonnet-4-5")

EXTRACTION_CATEGORIES = ["Materials", "Equipment", "Fuel", "Office Supplies", "Other"]

PROMPT = f"""I need to extract information from a receipt image. Please analyze this receipt and extract the following:

1. Vendor or Store Name
2. Date of Purchase (in YYYY-MM-DD format)
3. Total Amount (just the number with decimal)
4. Individual Items with prices (if visible)
5. Receipt category (choose one from: {', '.join(EXTRACTION_CATEGORIES)})

For fuel receipts specifically, the category should be "Fuel".

Your response must be ONLY a valid JSON object with these fields:
{{
  "vendor": "Store Name",
  "date": "YYYY-MM-DD",
  "totalAmount": "123.45",
  "items": [
    {{ "name": "Item description", "price": "12.34" }}
  ],
  "category": "Category from the list above"
}}

Return nothing except the JSON object."""


# ── Errors ────────────────────────────────────────────────────────────────────

class ExtractionError(Exception):
    kind = "ExtractionError"


class ConfigurationError(ExtractionError):
    kind = "ConfigurationError"

    def __init__(self, message: str = "API key not configured"):
        super().__init__(message)


class InvalidCredential(ExtractionError):
    kind = "InvalidCredential"

    def __init__(self, message: str = "Invalid API key. Please check the ANTHROPIC_API_KEY setting."):
        super().__init__(message)


class ModelUnavailable(ExtractionError):
    kind = "ModelUnavailable"

    def __init__(self, message: str = (
        "The receipt model is unavailable or has been retired. "
        "Please try again in a moment; if it keeps failing, update RECEIPT_MODEL."
    )):
        super().__init__(message)


class ProviderError(ExtractionError):
    kind = "ProviderError"

    def __init__(self, raw_message: str):
        super().__init__(f"Vision API error: {raw_message}")
        self.raw_message = raw_message


class MalformedResponse(ExtractionError):
    kind = "MalformedResponse"

    def __init__(self, raw_text: str = ""):
        super().__init__("Failed to parse response - the AI didn't return proper JSON")
        self.raw_text = raw_text


# ── Helpers ───────────────────────────────────────────────────────────────────

def default_draft(today: Optional[date] = None) -> ReceiptDraft:
    """The editable starting point returned alongside every extraction failure."""
    return ReceiptDraft(
        vendor="Unknown Vendor",
        date=(today or date.today()).isoformat(),
        total_amount="0.00",
        items=[],
        category="Other",
    )


def strip_code_fence(text: str) -> str:
    """Remove a ```json … ``` (or bare ```) wrapper if the model added one."""
    text = text.strip()
    m = re.search(r'```(?:json)?\s*\n?(.*?)\n?\s*```', text, re.S | re.I)
    if m:
        return m.group(1).strip()
    return text


_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%Y/%m/%d")


def normalize_date(value: str) -> str:
    """Coerce common printed formats to YYYY-MM-DD; leave anything else untouched."""
    value = (value or "").strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return value


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value).strip()


def coerce_category(value: str) -> str:
    """Match a model-supplied category to the receipt vocabulary; anything else is Other."""
    if not value:
        return ""
    for category in RECEIPT_CATEGORIES:
        if category.lower() == value.lower():
            return category
    logger.info("Unknown category %r from model, using Other", value)
    return "Other"


def draft_from_payload(data: dict) -> ReceiptDraft:
    raw_items = data.get("items")
    if raw_items is not None and not isinstance(raw_items, list):
        logger.warning("Ignoring non-list items in model reply: %r", raw_items)
        raw_items = None
    items = []
    for item in raw_items or []:
        if not isinstance(item, dict):
            continue
        items.append(ReceiptItem(name=_as_text(item.get("name")), price=_as_text(item.get("price"))))
    return ReceiptDraft(
        vendor=_as_text(data.get("vendor")),
        date=normalize_date(_as_text(data.get("date"))),
        total_amount=_as_text(data.get("totalAmount")),
        items=items,
        category=coerce_category(_as_text(data.get("category"))),
    )


def parse_response(text: str) -> ReceiptDraft:
    raw = strip_code_fence(text)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Model reply was not JSON: %s", text[:200])
        raise MalformedResponse(text) from e
    if not isinstance(data, dict):
        raise MalformedResponse(text)
    return draft_from_payload(data)


def classify_provider_error(e: Exception) -> ExtractionError:
    """Map an SDK/network exception onto the extraction error taxonomy."""
    msg = str(e)
    lower = msg.lower()
    if isinstance(e, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)) or "api key" in lower:
        return InvalidCredential()
    if isinstance(e, anthropic.NotFoundError) or "deprecated" in lower or "not_found" in lower or "404" in lower:
        return ModelUnavailable()
    return ProviderError(msg or type(e).__name__)


# ── Client ────────────────────────────────────────────────────────────────────

class ReceiptExtractor:
    """Receipt extraction using Claude Vision."""

    def __init__(self, client: Optional[anthropic.AsyncAnthropic], model: str = RECEIPT_MODEL):
        self.client = client
        self.model = model

    @classmethod
    def from_env(cls) -> "ReceiptExtractor":
        key = os.environ.get("ANTHROPIC_API_KEY", ANTHROPIC_API_KEY)
        client = anthropic.AsyncAnthropic(api_key=key) if key else None
        return cls(client, os.environ.get("RECEIPT_MODEL", RECEIPT_MODEL))

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def extract(self, image_bytes: bytes) -> ReceiptDraft:
        """Raises an ExtractionError subclass on any failure."""
        if self.client is None:
            logger.error("ANTHROPIC_API_KEY not set, cannot extract receipt")
            raise ConfigurationError()

        vision_bytes, media_type = prepare_image_for_vision(image_bytes)
        b64 = base64.standard_b64encode(vision_bytes).decode()
        logger.info("Sending %d KB b64 (%s) to %s", len(b64) // 1024, media_type, self.model)

        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=2048,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": b64,
                            },
                        },
                        {"type": "text", "text": PROMPT},
                    ],
                }],
            )
        except Exception as e:
            logger.error("Vision API error: %s", e)
            raise classify_provider_error(e) from e

        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        ).strip()
        logger.debug("Vision reply: %s…", text[:100])
        return parse_response(text)

    async def extract_or_default(self, image_bytes: bytes) -> tuple[ReceiptDraft, Optional[ExtractionError]]:
        try:
            return await self.extract(image_bytes), None
        except ExtractionError as e:
            return default_draft(), e


def get_receipt_extractor() -> ReceiptExtractor:
    """Dependency: the configured extraction client."""
    return ReceiptExtractor.from_env()
