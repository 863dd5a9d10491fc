from datetime import date as Date
from decimal import Decimal, InvalidOperation
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


RECEIPT_CATEGORIES = [
    "Materials", "Equipment", "Fuel", "Office Supplies", "Advertising", "Other",
]


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Receipt draft ──────────────────────────────────────
class ReceiptItem(BaseModel):
    name: str = ""
    price: str = ""


class ReceiptDraft(CamelModel):
    """
    In-progress receipt, editable before save.

    total_amount and date are kept as the strings the user (or the model)
    produced; use amount_value() / date_value() when a number or a date is
    actually needed.
    """
    vendor: str = ""
    date: str = ""
    total_amount: str = ""
    items: List[ReceiptItem] = Field(default_factory=list)
    category: str = ""
    notes: str = ""

    def amount_value(self) -> Optional[Decimal]:
        cleaned = self.total_amount.replace(",", "").replace("$", "").strip()
        if not cleaned:
            return None
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return None

    def date_value(self) -> Optional[Date]:
        try:
            return Date.fromisoformat(self.date)
        except ValueError:
            return None

    def is_empty(self) -> bool:
        return self == ReceiptDraft()


# ── Saved receipts ─────────────────────────────────────
class ReceiptCreate(ReceiptDraft):
    """Body of POST /api/receipts — a finalized draft."""
    id: Optional[str] = None
    status: str = "Pending"


class ReceiptUpdate(CamelModel):
    vendor: Optional[str] = None
    date: Optional[str] = None
    total_amount: Optional[str] = None
    items: Optional[List[ReceiptItem]] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class Receipt(ReceiptDraft):
    id: str
    status: str = "Pending"
    created_at: str
    updated_at: str


# ── Usage metering ─────────────────────────────────────
class UsageSnapshot(CamelModel):
    current_usage: int
    limit: Optional[int]           # None = unlimited plan
    remaining: Optional[int]
    can_use_feature: bool
    unlimited: bool = False


# ── Scan ───────────────────────────────────────────────
class ScanError(BaseModel):
    kind: str
    message: str


class ScanResult(CamelModel):
    success: bool
    data: ReceiptDraft
    preview: Optional[str] = None  # data: URI shown next to the form
    source: Optional[str] = None   # extraction | vendor_heuristic | placeholder
    error: Optional[ScanError] = None
    usage: Optional[UsageSnapshot] = None
    usage_limit_reached: bool = False
