"""
Vendor heuristics — fills a draft for document classes the image pipeline
handles badly (advertising-platform invoices), using the filename and the
PDF's embedded text instead of rendering + AI.

Best effort only: an amount or date that can't be found is left empty (or
today's date) for the user to correct.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from models.schemas import ReceiptDraft
from services.capture_service import CapturedImage
from services.image_service import render_vendor_placeholder
from services.pdf_service import RasterizationError, extract_pdf_text

logger = logging.getLogger("bizznex.vendor")

# "$45.00", "$ 1,234.56", "$1234.56"; exactly two decimals
AMOUNT_RE = re.compile(r'\$\s?((?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2})(?!\d)')

# M/D/YYYY or M-D-YYYY, 19xx/20xx years
TEXT_DATE_RE = re.compile(
    r'\b(0?[1-9]|1[0-2])[/\-](0?[1-9]|[12]\d|3[01])[/\-]((?:19|20)\d{2})\b'
)

MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

# "jan 1 2025", "March-15-2024", "yelp_ads_march_2024" (day optional)
FILENAME_DATE_RE = re.compile(
    r'(?<![a-z])(' + '|'.join(sorted(MONTHS, key=len, reverse=True)) + r')(?![a-z])'
    r'[\s_\-.]*(\d{1,2})?(?!\d)[\s_\-.,]*((?:19|20)\d{2})(?!\d)',
    re.I,
)


@dataclass(frozen=True)
class VendorProfile:
    vendor: str
    category: str
    headline: str
    name_keywords: tuple[str, ...]
    pdf_name_keywords: tuple[str, ...] = ()

    def matches(self, filename: str, is_pdf: bool) -> bool:
        name = filename.lower()
        if any(k in name for k in self.name_keywords):
            return True
        return is_pdf and any(k in name for k in self.pdf_name_keywords)


VENDOR_PROFILES = [
    VendorProfile(
        vendor="Yelp for Business",
        category="Advertising",
        headline="Yelp Advertisement Receipt",
        name_keywords=("yelp", "advertisement", "ad receipt", "marketing"),
        pdf_name_keywords=("ads", "invoice"),
    ),
]


def match_profile(filename: str, is_pdf: bool) -> Optional[VendorProfile]:
    for profile in VENDOR_PROFILES:
        if profile.matches(filename, is_pdf):
            return profile
    return None


def find_total_amount(text: str) -> str:
    """Largest dollar amount in the text, formatted to two decimals ('' if none)."""
    amounts = [Decimal(m.replace(",", "")) for m in AMOUNT_RE.findall(text)]
    if not amounts:
        return ""
    return f"{max(amounts):.2f}"


def find_text_date(text: str) -> Optional[str]:
    """First valid M/D/YYYY date in the text, as YYYY-MM-DD."""
    for m in TEXT_DATE_RE.finditer(text):
        month, day, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            continue
    return None


def find_filename_date(filename: str) -> Optional[str]:
    """Month-name date in a filename; a missing day means the 1st."""
    for m in FILENAME_DATE_RE.finditer(filename):
        month = MONTHS[m.group(1).lower()]
        day = int(m.group(2)) if m.group(2) else 1
        try:
            return date(int(m.group(3)), month, day).isoformat()
        except ValueError:
            continue
    return None


@dataclass
class HeuristicResult:
    draft: ReceiptDraft
    preview_png: bytes
    profile: VendorProfile


def apply_vendor_heuristics(
    captured: CapturedImage,
    today: Optional[date] = None,
) -> Optional[HeuristicResult]:
    """
    Build a draft for a known vendor class, or return None when the file
    doesn't match any profile.  Text extraction problems are tolerated; the
    filename alone still yields a usable draft.
    """
    profile = match_profile(captured.filename, captured.is_pdf)
    if profile is None:
        return None

    logger.info("Detected %s receipt %r, using vendor heuristics",
                profile.vendor, captured.filename)

    amount = ""
    text_date = None
    if captured.is_pdf:
        try:
            text = extract_pdf_text(captured.data, max_pages=3)
            logger.debug("Extracted text: %s…", text[:500])
            amount = find_total_amount(text)
            text_date = find_text_date(text)
        except RasterizationError as e:
            logger.warning("Text extraction failed for %r (%s), using filename only",
                           captured.filename, e.kind)

    receipt_date = (
        text_date
        or find_filename_date(captured.filename)
        or (today or date.today()).isoformat()
    )

    amount_line = (f"Amount detected: ${amount}" if amount
                   else "Please fill in the actual amount from the PDF.")
    draft = ReceiptDraft(
        vendor=profile.vendor,
        date=receipt_date,
        total_amount=amount,
        items=[],
        category=profile.category,
        notes=f"{profile.headline}\nFilename: {captured.filename}\n{amount_line}",
    )
    preview = render_vendor_placeholder(
        profile.vendor, profile.headline, captured.filename,
        amount=amount, size_kb=round(captured.size / 1024),
    )
    return HeuristicResult(draft=draft, preview_png=preview, profile=profile)
