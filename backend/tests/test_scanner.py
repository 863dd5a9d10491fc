"""
Tests for the ReceiptScanner flow: PDF fallbacks, quota gating around the
extraction call, stale-result handling, and the save callback.
"""
import asyncio
import io
from datetime import date

import fitz
import pytest
from PIL import Image

from conftest import set_usage
from models.schemas import ReceiptDraft
from services.capture_service import PDF_MIME, CapturedImage
from services.extraction_service import MalformedResponse, default_draft
from services.receipt_store import list_receipts, receipt_saver
from services.scanner import (
    Outcome,
    PdfStrategy,
    PlaceholderStrategy,
    RasterizeStrategy,
    ReceiptScanner,
    StrategyResult,
    VendorHeuristicStrategy,
    run_strategies,
)
from services.usage_service import QuotaExceeded, UsageMeter

MONTH = "2025-03"
TODAY = date(2025, 3, 20)


class FakeExtractor:
    def __init__(self, draft=None, error=None, gate=None):
        self.draft = draft or ReceiptDraft(vendor="Home Depot", date="2025-03-14",
                                           total_amount="45.67", category="Materials")
        self.error = error
        self.gate = gate
        self.calls = 0

    async def extract_or_default(self, image_bytes):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            return default_draft(), self.error
        return self.draft, None


def jpeg_capture(name="receipt.jpg") -> CapturedImage:
    buf = io.BytesIO()
    Image.new("RGB", (20, 30), (255, 255, 255)).save(buf, format="JPEG")
    return CapturedImage(buf.getvalue(), "image/jpeg", name)


def pdf_capture(name="receipt.pdf", text="Total $12.00", encrypted=False) -> CapturedImage:
    doc = fitz.open()
    doc.new_page().insert_text((72, 72), text)
    if encrypted:
        data = doc.tobytes(encryption=fitz.PDF_ENCRYPT_AES_256, user_pw="u", owner_pw="o")
    else:
        data = doc.tobytes()
    doc.close()
    return CapturedImage(data, PDF_MIME, name)


def make_scanner(db, extractor=None, plan="starter", on_save=None):
    return ReceiptScanner(
        extractor=extractor or FakeExtractor(),
        meter=UsageMeter(db, "user-1", plan, MONTH),
        on_save=on_save,
        strategies=[RasterizeStrategy(), VendorHeuristicStrategy(TODAY), PlaceholderStrategy(TODAY)],
    )


async def usage_count(db):
    return (await UsageMeter(db, "user-1", "starter", MONTH).check()).current_usage


# ── Strategies ────────────────────────────────────────────────────────────────

class Fixed(PdfStrategy):
    def __init__(self, result):
        self.result = result
        self.ran = False

    async def run(self, captured):
        self.ran = True
        return self.result


class TestRunStrategies:

    @pytest.mark.asyncio
    async def test_first_handled_wins(self):
        later = Fixed(StrategyResult(Outcome.HANDLED, source="b"))
        result = await run_strategies(
            [Fixed(StrategyResult.not_applicable()),
             Fixed(StrategyResult(Outcome.HANDLED, source="a")), later],
            pdf_capture(),
        )
        assert result.source == "a"
        assert later.ran is False

    @pytest.mark.asyncio
    async def test_failure_falls_through(self):
        result = await run_strategies(
            [Fixed(StrategyResult.failed("PasswordProtected", "nope")),
             Fixed(StrategyResult(Outcome.HANDLED, source="placeholder"))],
            pdf_capture(),
        )
        assert result.source == "placeholder"

    @pytest.mark.asyncio
    async def test_last_failure_reported(self):
        result = await run_strategies(
            [Fixed(StrategyResult.failed("A", "first")), Fixed(StrategyResult.failed("B", "second"))],
            pdf_capture(),
        )
        assert result.outcome is Outcome.FAILED
        assert result.error.kind == "B"

    @pytest.mark.asyncio
    async def test_rasterize_skips_vendor_files(self):
        result = await RasterizeStrategy().run(pdf_capture("yelp_ads_invoice.pdf"))
        assert result.outcome is Outcome.NOT_APPLICABLE


# ── Images ────────────────────────────────────────────────────────────────────

class TestImageScan:

    @pytest.mark.asyncio
    async def test_successful_extraction(self, db):
        scanner = make_scanner(db)
        result = await scanner.ingest(jpeg_capture())

        assert result.success is True
        assert result.source == "extraction"
        assert result.data.vendor == "Home Depot"
        assert result.preview.startswith("data:image/jpeg;base64,")
        assert result.usage.current_usage == 1
        assert await usage_count(db) == 1

    @pytest.mark.asyncio
    async def test_empty_capture_is_noop(self, db):
        scanner = make_scanner(db)
        result = await scanner.ingest(None)
        assert result.data.is_empty()
        assert await usage_count(db) == 0

    @pytest.mark.asyncio
    async def test_failed_extraction_still_counts(self, db):
        scanner = make_scanner(db, FakeExtractor(error=MalformedResponse("??")))
        result = await scanner.ingest(jpeg_capture())

        assert result.success is False
        assert result.error.kind == "MalformedResponse"
        assert result.data.vendor == "Unknown Vendor"
        assert result.data.total_amount == "0.00"
        assert await usage_count(db) == 1

    @pytest.mark.asyncio
    async def test_quota_exhausted_blocks_extraction(self, db):
        await set_usage(db, "user-1", MONTH, 100)
        extractor = FakeExtractor()
        scanner = make_scanner(db, extractor)

        with pytest.raises(QuotaExceeded):
            await scanner.ingest(jpeg_capture())
        assert extractor.calls == 0
        assert scanner.state.usage_limit_reached is True
        assert await usage_count(db) == 100

    @pytest.mark.asyncio
    async def test_last_scan_of_the_month(self, db):
        await set_usage(db, "user-1", MONTH, 99)
        scanner = make_scanner(db)
        result = await scanner.ingest(jpeg_capture())
        assert result.success is True
        assert result.usage.current_usage == 100
        assert result.usage.can_use_feature is False
        assert result.usage_limit_reached is True

        with pytest.raises(QuotaExceeded):
            await scanner.ingest(jpeg_capture())

    @pytest.mark.asyncio
    async def test_unlimited_plan(self, db):
        await set_usage(db, "user-1", MONTH, 10_000)
        result = await make_scanner(db, plan="pro").ingest(jpeg_capture())
        assert result.success is True
        assert result.usage.unlimited is True


# ── PDFs ──────────────────────────────────────────────────────────────────────

class TestPdfScan:

    @pytest.mark.asyncio
    async def test_plain_pdf_is_rasterized_and_extracted(self, db):
        extractor = FakeExtractor()
        result = await make_scanner(db, extractor).ingest(pdf_capture())
        assert result.source == "extraction"
        assert result.preview.startswith("data:image/jpeg;base64,")
        assert extractor.calls == 1
        assert await usage_count(db) == 1

    @pytest.mark.asyncio
    async def test_yelp_pdf_uses_heuristic_without_quota(self, db):
        extractor = FakeExtractor()
        result = await make_scanner(db, extractor).ingest(
            pdf_capture("yelp_ads_invoice_march_2024.pdf", "Amount due $45.00"),
        )
        assert result.success is True
        assert result.source == "vendor_heuristic"
        assert result.data.vendor == "Yelp for Business"
        assert result.data.total_amount == "45.00"
        assert result.data.date == "2024-03-01"
        assert result.preview.startswith("data:image/png;base64,")
        assert extractor.calls == 0
        assert await usage_count(db) == 0

    @pytest.mark.asyncio
    async def test_password_pdf_falls_back_to_placeholder(self, db):
        extractor = FakeExtractor()
        captured = pdf_capture("locked.pdf", encrypted=True)
        result = await make_scanner(db, extractor).ingest(captured)

        assert result.success is True
        assert result.source == "placeholder"
        assert result.data.vendor == ""
        assert result.data.total_amount == ""
        assert result.data.date == TODAY.isoformat()
        assert "File name: locked.pdf" in result.data.notes
        assert "File type: application/pdf" in result.data.notes
        assert extractor.calls == 0

    @pytest.mark.asyncio
    async def test_every_strategy_failing(self, db):
        scanner = make_scanner(db)
        scanner.strategies = [Fixed(StrategyResult.failed("CorruptedDocument", "The PDF file appears to be corrupted."))]
        result = await scanner.ingest(pdf_capture())
        assert result.success is False
        assert result.error.kind == "CorruptedDocument"
        assert result.error.message.startswith("Failed to process PDF: The PDF file appears to be corrupted.")


# ── Stale results ─────────────────────────────────────────────────────────────

class TestGenerations:

    @pytest.mark.asyncio
    async def test_reset_during_extraction_drops_result(self, db):
        gate = asyncio.Event()
        scanner = make_scanner(db, FakeExtractor(gate=gate))

        task = asyncio.create_task(scanner.ingest(jpeg_capture()))
        await asyncio.sleep(0.05)
        scanner.reset()
        gate.set()
        result = await task

        assert result.data.is_empty()
        assert result.source is None

    @pytest.mark.asyncio
    async def test_newer_capture_wins(self, db):
        slow_gate = asyncio.Event()
        slow = FakeExtractor(ReceiptDraft(vendor="Old Scan"), gate=slow_gate)
        scanner = make_scanner(db, slow)

        first = asyncio.create_task(scanner.ingest(jpeg_capture()))
        await asyncio.sleep(0.05)
        scanner.extractor = FakeExtractor(ReceiptDraft(vendor="New Scan"))
        await scanner.ingest(jpeg_capture())
        slow_gate.set()
        await first

        assert scanner.state.draft.vendor == "New Scan"


# ── Editing and saving ────────────────────────────────────────────────────────

class TestSave:

    @pytest.mark.asyncio
    async def test_update_fields(self, db):
        scanner = make_scanner(db)
        await scanner.ingest(jpeg_capture())
        scanner.update(total_amount="50.00", category="Equipment")
        assert scanner.state.draft.total_amount == "50.00"
        assert scanner.state.draft.vendor == "Home Depot"

    @pytest.mark.asyncio
    async def test_save_round_trip(self, db):
        scanner = make_scanner(db, on_save=receipt_saver(db, "user-1"))
        await scanner.ingest(jpeg_capture())
        scanner.update(items=[{"name": "Drill bits", "price": "12.99"}])
        expected = scanner.state.draft

        assert await scanner.save(notes="job #42") is True
        assert scanner.state.draft.is_empty()
        assert scanner.state.usage.current_usage == 1

        [saved] = await list_receipts(db, "user-1")
        assert saved.vendor == expected.vendor
        assert saved.date == expected.date
        assert saved.total_amount == expected.total_amount
        assert saved.items == expected.items
        assert saved.notes == "job #42"
        assert saved.status == "Pending"

    @pytest.mark.asyncio
    async def test_save_rejected_keeps_draft(self, db):
        async def refuse(draft):
            return False

        scanner = make_scanner(db, on_save=refuse)
        await scanner.ingest(jpeg_capture())
        assert await scanner.save() is False
        assert scanner.state.draft.vendor == "Home Depot"
        assert scanner.state.error.kind == "PersistenceFailed"

    @pytest.mark.asyncio
    async def test_save_exception_keeps_draft(self, db):
        async def explode(draft):
            raise RuntimeError("disk full")

        scanner = make_scanner(db, on_save=explode)
        await scanner.ingest(jpeg_capture())
        assert await scanner.save() is False
        assert scanner.state.draft.vendor == "Home Depot"
        assert scanner.state.error.message == "An error occurred while saving"

    @pytest.mark.asyncio
    async def test_discard(self, db):
        scanner = make_scanner(db)
        await scanner.ingest(jpeg_capture())
        scanner.discard()
        assert scanner.state.draft.is_empty()
        assert scanner.state.preview is None
