"""
Receipt Scanner — one capture-to-save flow.

    capture → (PDF: rasterize | vendor heuristic | placeholder) →
    quota check → quota increment → extraction → user edits → on_save

A ReceiptScanner owns a single draft.  Every new capture (and every reset)
bumps `generation`; an extraction that finishes after the draft has moved on
is dropped instead of overwriting newer state.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from models.schemas import ReceiptDraft, ScanError, ScanResult, UsageSnapshot
from services.capture_service import CapturedImage, to_data_uri
from services.extraction_service import ReceiptExtractor
from services.image_service import render_unprocessed_placeholder
from services.pdf_service import RasterizationError, pdf_to_image
from services.usage_service import QuotaExceeded, UsageMeter
from services.vendor_heuristics import apply_vendor_heuristics, match_profile

logger = logging.getLogger("bizznex.scanner")

SaveCallback = Callable[[ReceiptDraft], Awaitable[bool]]


# ── PDF strategies ────────────────────────────────────────────────────────────

class Outcome(Enum):
    HANDLED = "handled"
    NOT_APPLICABLE = "not_applicable"
    FAILED = "failed"


@dataclass
class StrategyResult:
    outcome: Outcome
    source: str = ""
    draft: Optional[ReceiptDraft] = None   # ready-made draft (no extraction needed)
    image: Optional[bytes] = None          # raster to send to extraction
    preview: Optional[str] = None
    error: Optional[ScanError] = None

    @classmethod
    def not_applicable(cls) -> "StrategyResult":
        return cls(Outcome.NOT_APPLICABLE)

    @classmethod
    def failed(cls, kind: str, message: str) -> "StrategyResult":
        return cls(Outcome.FAILED, error=ScanError(kind=kind, message=message))


class PdfStrategy:
    name = ""

    async def run(self, captured: CapturedImage) -> StrategyResult:
        raise NotImplementedError


class RasterizeStrategy(PdfStrategy):
    """Render page 1 for the vision model.  Skips files a vendor profile claims."""
    name = "extraction"

    async def run(self, captured: CapturedImage) -> StrategyResult:
        if match_profile(captured.filename, captured.is_pdf):
            return StrategyResult.not_applicable()
        try:
            image = await asyncio.to_thread(pdf_to_image, captured.data)
        except RasterizationError as e:
            logger.warning("Rasterizing %r failed: %s (%s)", captured.filename, e.kind, e.detail)
            return StrategyResult.failed(e.kind, e.message)
        return StrategyResult(
            Outcome.HANDLED, source=self.name, image=image,
            preview=to_data_uri(image, "image/jpeg"),
        )


class VendorHeuristicStrategy(PdfStrategy):
    name = "vendor_heuristic"

    def __init__(self, today: Optional[date] = None):
        self.today = today

    async def run(self, captured: CapturedImage) -> StrategyResult:
        try:
            result = await asyncio.to_thread(apply_vendor_heuristics, captured, self.today)
        except Exception as e:
            logger.exception("Vendor heuristic failed for %r", captured.filename)
            return StrategyResult.failed("ConversionFailed", str(e))
        if result is None:
            return StrategyResult.not_applicable()
        return StrategyResult(
            Outcome.HANDLED, source=self.name, draft=result.draft,
            preview=to_data_uri(result.preview_png, "image/png"),
        )


class PlaceholderStrategy(PdfStrategy):
    """Manual entry: surfaces the file as unprocessed and leaves every field to the user."""
    name = "placeholder"

    def __init__(self, today: Optional[date] = None):
        self.today = today

    async def run(self, captured: CapturedImage) -> StrategyResult:
        try:
            preview = render_unprocessed_placeholder(captured.filename)
        except Exception as e:
            logger.exception("Placeholder rendering failed for %r", captured.filename)
            return StrategyResult.failed("ConversionFailed", str(e))
        notes = (
            "This is a digital receipt that could not be automatically processed.\n"
            "Please enter the details manually below:\n\n"
            f"File name: {captured.filename}\n"
            f"File size: {round(captured.size / 1024)} KB\n"
            f"File type: {captured.content_type}"
        )
        draft = ReceiptDraft(
            vendor="",
            date=(self.today or date.today()).isoformat(),
            total_amount="",
            items=[],
            category="",
            notes=notes,
        )
        return StrategyResult(
            Outcome.HANDLED, source=self.name, draft=draft,
            preview=to_data_uri(preview, "image/png"),
        )


def default_pdf_strategies(today: Optional[date] = None) -> list[PdfStrategy]:
    return [RasterizeStrategy(), VendorHeuristicStrategy(today), PlaceholderStrategy(today)]


async def run_strategies(strategies: Sequence[PdfStrategy], captured: CapturedImage) -> StrategyResult:
    """
    Try each strategy in order and return the first HANDLED result.  If none
    handles the file, the last FAILED result is returned (or NOT_APPLICABLE
    when nothing failed).
    """
    last_failure: Optional[StrategyResult] = None
    for strategy in strategies:
        result = await strategy.run(captured)
        if result.outcome is Outcome.HANDLED:
            return result
        if result.outcome is Outcome.FAILED:
            last_failure = result
    return last_failure or StrategyResult.not_applicable()


# ── Scanner ───────────────────────────────────────────────────────────────────

@dataclass
class ScannerState:
    draft: ReceiptDraft = field(default_factory=ReceiptDraft)
    preview: Optional[str] = None
    source: Optional[str] = None
    error: Optional[ScanError] = None
    usage: Optional[UsageSnapshot] = None
    usage_limit_reached: bool = False


class ReceiptScanner:
    def __init__(
        self,
        extractor: ReceiptExtractor,
        meter: UsageMeter,
        on_save: Optional[SaveCallback] = None,
        strategies: Optional[Sequence[PdfStrategy]] = None,
    ):
        self.extractor = extractor
        self.meter = meter
        self.on_save = on_save
        self.strategies = list(strategies) if strategies is not None else default_pdf_strategies()
        self.state = ScannerState()
        self.generation = 0

    # ── quota ──
    async def check_usage(self) -> bool:
        usage = await self.meter.check()
        self.state.usage = usage
        self.state.usage_limit_reached = not usage.can_use_feature
        if self.state.usage_limit_reached:
            self.state.error = ScanError(kind=QuotaExceeded.kind, message=str(QuotaExceeded(usage)))
        return usage.can_use_feature

    # ── capture ──
    async def ingest(self, captured: Optional[CapturedImage]) -> ScanResult:
        """
        Run one capture through the pipeline.  An empty capture is a no-op.
        Raises QuotaExceeded when the month's quota is already used up.
        """
        if captured is None:
            return self.result()

        if not await self.check_usage():
            raise QuotaExceeded(self.state.usage)

        self.generation += 1
        token = self.generation
        self.state.error = None
        self.state.preview = None

        if not captured.is_pdf:
            self.state.preview = to_data_uri(captured.data, captured.content_type)
            await self._extract(captured.data, token)
            return self.result()

        logger.info("Processing PDF %r, %d bytes", captured.filename, captured.size)
        outcome = await run_strategies(self.strategies, captured)
        if token != self.generation:
            logger.info("Discarding stale PDF result for %r", captured.filename)
            return self.result()

        if outcome.outcome is not Outcome.HANDLED:
            reason = outcome.error.message if outcome.error else "Unknown error"
            self.state.error = ScanError(
                kind=outcome.error.kind if outcome.error else "ConversionFailed",
                message=(f"Failed to process PDF: {reason}. Please try a different "
                         "file or upload an image directly."),
            )
            return self.result()

        self.state.preview = outcome.preview
        self.state.source = outcome.source
        if outcome.draft is not None:
            self.state.draft = outcome.draft
        else:
            await self._extract(outcome.image, token)
        return self.result()

    async def _extract(self, image: bytes, token: int) -> None:
        # Counted before the provider call: a failed extraction still uses quota.
        if not await self.check_usage():
            raise QuotaExceeded(self.state.usage)
        try:
            self.state.usage = await self.meter.increment()
        except QuotaExceeded as e:
            self.state.usage = e.usage
            self.state.usage_limit_reached = True
            self.state.error = ScanError(kind=e.kind, message=str(e))
            raise
        self.state.usage_limit_reached = not self.state.usage.can_use_feature

        draft, error = await self.extractor.extract_or_default(image)
        if token != self.generation:
            logger.info("Discarding stale extraction result (generation %d, now %d)",
                        token, self.generation)
            return
        self.state.draft = draft
        self.state.source = "extraction"
        if error is not None:
            logger.warning("Extraction failed: %s", error.kind)
            self.state.error = ScanError(kind=error.kind, message=str(error))

    # ── editing / saving ──
    def update(self, **fields) -> ReceiptDraft:
        self.state.draft = ReceiptDraft.model_validate({**self.state.draft.model_dump(), **fields})
        return self.state.draft

    def reset(self) -> None:
        usage, limited = self.state.usage, self.state.usage_limit_reached
        self.generation += 1
        self.state = ScannerState(usage=usage, usage_limit_reached=limited)

    def discard(self) -> None:
        self.reset()

    async def save(self, notes: Optional[str] = None) -> bool:
        """
        Hand the draft to on_save.  The scanner resets on success; on failure the
        draft is kept so the user can retry without re-entering anything.
        """
        if self.on_save is None:
            return False
        to_save = self.state.draft
        if notes is not None:
            to_save = to_save.model_copy(update={"notes": notes})
        try:
            saved = await self.on_save(to_save)
        except Exception:
            logger.exception("Saving receipt failed")
            self.state.error = ScanError(kind="PersistenceFailed", message="An error occurred while saving")
            return False
        if not saved:
            self.state.error = ScanError(kind="PersistenceFailed", message="Failed to save receipt")
            return False
        self.reset()
        return True

    def result(self) -> ScanResult:
        s = self.state
        return ScanResult(
            success=s.error is None,
            data=s.draft,
            preview=s.preview,
            source=s.source,
            error=s.error,
            usage=s.usage,
            usage_limit_reached=s.usage_limit_reached,
        )
