"""
PDF Service — renders the first page of a PDF to a JPEG for the vision model,
and pulls embedded text for the vendor heuristics.  Both go through PyMuPDF.

Every rasterization failure is raised as one of four RasterizationError
subclasses so the caller can show a specific message and move on to the
next fallback.
"""
import io
import logging

from PIL import Image

logger = logging.getLogger("bizznex.pdf")

RENDER_SCALE = 2.0     # 2× nominal resolution, enough for small receipt print
JPEG_QUALITY = 95


class RasterizationError(Exception):
    kind = "ConversionFailed"
    message = ("Failed to convert PDF to image. Please try a different file "
               "or upload an image directly.")

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.message)
        self.detail = detail


class WorkerInitFailed(RasterizationError):
    kind = "WorkerInitFailed"
    message = ("PDF worker initialization failed. Please try again or use an "
               "image file instead.")


class PasswordProtected(RasterizationError):
    kind = "PasswordProtected"
    message = "Password-protected PDFs are not supported. Please try a different file."


class CorruptedDocument(RasterizationError):
    kind = "CorruptedDocument"
    message = "The PDF file appears to be corrupted. Please try a different file."


class ConversionFailed(RasterizationError):
    pass


def _engine():
    """Load PyMuPDF.  A broken install is reported as WorkerInitFailed."""
    try:
        import fitz
    except ImportError as e:
        raise WorkerInitFailed(f"PyMuPDF unavailable: {e}") from e
    return fitz


def open_pdf(pdf_bytes: bytes):
    """Open a PDF from memory, rejecting encrypted and unreadable documents."""
    fitz = _engine()
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except MemoryError as e:
        raise WorkerInitFailed(str(e)) from e
    except Exception as e:
        # FileDataError / EmptyFileError and friends: the bytes aren't a PDF
        msg = str(e)
        if "password" in msg.lower() or "encrypt" in msg.lower():
            raise PasswordProtected(msg) from e
        raise CorruptedDocument(msg) from e

    if doc.needs_pass:
        doc.close()
        raise PasswordProtected("Document requires a password")
    if doc.page_count == 0:
        doc.close()
        raise CorruptedDocument("Document has no pages")
    return doc


def pdf_to_image(pdf_bytes: bytes) -> bytes:
    """
    Render page 1 at RENDER_SCALE into an RGB raster and return it as JPEG.
    Raises a RasterizationError subclass on any failure.
    """
    fitz = _engine()
    doc = open_pdf(pdf_bytes)
    try:
        page = doc.load_page(0)
        matrix = fitz.Matrix(RENDER_SCALE, RENDER_SCALE)
        try:
            pix = page.get_pixmap(matrix=matrix, alpha=False)
        except MemoryError as e:
            raise WorkerInitFailed(f"Could not allocate render surface: {e}") from e
        logger.debug("Rendered page 1 at %.0fx → %d×%d", RENDER_SCALE, pix.width, pix.height)

        img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=JPEG_QUALITY)
        return buf.getvalue()
    except RasterizationError:
        raise
    except Exception as e:
        msg = str(e)
        lower = msg.lower()
        if "worker" in lower:
            raise WorkerInitFailed(msg) from e
        if "password" in lower:
            raise PasswordProtected(msg) from e
        if "corrupt" in lower or "broken" in lower:
            raise CorruptedDocument(msg) from e
        raise ConversionFailed(msg) from e
    finally:
        doc.close()


def extract_pdf_text(pdf_bytes: bytes, max_pages: int = 3) -> str:
    """Concatenate the embedded text of the first `max_pages` pages."""
    doc = open_pdf(pdf_bytes)
    try:
        chunks = []
        for i in range(min(doc.page_count, max_pages)):
            chunks.append(doc.load_page(i).get_text("text") or "")
        return " ".join(chunks)
    finally:
        doc.close()
