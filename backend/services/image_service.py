"""
Image helpers — vision-model preparation and the synthetic preview cards shown
when a PDF could not be rendered.
"""
import io
import logging

from PIL import Image, ImageDraw, ImageFont, ImageOps

logger = logging.getLogger("bizznex.image")

MAX_VISION_DIM = 1568          # long-side limit for the vision model
PLACEHOLDER_SIZE = (500, 700)

BG = (248, 249, 250)
MUTED = (108, 117, 125)
DARK = (51, 51, 51)
ALERT = (220, 53, 69)
YELP_RED = (211, 35, 35)


def prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Resize + compress an image so it fits within vision-model limits.
    Returns (jpeg_bytes, "image/jpeg"); on any decoding problem the original
    bytes are returned unchanged so the provider can still try.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")

        w, h = img.size
        long_side = max(w, h)
        if long_side > MAX_VISION_DIM:
            scale = MAX_VISION_DIM / long_side
            img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

        # quality=92 keeps small receipt text legible
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=92, optimize=True)
        compressed = buf.getvalue()
        logger.debug("Image size: %d KB → %d KB", len(image_bytes) // 1024, len(compressed) // 1024)
        return compressed, "image/jpeg"
    except Exception as e:
        logger.warning("Image prep failed (%s), sending original", e)
        return image_bytes, "image/jpeg"


def _font(size: int):
    return ImageFont.load_default(size=size)


def _centered(draw: ImageDraw.ImageDraw, y: int, text: str, size: int, fill) -> None:
    font = _font(size)
    left, _, right, _ = draw.textbbox((0, 0), text, font=font)
    x = (PLACEHOLDER_SIZE[0] - (right - left)) // 2
    draw.text((max(x, 10), y), text, font=font, fill=fill)


def _to_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_vendor_placeholder(
    vendor_label: str,
    headline: str,
    filename: str,
    amount: str = "",
    size_kb: int = 0,
    accent=YELP_RED,
) -> bytes:
    """Preview card for a receipt handled by a vendor heuristic.  Returns PNG bytes."""
    img = Image.new("RGB", PLACEHOLDER_SIZE, BG)
    draw = ImageDraw.Draw(img)
    _centered(draw, 100, headline, 24, accent)
    _centered(draw, 150, f"File detected as {vendor_label} receipt", 16, DARK)
    draw.rectangle((100, 200, 400, 400), fill=(245, 245, 245), outline=accent, width=2)
    _centered(draw, 250, vendor_label, 16, DARK)
    _centered(draw, 280, "Monthly Advertisement", 14, MUTED)
    _centered(draw, 310, f"Filename: {filename}", 12, MUTED)
    if amount:
        _centered(draw, 340, f"Amount: ${amount}", 14, accent)
    else:
        _centered(draw, 340, f"Size: {size_kb} KB", 12, MUTED)
    return _to_png(img)


def render_unprocessed_placeholder(filename: str) -> bytes:
    """Preview card for a PDF nothing could read.  Returns PNG bytes."""
    img = Image.new("RGB", PLACEHOLDER_SIZE, BG)
    draw = ImageDraw.Draw(img)
    _centered(draw, 180, "PDF Preview Not Available", 24, ALERT)
    _centered(draw, 230, "Please enter receipt details manually", 16, MUTED)
    _centered(draw, 270, f"Filename: {filename}", 14, MUTED)
    return _to_png(img)
