"""
Capture — gets one still image into memory, either from a camera attached to
the scanning station or from a user upload (image or PDF).

The camera is held exclusively while a session is open, so it is only ever
touched through camera_session(), which releases the device on every exit
path: successful snapshot, caller cancel, or an exception mid-capture.
"""
import base64
import binascii
import io
import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import cv2
from fastapi import UploadFile
from PIL import Image, ImageOps
from pillow_heif import register_heif_opener

logger = logging.getLogger("bizznex.capture")

register_heif_opener()

CAMERA_INDEX = int(os.environ.get("CAMERA_INDEX", "0"))
PDF_MIME = "application/pdf"

DATA_URI_RE = re.compile(r'^data:(?P<mime>[\w.+\-]+/[\w.+\-]+)?(?:;[^,]*)?;base64,(?P<body>.*)$', re.S)


class CameraUnavailable(Exception):
    """No camera, or permission to use it was refused.  Callers fall back to upload."""
    kind = "CameraUnavailable"


class UnsupportedFileType(Exception):
    kind = "UnsupportedFileType"


@dataclass
class CapturedImage:
    data: bytes
    content_type: str
    filename: str = ""

    @property
    def is_pdf(self) -> bool:
        return self.content_type == PDF_MIME

    @property
    def size(self) -> int:
        return len(self.data)


# ── Camera ────────────────────────────────────────────────────────────────────

class CameraSession:
    """An open camera.  Obtain one through camera_session()."""

    def __init__(self, device: "cv2.VideoCapture"):
        self._device = device

    def snapshot(self) -> bytes:
        """Grab the current frame at the device's native resolution, as JPEG."""
        ok, frame = self._device.read()
        if not ok or frame is None:
            raise CameraUnavailable("Camera returned no frame")
        encoded, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, 92])
        if not encoded:
            raise CameraUnavailable("Could not encode camera frame")
        h, w = frame.shape[:2]
        logger.debug("Captured %d×%d frame", w, h)
        return buf.tobytes()


@contextmanager
def camera_session(index: Optional[int] = None) -> Iterator[CameraSession]:
    """
    Open the camera for the duration of the with-block.

        with camera_session() as cam:
            jpeg = cam.snapshot()

    Raises CameraUnavailable when the device can't be opened.
    """
    index = CAMERA_INDEX if index is None else index
    device = cv2.VideoCapture(index)
    try:
        if not device.isOpened():
            raise CameraUnavailable(
                "Could not access camera. Please make sure you have granted camera permissions."
            )
        yield CameraSession(device)
    finally:
        device.release()
        logger.debug("Camera %d released", index)


def camera_available(index: Optional[int] = None) -> bool:
    """Probe the camera and release it straight away."""
    try:
        with camera_session(index):
            return True
    except CameraUnavailable:
        return False


def capture_from_camera(index: Optional[int] = None) -> CapturedImage:
    with camera_session(index) as cam:
        data = cam.snapshot()
    return CapturedImage(data=data, content_type="image/jpeg", filename="camera.jpg")


# ── Uploads ───────────────────────────────────────────────────────────────────

def normalize_image(image_bytes: bytes) -> bytes:
    """
    Apply EXIF orientation (phone photos are often rotated in metadata) and
    re-encode as JPEG, so every downstream step sees upright RGB pixels.
    HEIC/HEIF is readable thanks to pillow-heif.
    """
    img = Image.open(io.BytesIO(image_bytes))
    img = ImageOps.exif_transpose(img)
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=92, optimize=True)
    return buf.getvalue()


def _sniff_content_type(data: bytes, declared: Optional[str], filename: str) -> str:
    if data[:4] == b'%PDF' or (declared or "").lower() == PDF_MIME:
        return PDF_MIME
    if declared and declared.lower().startswith("image/"):
        return declared.lower()
    if filename.lower().endswith(".pdf"):
        return PDF_MIME
    if filename.lower().endswith((".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif")):
        return "image/jpeg"
    raise UnsupportedFileType(f"Unsupported file type: {declared or 'unknown'}")


def build_capture(data: bytes, content_type: Optional[str], filename: str = "") -> Optional[CapturedImage]:
    """Wrap raw bytes as a capture.  Returns None when there is nothing to process."""
    if not data:
        return None
    mime = _sniff_content_type(data, content_type, filename)
    if mime != PDF_MIME:
        try:
            data = normalize_image(data)
            mime = "image/jpeg"
        except Exception as e:
            logger.warning("EXIF normalise failed for %r, using raw bytes: %s", filename, e)
    return CapturedImage(data=data, content_type=mime, filename=filename)


async def read_upload(file: Optional[UploadFile]) -> Optional[CapturedImage]:
    if file is None:
        return None
    data = await file.read()
    return build_capture(data, file.content_type, file.filename or "")


# ── Data URIs ─────────────────────────────────────────────────────────────────

def to_data_uri(data: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode()}"


def decode_data_uri(value: str) -> tuple[bytes, str]:
    """
    Split a data: URI into (bytes, mime).  A bare base64 string is accepted
    too and assumed to be JPEG.
    """
    m = DATA_URI_RE.match(value.strip())
    if m:
        body, mime = m.group("body"), m.group("mime") or "image/jpeg"
    else:
        body, mime = value.strip(), "image/jpeg"
    try:
        return base64.b64decode(body, validate=False), mime
    except (binascii.Error, ValueError) as e:
        raise UnsupportedFileType(f"Image data is not valid base64: {e}") from e
