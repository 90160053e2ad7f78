"""Document photo normalization before any provider call.

Phone photos of invoices arrive sideways, huge and in colour. Vision models
tile images at a fixed size and gain nothing from colour, so every image is
upright-corrected, capped at ``max_side`` and re-encoded as grayscale.
"""

from __future__ import annotations

import base64
import io
from typing import Callable, Dict, Optional

import pytesseract
from PIL import Image, ImageOps, UnidentifiedImageError, features

from ..errors import CorruptImage
from ..logging import get_logger

LOG = get_logger("image")

DEFAULT_MAX_SIDE = 1540
DEFAULT_QUALITY = 80
OSD_MIN_CONFIDENCE = 2.0

# Clockwise correction angle -> PIL transpose (PIL rotates counter-clockwise).
_CLOCKWISE = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


def detect_rotation(img: Image.Image) -> Optional[int]:
    """Clockwise angle that makes the text upright, via Tesseract OSD.

    Returns None when OSD fails or its confidence is too low to trust.
    """
    try:
        osd = pytesseract.image_to_osd(img, output_type=pytesseract.Output.DICT)
    except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, ValueError) as e:
        LOG.debug(f"Orientation detection failed: {e}")
        return None
    try:
        angle = int(osd.get("rotate", 0)) % 360
        confidence = float(osd.get("orientation_conf", 0.0))
    except (TypeError, ValueError):
        return None
    if confidence < OSD_MIN_CONFIDENCE:
        LOG.debug(f"Orientation confidence {confidence:.2f} too low (angle {angle})")
        return None
    return angle


def landscape_correction(img: Image.Image, detector: Callable[[Image.Image], Optional[int]] = detect_rotation) -> int:
    """Clockwise rotation to apply to a landscape document photo.

    Only a quarter turn can make a landscape frame upright, so a detected
    0 or 180 is treated as inconclusive and the 90 degree default applies.
    """
    angle = detector(img)
    if angle in (90, 270):
        return angle
    LOG.debug(f"Landscape image, detection={angle}; defaulting to 90 clockwise")
    return 90


def rotate_clockwise(img: Image.Image, angle: int) -> Image.Image:
    op = _CLOCKWISE.get(angle % 360)
    return img.transpose(op) if op is not None else img


def output_format() -> str:
    return "WEBP" if features.check("webp") else "JPEG"


class ImageNormalizer:
    """Decode, orient, downscale and re-encode document photos."""

    def __init__(
        self,
        max_side: int = DEFAULT_MAX_SIDE,
        quality: int = DEFAULT_QUALITY,
        detector: Callable[[Image.Image], Optional[int]] = detect_rotation,
    ) -> None:
        self.max_side = max_side
        self.quality = quality
        self.detector = detector

    def decode(self, raw: bytes) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(raw))
            img.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise CorruptImage(f"Image could not be decoded: {e}") from e
        return ImageOps.exif_transpose(img)

    def normalize(self, raw: bytes) -> bytes:
        img = self.decode(raw)
        width, height = img.size

        if width > height:
            angle = landscape_correction(img, self.detector)
            img = rotate_clockwise(img, angle)
            LOG.info(f"Rotated landscape image {width}x{height} by {angle} degrees clockwise")

        if max(img.size) > self.max_side:
            img.thumbnail((self.max_side, self.max_side), Image.Resampling.LANCZOS)

        img = img.convert("L")
        fmt = output_format()
        buf = io.BytesIO()
        img.save(buf, format=fmt, quality=self.quality)
        out = buf.getvalue()
        LOG.debug(f"Normalized image {width}x{height} -> {img.size[0]}x{img.size[1]} {fmt} ({len(raw)} -> {len(out)} bytes)")
        return out


_SIGNATURES: Dict[bytes, str] = {
    b"\xff\xd8\xff": "image/jpeg",
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"GIF8": "image/gif",
    b"%PDF": "application/pdf",
}


def sniff_mime(data: bytes) -> str:
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for magic, mime in _SIGNATURES.items():
        if data.startswith(magic):
            return mime
    return "application/octet-stream"


def is_pdf(data: bytes) -> bool:
    return data.startswith(b"%PDF")


def to_data_uri(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{sniff_mime(data)};base64,{encoded}"
