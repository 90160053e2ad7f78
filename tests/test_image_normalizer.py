import io

import pytest
from PIL import Image

from autoservice.errors import CorruptImage
from autoservice.pipeline import image as image_mod
from autoservice.pipeline.image import ImageNormalizer, detect_rotation, landscape_correction, sniff_mime

from conftest import make_image


def _size(data: bytes):
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def test_landscape_photo_comes_out_portrait():
    normalizer = ImageNormalizer(detector=lambda img: None)
    out = normalizer.normalize(make_image(400, 200))
    width, height = _size(out)
    assert height >= width
    assert (width, height) == (200, 400)


def test_portrait_photo_is_not_rotated_and_never_consults_detector():
    calls = []
    normalizer = ImageNormalizer(detector=lambda img: calls.append(img) or 90)
    out = normalizer.normalize(make_image(200, 400))
    assert _size(out) == (200, 400)
    assert calls == []


def test_long_side_is_capped():
    out = ImageNormalizer(max_side=300, detector=lambda img: None).normalize(make_image(900, 1800, fmt="JPEG"))
    assert max(_size(out)) == 300


def test_output_is_a_known_image_format():
    out = ImageNormalizer(detector=lambda img: None).normalize(make_image())
    assert sniff_mime(out) in ("image/webp", "image/jpeg")


def test_landscape_accepts_only_quarter_turns():
    img = Image.new("L", (40, 20))
    assert landscape_correction(img, lambda _: 270) == 270
    assert landscape_correction(img, lambda _: 180) == 90
    assert landscape_correction(img, lambda _: 0) == 90
    assert landscape_correction(img, lambda _: None) == 90


def test_detect_rotation_uses_tesseract_osd(monkeypatch):
    monkeypatch.setattr(
        image_mod.pytesseract,
        "image_to_osd",
        lambda img, output_type=None: {"rotate": 270, "orientation_conf": 8.5},
    )
    assert detect_rotation(Image.new("L", (40, 20))) == 270


def test_detect_rotation_ignores_low_confidence(monkeypatch):
    monkeypatch.setattr(
        image_mod.pytesseract,
        "image_to_osd",
        lambda img, output_type=None: {"rotate": 90, "orientation_conf": 0.3},
    )
    assert detect_rotation(Image.new("L", (40, 20))) is None


def test_detect_rotation_survives_missing_tesseract(monkeypatch):
    def boom(img, output_type=None):
        raise image_mod.pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(image_mod.pytesseract, "image_to_osd", boom)
    assert detect_rotation(Image.new("L", (40, 20))) is None


def test_corrupt_bytes_raise_corrupt_image():
    with pytest.raises(CorruptImage):
        ImageNormalizer().normalize(b"definitely not an image")
