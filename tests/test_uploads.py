from io import BytesIO

import pytest
from PIL import Image

from conftest import make_image
from retroimprover.pipeline.errors import ValidationError
from retroimprover.pipeline.uploads import validate_image


@pytest.mark.parametrize("fmt,mime,ext", [
    ("PNG", "image/png", ".png"),
    ("JPEG", "image/jpeg", ".jpg"),
    ("WEBP", "image/webp", ".webp"),
    ("GIF", "image/gif", ".gif"),
])
def test_accepted_formats(fmt, mime, ext):
    upload = validate_image(make_image(fmt, size=(80, 60)))

    assert (upload.mime_type, upload.extension) == (mime, ext)
    assert (upload.width, upload.height) == (80, 60)


def test_unsupported_format_is_rejected():
    with pytest.raises(ValidationError, match="BMP"):
        validate_image(make_image("BMP"))


@pytest.mark.parametrize("data", [b"", b"definitely not an image"])
def test_garbage_is_rejected(data):
    with pytest.raises(ValidationError):
        validate_image(data)


def test_size_limit():
    with pytest.raises(ValidationError, match="too large"):
        validate_image(make_image(), max_size=16)


def test_tiny_images_are_rejected():
    with pytest.raises(ValidationError, match="too small"):
        validate_image(make_image(size=(8, 8)))


def bilevel_png(size) -> bytes:
    buf = BytesIO()
    Image.new("1", size).save(buf, format="PNG")
    return buf.getvalue()


def test_pixel_limit():
    with pytest.raises(ValidationError, match="pixels"):
        validate_image(make_image(size=(200, 200)), max_pixels=10_000)


def test_decompression_bomb_is_rejected():
    # Compresses to a few dozen KB but declares a 225-megapixel canvas
    data = bilevel_png((15000, 15000))
    assert len(data) < 1024 * 1024

    with pytest.raises(ValidationError, match="too large"):
        validate_image(data)
    with pytest.raises(ValidationError, match="decompression bomb"):
        validate_image(data, max_pixels=10**9)
