"""
Upload validation for the cropped photo.

Uses PIL to make sure the bytes really decode as one of the accepted image
formats, rather than trusting the filename or the declared content type.
"""

import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from .. import config
from .errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = {
    "JPEG": ("image/jpeg", ".jpg"),
    "PNG": ("image/png", ".png"),
    "GIF": ("image/gif", ".gif"),
    "WEBP": ("image/webp", ".webp"),
}

MIN_DIMENSION = 32  # px


@dataclass(frozen=True)
class ImageUpload:
    data: bytes
    mime_type: str
    extension: str
    width: int
    height: int


def validate_image(data: bytes, max_size: int = 0, max_pixels: int = 0) -> ImageUpload:
    """
    Raises:
        ValidationError: empty, too large (bytes or pixels), not an image,
                         unsupported format, or too small to restore.
    """
    max_size = max_size or config.MAX_FILE_SIZE
    max_pixels = max_pixels or config.MAX_IMAGE_PIXELS
    if not data:
        raise ValidationError("No file uploaded.")
    if len(data) > max_size:
        raise ValidationError(f"File too large ({len(data)} bytes, max {max_size}).")

    try:
        with Image.open(BytesIO(data)) as img:
            # Header only; a small file can still declare a huge canvas
            width, height = img.size
            if width * height > max_pixels:
                raise ValidationError(f"Image too large ({width}x{height}, max {max_pixels} pixels).")
            img.verify()
        # verify() leaves the image unusable; reopen for metadata
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
    except Image.DecompressionBombError as e:
        raise ValidationError(f"Image too large: {e}")
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(f"Uploaded file is not a valid image: {e}")

    if fmt not in ALLOWED_FORMATS:
        raise ValidationError(f"Only JPEG, PNG, GIF and WEBP images are allowed (got {fmt}).")
    if width < MIN_DIMENSION or height < MIN_DIMENSION:
        raise ValidationError(f"Image too small ({width}x{height}).")

    mime_type, ext = ALLOWED_FORMATS[fmt]
    logger.info(f"Accepted upload: {fmt} {width}x{height}, {len(data)} bytes")
    return ImageUpload(data=data, mime_type=mime_type, extension=ext, width=width, height=height)
