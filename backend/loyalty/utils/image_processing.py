"""Image preprocessing utilities.

Preprocessing receipt images improves OCR accuracy and keeps model
payloads small.  The functions in this module apply EXIF orientation,
convert to grayscale and resize so the longest edge fits within a
reasonable size.  Pillow is used as the imaging backend.
"""

from __future__ import annotations

import logging
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)


def preprocess_image(image_data: bytes, max_size: int = 1600) -> bytes:
    """Preprocess an image for receipt extraction.

    :param image_data: Raw image bytes
    :param max_size: Maximum size of the longest edge in pixels
    :returns: Processed image bytes in JPEG format, or the original bytes
        when they cannot be decoded as an image
    """
    try:
        with Image.open(BytesIO(image_data)) as img:
            # iPhone photos are stored sideways with an EXIF rotation tag
            img = ImageOps.exif_transpose(img)
            img = img.convert("L")
            width, height = img.size
            max_dim = max(width, height)
            if max_dim > max_size:
                scale = max_size / float(max_dim)
                img = img.resize((int(width * scale), int(height * scale)))
            buf = BytesIO()
            img.save(buf, format="JPEG", quality=90)
            return buf.getvalue()
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("[image] preprocessing skipped: %s", exc)
        return image_data
