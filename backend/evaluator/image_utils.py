import io
import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, List, Union

from PIL import Image, ImageOps

from evaluator.core.config import MAX_PAGES
from evaluator.core.schemas import ImagePart

logger = logging.getLogger(__name__)

# Max image size for the API (~4MB after base64 encoding, ~3MB raw)
MAX_IMAGE_SIZE = 3 * 1024 * 1024
BASE64_OVERHEAD = 1.37
MAX_DIMENSION = 2048

START_QUALITY = 85
QUALITY_STEP = 10
MIN_QUALITY = 30

ImageSource = Union[bytes, str, Path, BinaryIO, Image.Image]


@dataclass
class CompressedImage:
    base64: str
    mime_type: str
    width: int
    height: int
    quality: int

    def to_image_part(self) -> ImagePart:
        return ImagePart(data=self.base64, mime_type=self.mime_type)


def _open(source: ImageSource) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, bytes):
        return Image.open(io.BytesIO(source))
    return Image.open(source)


def fit_within(width: int, height: int, max_dimension: int = MAX_DIMENSION) -> tuple:
    """Scales (width, height) down to fit max_dimension, keeping the aspect ratio."""
    if width <= max_dimension and height <= max_dimension:
        return width, height
    ratio = min(max_dimension / width, max_dimension / height)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def _encode_jpeg(img: Image.Image, quality: int) -> str:
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality, optimize=True)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def compress_image(source: ImageSource, max_bytes: int = MAX_IMAGE_SIZE) -> CompressedImage:
    """
    Downsamples and re-encodes a photo so it stays within the API limits.
    The longer side is capped at MAX_DIMENSION and JPEG quality is stepped
    down from 85 until the base64 payload fits or quality reaches 30.
    """
    img = _open(source)
    # Phone cameras store rotation in EXIF instead of rotating pixels.
    img = ImageOps.exif_transpose(img)
    if img.mode != "RGB":
        img = img.convert("RGB")

    width, height = fit_within(*img.size)
    if (width, height) != img.size:
        logger.info(f"Resizing image {img.size[0]}x{img.size[1]} -> {width}x{height}")
        img = img.resize((width, height), Image.Resampling.LANCZOS)

    budget = max_bytes * BASE64_OVERHEAD
    quality = START_QUALITY
    encoded = _encode_jpeg(img, quality)
    while len(encoded) > budget and quality > MIN_QUALITY:
        quality = max(quality - QUALITY_STEP, MIN_QUALITY)
        encoded = _encode_jpeg(img, quality)

    if len(encoded) > budget:
        logger.warning(f"Image still {len(encoded)} base64 bytes at quality {quality}")

    return CompressedImage(base64=encoded, mime_type="image/jpeg", width=width, height=height, quality=quality)


def compress_pages(sources: Iterable[ImageSource]) -> List[ImagePart]:
    """Compresses each photographed page independently, keeping their order."""
    sources = list(sources)
    if len(sources) > MAX_PAGES:
        raise ValueError(f"At most {MAX_PAGES} pages can be submitted for one answer (got {len(sources)}).")
    return [compress_image(source).to_image_part() for source in sources]
