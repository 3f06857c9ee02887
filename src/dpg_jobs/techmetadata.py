"""
Image tech metadata extraction.

Reads dimensions, color information and capture EXIF tags from an image
file with Pillow and returns an unsaved :class:`TechMetadata` record.
"""

from __future__ import annotations

import logging
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Optional

from PIL import Image, ImageCms, UnidentifiedImageError

from .errors import TechMetadataError
from .records import TechMetadata

logger = logging.getLogger(__name__)

# Base TIFF/EXIF tags
TAG_MAKE = 0x010F
TAG_MODEL = 0x0110
TAG_SOFTWARE = 0x0131
TAG_DATETIME = 0x0132
EXIF_IFD = 0x8769
# Tags inside the EXIF IFD
TAG_EXPOSURE_TIME = 0x829A
TAG_FNUMBER = 0x829D
TAG_ISO = 0x8827
TAG_EXIF_VERSION = 0x9000
TAG_DATETIME_ORIGINAL = 0x9003
TAG_EXPOSURE_BIAS = 0x9204
TAG_FOCAL_LENGTH = 0x920A

COLOR_SPACES = {
    "1": "Grayscale",
    "L": "Grayscale",
    "LA": "Grayscale",
    "I;16": "Grayscale",
    "I;16B": "Grayscale",
    "P": "Palette",
    "RGB": "RGB",
    "RGBA": "RGB",
    "CMYK": "CMYK",
    "YCbCr": "YCbCr",
    "LAB": "Lab",
}

BITS_PER_MODE = {"1": 1, "L": 8, "P": 8, "LA": 16, "I;16": 16, "I;16B": 16, "RGB": 24, "YCbCr": 24, "LAB": 24, "RGBA": 32, "CMYK": 32, "I": 32, "F": 32}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("ascii", errors="ignore").strip("\x00 ")
    return str(value).strip()


def _number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, tuple) and len(value) == 2:
        numerator, denominator = value
        return float(numerator) / float(denominator) if denominator else 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _capture_date(value: Any) -> Optional[datetime]:
    text = _text(value)
    if not text:
        return None
    try:
        return datetime.strptime(text, "%Y:%m:%d %H:%M:%S")
    except ValueError:
        logger.warning(f"Unparseable capture date {text!r}")
        return None


def _profile_description(icc_profile: Optional[bytes]) -> str:
    if not icc_profile:
        return ""
    try:
        profile = ImageCms.ImageCmsProfile(BytesIO(icc_profile))
        return ImageCms.getProfileDescription(profile).strip()
    except (ImageCms.PyCMSError, OSError) as exc:
        logger.warning(f"Unable to read embedded ICC profile: {exc}")
        return ""


def extract_tech_metadata(path: Path) -> TechMetadata:
    """
    Read tech metadata from an image file.

    Args:
        path: Image to inspect

    Returns:
        Unsaved TechMetadata; the caller sets ``master_file_id``

    Raises:
        TechMetadataError: If the file cannot be opened as an image
    """
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            exif_ifd = exif.get_ifd(EXIF_IFD)
            dpi = img.info.get("dpi") or (0, 0)
            md = TechMetadata(
                image_format=(img.format or "").upper(),
                width=img.width,
                height=img.height,
                resolution=int(round(_number(dpi[0]))),
                color_space=COLOR_SPACES.get(img.mode, img.mode),
                depth=BITS_PER_MODE.get(img.mode, 0),
                compression=_text(img.info.get("compression")),
                color_profile=_profile_description(img.info.get("icc_profile")),
                equipment=_text(exif.get(TAG_MAKE)),
                software=_text(exif.get(TAG_SOFTWARE)),
                model=_text(exif.get(TAG_MODEL)),
                exif_version=_text(exif_ifd.get(TAG_EXIF_VERSION)),
                capture_date=_capture_date(exif_ifd.get(TAG_DATETIME_ORIGINAL) or exif.get(TAG_DATETIME)),
                iso=int(_number(exif_ifd.get(TAG_ISO))),
                exposure_bias=_text(exif_ifd.get(TAG_EXPOSURE_BIAS)),
                exposure_time=_text(exif_ifd.get(TAG_EXPOSURE_TIME)),
                aperture=_text(exif_ifd.get(TAG_FNUMBER)),
                focal_length=_number(exif_ifd.get(TAG_FOCAL_LENGTH)),
            )
    except (UnidentifiedImageError, OSError) as exc:
        raise TechMetadataError(f"Unable to read tech metadata from {path}: {exc}") from exc
    logger.info(f"{path.name} tech metadata: {md.image_format} {md.width}x{md.height} {md.color_space}")
    return md
