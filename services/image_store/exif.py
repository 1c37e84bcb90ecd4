"""Camera metadata extraction for post images."""

import io
import logging
from typing import Any, Dict, Mapping, Optional

from PIL import ExifTags, Image

logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='ignore')
    text = str(value).replace('\x00', '').strip()
    return text or None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    if number != number or number <= 0:
        return None
    return number


def format_shutter_speed(seconds: float) -> str:
    if seconds >= 1:
        return f"{seconds:g}s"
    return f"1/{round(1 / seconds)}s"


def exif_metadata_from_tags(
    base: Mapping[int, Any],
    details: Mapping[int, Any]
) -> Optional[Dict[str, Any]]:
    """
    Build caption metadata from raw EXIF tags.

    Args:
        base: Tags from IFD0 (make, model)
        details: Tags from the Exif sub-IFD (exposure, lens, dates)

    Returns:
        Dict keyed make, model, lensMake, lensModel, aperture, shutterSpeed,
        iso, focalLength, focalLengthIn35mm, dateTimeOriginal, holding only
        the fields present, or None when there are none
    """
    metadata: Dict[str, Any] = {}

    make = _text(base.get(ExifTags.Base.Make))
    if make:
        metadata["make"] = make
    model = _text(base.get(ExifTags.Base.Model))
    if model:
        metadata["model"] = model
    lens_make = _text(details.get(ExifTags.Base.LensMake))
    if lens_make:
        metadata["lensMake"] = lens_make
    lens_model = _text(details.get(ExifTags.Base.LensModel))
    if lens_model:
        metadata["lensModel"] = lens_model

    aperture = _number(details.get(ExifTags.Base.FNumber))
    if aperture:
        metadata["aperture"] = round(aperture, 1)

    exposure = _number(details.get(ExifTags.Base.ExposureTime))
    if exposure:
        metadata["shutterSpeed"] = format_shutter_speed(exposure)

    iso = _number(details.get(ExifTags.Base.ISOSpeedRatings))
    if iso:
        metadata["iso"] = int(iso)

    focal_length = _number(details.get(ExifTags.Base.FocalLength))
    if focal_length:
        metadata["focalLength"] = f"{focal_length:g}mm"

    focal_35 = _number(details.get(ExifTags.Base.FocalLengthIn35mmFilm))
    if focal_35:
        metadata["focalLengthIn35mm"] = int(focal_35)

    taken = _text(details.get(ExifTags.Base.DateTimeOriginal))
    if taken and len(taken) >= 19:
        # EXIF writes "YYYY:MM:DD HH:MM:SS"
        metadata["dateTimeOriginal"] = f"{taken[:10].replace(':', '-')}T{taken[11:19]}"

    return metadata or None


def extract_exif_metadata(data: bytes) -> Optional[Dict[str, Any]]:
    """Read camera metadata from image bytes; None when there is none or the format is unreadable."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            exif = img.getexif()
            details = exif.get_ifd(ExifTags.IFD.Exif)
            return exif_metadata_from_tags(dict(exif), dict(details))
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        logger.debug(f"No EXIF metadata readable: {e}")
        return None
