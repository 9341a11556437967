"""
Helpers for inspecting uploaded waste photos.

Uploads are sniffed with Pillow rather than trusting the client's content
type, since the MIME type is forwarded to the verification model. EXIF GPS
coordinates and the capture time are extracted when present so a report's
location can be suggested from the photo itself.
"""

from __future__ import annotations

import io
import logging
import math
import numbers
from fractions import Fraction
from typing import Any, Dict, Optional

from PIL import ExifTags, Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# Pointers to the Exif and GPS sub-IFDs.
EXIF_IFD_TAG = 0x8769
GPS_IFD_TAG = 0x8825

DATETIME_TAG = 0x0132
DATETIME_ORIGINAL_TAG = 0x9003

SUPPORTED_FORMATS = {"JPEG", "PNG", "GIF", "WEBP", "HEIF", "MPO", "BMP"}


class ImageInspectionError(ValueError):
  """Raised when an upload is not a readable image."""


def _ratio_to_float(value: Any) -> Optional[float]:
  """
  Convert EXIF rationals to floats.

  Pillow exposes rationals as ``IFDRational`` (a ``numbers.Rational``), older
  files may yield ``(numerator, denominator)`` tuples, and GPS coordinates
  arrive as a triple of degrees, minutes and seconds.
  """
  if isinstance(value, Fraction):
    try:
      return float(value)
    except (TypeError, ZeroDivisionError):
      return None

  if isinstance(value, tuple):
    if len(value) == 2 and not isinstance(value[0], tuple):
      if not value[1]:
        return None
      try:
        return float(value[0]) / float(value[1])
      except (TypeError, ValueError, ZeroDivisionError):
        return None

    if len(value) == 3:
      parts = [_ratio_to_float(part) for part in value]
      if all(part is not None for part in parts):
        degrees, minutes, seconds = parts  # type: ignore[misc]
        return degrees + (minutes / 60.0) + (seconds / 3600.0)
    return None

  if isinstance(value, numbers.Real):
    try:
      result = float(value)
    except (TypeError, ZeroDivisionError):
      return None
    return None if math.isnan(result) else result

  return None


def parse_gps(gps_raw: Dict[Any, Any]) -> Optional[Dict[str, float]]:
  """Return latitude/longitude/altitude from a GPS IFD keyed by tag id."""
  if not gps_raw:
    return None

  gps = {ExifTags.GPSTAGS.get(key, str(key)): value for key, value in gps_raw.items()}

  latitude = None
  longitude = None

  lat_values = gps.get("GPSLatitude")
  lat_ref = gps.get("GPSLatitudeRef")
  if lat_values and lat_ref:
    lat_deg = _ratio_to_float(lat_values)
    if lat_deg is not None:
      latitude = lat_deg if str(lat_ref).upper() == "N" else -lat_deg

  lon_values = gps.get("GPSLongitude")
  lon_ref = gps.get("GPSLongitudeRef")
  if lon_values and lon_ref:
    lon_deg = _ratio_to_float(lon_values)
    if lon_deg is not None:
      longitude = lon_deg if str(lon_ref).upper() == "E" else -lon_deg

  if latitude is None or longitude is None:
    return None

  result = {
    "latitude": round(latitude, 6),
    "longitude": round(longitude, 6),
  }
  altitude = _ratio_to_float(gps.get("GPSAltitude"))
  if altitude is not None:
    result["altitude"] = round(altitude, 2)
  return result


def _read_exif(image: Image.Image) -> Dict[str, Any]:
  found: Dict[str, Any] = {}
  try:
    exif = image.getexif()
  except Exception as exc:  # pragma: no cover
    logger.debug("Failed to read EXIF block: %s", exc)
    return found
  if not exif:
    return found

  captured_at = exif.get_ifd(EXIF_IFD_TAG).get(DATETIME_ORIGINAL_TAG) or exif.get(DATETIME_TAG)
  if captured_at:
    found["captured_at"] = str(captured_at)

  gps = parse_gps(exif.get_ifd(GPS_IFD_TAG))
  if gps:
    found["gps"] = gps
  return found


def inspect_image(image_bytes: bytes) -> Dict[str, Any]:
  """
  Identify an uploaded image and pull out location hints.

  Returns ``mime_type``, ``format``, ``width`` and ``height``, plus
  ``captured_at`` and ``gps`` when the EXIF block carries them.
  """
  if not image_bytes:
    raise ImageInspectionError("Empty file received")

  try:
    with Image.open(io.BytesIO(image_bytes)) as image:
      image_format = (image.format or "").upper()
      if image_format not in SUPPORTED_FORMATS:
        raise ImageInspectionError(f"Unsupported image format: {image_format or 'unknown'}")
      result: Dict[str, Any] = {
        "format": image_format,
        "mime_type": Image.MIME.get(image_format, "application/octet-stream"),
        "width": image.width,
        "height": image.height,
      }
      result.update(_read_exif(image))
  except UnidentifiedImageError as exc:
    raise ImageInspectionError("Uploaded file is not an image") from exc
  return result


__all__ = ["ImageInspectionError", "inspect_image", "parse_gps"]
