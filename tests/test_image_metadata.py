from __future__ import annotations

import io

import pytest
from PIL import Image

from api.image_metadata import DATETIME_TAG, ImageInspectionError, inspect_image, parse_gps


def test_inspect_png(png_bytes):
  assert inspect_image(png_bytes) == {"format": "PNG", "mime_type": "image/png", "width": 12, "height": 8}


def test_inspect_jpeg_with_capture_time():
  image = Image.new("RGB", (4, 4))
  exif = image.getexif()
  exif[DATETIME_TAG] = "2024:05:01 09:30:00"
  buffer = io.BytesIO()
  image.save(buffer, format="JPEG", exif=exif)

  result = inspect_image(buffer.getvalue())

  assert result["mime_type"] == "image/jpeg"
  assert result["captured_at"] == "2024:05:01 09:30:00"
  assert "gps" not in result


@pytest.mark.parametrize("payload", [b"", b"definitely not an image"])
def test_inspect_rejects_non_images(payload):
  with pytest.raises(ImageInspectionError):
    inspect_image(payload)


def test_parse_gps_applies_hemisphere_refs():
  gps = parse_gps({1: "N", 2: (52.0, 30.0, 0.0), 3: "W", 4: (13.0, 24.0, 36.0), 6: (1205, 10)})
  assert gps == {"latitude": 52.5, "longitude": -13.41, "altitude": 120.5}


def test_parse_gps_needs_both_coordinates():
  assert parse_gps({}) is None
  assert parse_gps({1: "N", 2: (52.0, 30.0, 0.0)}) is None
