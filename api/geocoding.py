"""
Location autocomplete backed by the public Nominatim geocoding API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from geopy.exc import GeocoderRateLimited, GeopyError
from geopy.geocoders import Nominatim

logger = logging.getLogger(__name__)

DEFAULT_NOMINATIM_URL = "https://nominatim.openstreetmap.org"
DEFAULT_USER_AGENT = "eco-rewards-backend/0.1"
MIN_QUERY_LENGTH = 3
DEFAULT_LIMIT = 5


class GeocodingError(RuntimeError):
  """Raised when the geocoding service cannot be reached or answers garbage."""


def _geolocator(base_url: str, user_agent: str, timeout: int) -> Nominatim:
  parsed = urlparse(base_url)
  domain = (parsed.netloc + parsed.path).rstrip("/") if parsed.netloc else base_url.rstrip("/")
  return Nominatim(user_agent=user_agent, domain=domain, scheme=parsed.scheme or "https", timeout=timeout)


def _to_float(value: Any) -> Optional[float]:
  try:
    return float(value)
  except (TypeError, ValueError):
    return None


def search_locations(
  query: str,
  *,
  base_url: str = DEFAULT_NOMINATIM_URL,
  limit: int = DEFAULT_LIMIT,
  user_agent: str = DEFAULT_USER_AGENT,
  timeout: int = 10,
) -> List[Dict[str, Any]]:
  """
  Return up to ``limit`` place suggestions for a free-text query.

  Short queries return nothing without hitting the network. Rate limiting is
  logged and treated as "no suggestions".
  """
  cleaned = (query or "").strip()
  if len(cleaned) < MIN_QUERY_LENGTH:
    return []

  try:
    locations = _geolocator(base_url, user_agent, timeout).geocode(cleaned, exactly_one=False, limit=limit)
  except GeocoderRateLimited as exc:
    logger.warning("Location search rate limited for %r: %s", cleaned, exc)
    return []
  except GeopyError as exc:
    raise GeocodingError(f"Location search failed: {exc}") from exc

  results = []
  for location in locations or []:
    raw = location.raw or {}
    display_name = raw.get("display_name") or location.address
    if not display_name:
      continue
    results.append(
      {
        "place_id": raw.get("place_id"),
        "display_name": display_name,
        "lat": _to_float(raw.get("lat", location.latitude)),
        "lon": _to_float(raw.get("lon", location.longitude)),
      }
    )
  return results


def reverse_geocode(
  latitude: float,
  longitude: float,
  *,
  base_url: str = DEFAULT_NOMINATIM_URL,
  user_agent: str = DEFAULT_USER_AGENT,
  timeout: int = 10,
) -> Optional[str]:
  """Return a display name for coordinates, or ``None`` when unknown."""
  try:
    location = _geolocator(base_url, user_agent, timeout).reverse((latitude, longitude), exactly_one=True)
  except GeocoderRateLimited as exc:
    logger.warning("Reverse geocoding rate limited for %s,%s: %s", latitude, longitude, exc)
    return None
  except GeopyError as exc:
    raise GeocodingError(f"Reverse geocoding failed: {exc}") from exc

  if location is None:
    return None
  return location.address or None


__all__ = ["GeocodingError", "MIN_QUERY_LENGTH", "reverse_geocode", "search_locations"]
