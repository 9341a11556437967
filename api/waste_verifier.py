"""
Client for the generative-AI endpoint that checks uploaded waste photos.

The remote model is a black box: each call sends a prompt plus the image and
expects a small JSON document back. Model availability changes often, so a
list of model names is tried in order until one of them answers with
non-empty text.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_MODEL_NAMES: Tuple[str, ...] = (
  "gemini-2.0-flash",
  "gemini-2.5-flash",
  "gemini-2.5-pro",
  "gemini-2.0-flash-001",
  "gemini-2.0-flash-lite",
  "gemini-2.0-flash-exp",
  "gemini-2.0-flash-lite-preview-02-05",
)

# Minimum confidence for a collector's photo to count as a match.
COLLECTION_CONFIDENCE_THRESHOLD = 0.7

REPORT_PROMPT = """You are an expert in waste management and recycling. Analyze this image and provide:
1. The type of waste (e.g., plastic, paper, glass, metal, organic)
2. An estimate of the quantity or amount (in kg or liters)
3. Your confidence level in this assessment (as a percentage)

Respond in JSON format like this:
{
  "wasteType": "type of waste",
  "quantity": "estimated quantity with unit",
  "confidence": confidence level as a number between 0 and 1
}"""

COLLECTION_PROMPT = """You are an expert in waste management and recycling. Analyze this image and verify:
1. Does the waste type match or is it similar to: {waste_type}
2. Does the quantity roughly match the reported amount: {amount}
3. Your confidence level in this assessment (as a number between 0 and 1)

Respond in JSON format like this:
{{
  "wasteTypeMatch": true or false,
  "quantityMatch": true or false,
  "confidence": confidence level as a number between 0 and 1
}}"""

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
_QUANTITY_PATTERN = re.compile(r"(\d+(\.\d+)?)(.*)")


class VerificationError(RuntimeError):
  """Raised when the image could not be verified."""

  def __init__(self, message: str, errors: Optional[Sequence[str]] = None) -> None:
    super().__init__(message)
    self.errors: List[str] = list(errors or [])

  @property
  def quota_exceeded(self) -> bool:
    texts = [str(self)] + self.errors
    return any("429" in text or "quota" in text.lower() for text in texts)


def _normalise_confidence_value(value: float) -> float:
  """Return confidence in the 0-1 range even if expressed as a percentage."""
  if value > 1:
    return min(1.0, value / 100.0)
  if value < 0:
    return 0.0
  return value


def _parse_confidence(raw: Any) -> float:
  if isinstance(raw, str):
    raw = raw.strip().rstrip("%")
  try:
    return _normalise_confidence_value(float(raw))
  except (TypeError, ValueError):
    return 0.0


def _as_bool(value: Any) -> bool:
  if isinstance(value, str):
    return value.strip().lower() in ("true", "yes")
  return bool(value)


def _format_number(value: Decimal) -> str:
  return format(value.normalize(), "f")


def scale_down_quantity(quantity: str) -> str:
  """
  Reduce the magnitude of a model-estimated quantity.

  The model consistently overestimates amounts by roughly an order of
  magnitude. Multi-digit integers lose their last digit, larger decimals are
  divided by ten, and small values are halved to two decimals (never
  reaching zero). Any text after the number, usually the unit, is kept.
  """
  match = _QUANTITY_PATTERN.search(str(quantity))
  if not match:
    return quantity

  digits, unit = match.group(1), match.group(3) or ""
  number = Decimal(digits)
  if "." not in digits and len(digits) > 1:
    fixed = Decimal(digits[:-1])
  elif number >= 10:
    fixed = (number / 10).to_integral_value(rounding=ROUND_FLOOR)
  else:
    fixed = (number / 2).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if fixed <= 0:
      fixed = Decimal("0.1")
  return f"{_format_number(fixed)}{unit}"


def parse_model_json(text: str) -> Dict[str, Any]:
  """Decode a JSON reply, tolerating markdown code fences and list wrappers."""
  cleaned = _FENCE_PATTERN.sub("", text or "").strip()
  if not cleaned:
    raise VerificationError("Received empty response from AI model")
  try:
    parsed = json.loads(cleaned)
  except ValueError as exc:
    raise VerificationError(f"Error parsing JSON response: {exc}") from exc

  if isinstance(parsed, list):
    parsed = parsed[0] if parsed else None
  if not isinstance(parsed, dict):
    raise VerificationError("AI model response was not a JSON object")
  return parsed


def _extract_text(payload: Dict[str, Any]) -> str:
  """Join the text parts of the first candidate of a generateContent reply."""
  candidates = payload.get("candidates") or [{}]
  parts = (candidates[0].get("content") or {}).get("parts") or []
  return "".join(part.get("text", "") for part in parts if isinstance(part, dict)).strip()


class WasteVerifier:
  """Verify waste photos through the generateContent REST API."""

  def __init__(
    self,
    api_key: str,
    *,
    model_names: Sequence[str] = DEFAULT_MODEL_NAMES,
    api_base: str = DEFAULT_API_BASE,
    timeout: int = 30,
    correct_quantity: bool = True,
  ) -> None:
    self.api_key = (api_key or "").strip()
    self.model_names = [name for name in model_names if name] or list(DEFAULT_MODEL_NAMES)
    self.api_base = api_base.rstrip("/")
    self.timeout = timeout
    self.correct_quantity = correct_quantity

  def _generate(self, model_name: str, prompt: str, image_bytes: bytes, mime_type: str) -> str:
    url = f"{self.api_base}/models/{model_name}:generateContent"
    payload = {
      "contents": [
        {
          "parts": [
            {"text": prompt},
            {
              "inline_data": {
                "mime_type": mime_type,
                "data": base64.b64encode(image_bytes).decode("utf-8"),
              }
            },
          ]
        }
      ]
    }
    response = requests.post(url, params={"key": self.api_key}, json=payload, timeout=self.timeout)
    if not response.ok:
      error_body = response.text[:200] if response.text else response.reason
      raise VerificationError(f"{response.status_code}: {error_body}")
    try:
      return _extract_text(response.json())
    except (ValueError, AttributeError) as exc:
      raise VerificationError("Response was not valid JSON") from exc

  def generate_with_fallback(self, prompt: str, image_bytes: bytes, mime_type: str) -> Tuple[str, str]:
    """
    Try each configured model in order.

    Returns ``(model_name, text)`` for the first model that answers with
    non-empty text, or raises ``VerificationError`` carrying every model's
    failure.
    """
    if not self.api_key:
      raise VerificationError("API key not found")

    errors: List[str] = []
    for model_name in self.model_names:
      logger.info("Attempting verification with model: %s", model_name)
      try:
        text = self._generate(model_name, prompt, image_bytes, mime_type)
      except (VerificationError, requests.RequestException) as exc:
        logger.warning("Model %s failed: %s", model_name, exc)
        errors.append(f"[{model_name}]: {exc}")
        continue

      if text:
        return model_name, text
      logger.warning("Model %s returned empty text.", model_name)
      errors.append(f"[{model_name}]: Empty response")

    logger.error("All models failed: %s", errors)
    raise VerificationError(f"All models failed. Details: {'; '.join(errors)}", errors)

  def verify_report(self, image_bytes: bytes, mime_type: str) -> Dict[str, Any]:
    """Classify a reported photo into waste type, quantity and confidence."""
    model_name, text = self.generate_with_fallback(REPORT_PROMPT, image_bytes, mime_type)
    result = parse_model_json(text)

    waste_type = str(result.get("wasteType") or "").strip()
    quantity = str(result.get("quantity") or "").strip()
    confidence = _parse_confidence(result.get("confidence"))
    if quantity and self.correct_quantity:
      quantity = scale_down_quantity(quantity)

    if not (waste_type and quantity and confidence):
      logger.error("Invalid verification result: %s", result)
      raise VerificationError("Invalid verification result")

    return {
      "waste_type": waste_type,
      "quantity": quantity,
      "confidence": confidence,
      "model": model_name,
    }

  def verify_collection(self, image_bytes: bytes, mime_type: str, waste_type: str, amount: str) -> Dict[str, Any]:
    """Check a collector's photo against what was originally reported."""
    prompt = COLLECTION_PROMPT.format(waste_type=waste_type, amount=amount)
    model_name, text = self.generate_with_fallback(prompt, image_bytes, mime_type)
    result = parse_model_json(text)

    if "wasteTypeMatch" not in result or "quantityMatch" not in result:
      logger.error("Invalid collection verification result: %s", result)
      raise VerificationError("Invalid verification result")

    confidence = _parse_confidence(result.get("confidence"))
    waste_type_match = _as_bool(result.get("wasteTypeMatch"))
    quantity_match = _as_bool(result.get("quantityMatch"))
    return {
      "waste_type_match": waste_type_match,
      "quantity_match": quantity_match,
      "confidence": confidence,
      "model": model_name,
      "accepted": waste_type_match and quantity_match and confidence > COLLECTION_CONFIDENCE_THRESHOLD,
    }


__all__ = [
  "DEFAULT_MODEL_NAMES",
  "VerificationError",
  "WasteVerifier",
  "parse_model_json",
  "scale_down_quantity",
]
