"""
Flask backend for the Eco Rewards waste-reporting app.

Users photograph waste, have the photo checked by a generative-AI model,
report its location and earn points that can later be redeemed. Collectors
pick up reported waste, verify the pickup with a second photo and earn points
of their own. Images are kept in local storage (development) or Amazon S3,
and records in SQLite or DynamoDB depending on ``STORAGE_BACKEND``.
Authentication is handled by an external provider; this service only
verifies its bearer tokens.
"""

from __future__ import annotations

import io
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import boto3
import click
import jwt
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from dotenv import load_dotenv
from flask import Flask, abort, g, jsonify, request, send_from_directory
from flask_cors import CORS
from jwt import ExpiredSignatureError, InvalidTokenError
from werkzeug.exceptions import RequestEntityTooLarge

from api.dynamo_store import DynamoStore
from api.geocoding import DEFAULT_NOMINATIM_URL, DEFAULT_USER_AGENT, GeocodingError, reverse_geocode, search_locations
from api.image_metadata import ImageInspectionError, inspect_image
from api.sqlite_store import SqliteStore
from api.store import (
  REPORT_POINTS,
  REPORT_STATUSES,
  InsufficientPointsError,
  ReportNotFoundError,
  RewardNotFoundError,
  TaskAlreadyVerifiedError,
  WasteStore,
)
from api.waste_verifier import DEFAULT_API_BASE, DEFAULT_MODEL_NAMES, VerificationError, WasteVerifier

BASE_DIR = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")

# Failures raised by either persistence backend.
STORE_ERRORS = (sqlite3.DatabaseError, BotoCoreError, ClientError)

MAX_LIST_LIMIT = 100

# Statuses a collector may set by hand; "verified" only comes from a photo check.
MANUAL_STATUSES = tuple(status for status in REPORT_STATUSES if status != "verified")


def _safe_int(value: Optional[str], default: int) -> int:
  try:
    return int(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def _split_csv(value: Optional[str]) -> List[str]:
  return [item.strip() for item in (value or "").split(",") if item.strip()]


def _default_config() -> Dict[str, Any]:
  """Read the service configuration from the environment."""
  return {
    "STORAGE_BACKEND": os.environ.get("STORAGE_BACKEND", "sqlite").strip().lower(),
    "SQLITE_DB_PATH": os.environ.get("SQLITE_DB_PATH", str(BASE_DIR / "eco_rewards.db")),
    "UPLOADS_DIR": os.environ.get("UPLOADS_DIR", str(BASE_DIR / "uploads")),
    "AWS_REGION": os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
    "AWS_BUCKET_NAME": os.environ.get("AWS_BUCKET_NAME"),
    "AWS_S3_ACL": os.environ.get("AWS_S3_ACL", "public-read").strip(),
    "AWS_DYNAMODB_TABLE_PREFIX": os.environ.get("AWS_DYNAMODB_TABLE_PREFIX", "eco_rewards_"),
    "AWS_DYNAMODB_ENDPOINT_URL": os.environ.get("AWS_DYNAMODB_ENDPOINT_URL") or None,
    "JWT_SECRET_KEY": os.environ.get("JWT_SECRET_KEY", "change-me"),
    "JWT_ALGORITHM": os.environ.get("JWT_ALGORITHM", "HS256"),
    "GEMINI_API_KEY": os.environ.get("GEMINI_API_KEY", "").strip(),
    "GEMINI_API_BASE": os.environ.get("GEMINI_API_BASE", DEFAULT_API_BASE),
    "GEMINI_MODEL_NAMES": _split_csv(os.environ.get("GEMINI_MODEL_NAMES")) or list(DEFAULT_MODEL_NAMES),
    "GEMINI_TIMEOUT": _safe_int(os.environ.get("GEMINI_TIMEOUT"), 30),
    "NOMINATIM_URL": os.environ.get("NOMINATIM_URL", DEFAULT_NOMINATIM_URL),
    "NOMINATIM_USER_AGENT": os.environ.get("NOMINATIM_USER_AGENT", DEFAULT_USER_AGENT),
    "COLLECTION_REWARD_POINTS": _safe_int(os.environ.get("COLLECTION_REWARD_POINTS"), 10),
    "MAX_CONTENT_LENGTH": _safe_int(os.environ.get("MAX_UPLOAD_MB"), 10) * 1024 * 1024,
    "CORS_ORIGINS": _split_csv(os.environ.get("CORS_ORIGINS")) or "*",
  }


def _build_s3_client(region: Optional[str]):
  """Create an S3 client using environment credentials."""
  kwargs: Dict[str, Any] = {
    "service_name": "s3",
    "region_name": region,
  }
  if os.environ.get("AWS_ACCESS_KEY_ID") and os.environ.get("AWS_SECRET_ACCESS_KEY"):
    kwargs.update(
      aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
      aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
    )
  return boto3.client(**kwargs)


def _upload_to_s3(s3_client, bucket: str, file_stream: io.BytesIO, filename: str, content_type: str, acl: str) -> str:
  """Upload the bytes to S3 and return the public URL."""
  file_stream.seek(0)
  extra_args = {"ContentType": content_type}
  if acl:
    extra_args["ACL"] = acl
  s3_client.upload_fileobj(file_stream, bucket, filename, ExtraArgs=extra_args)
  return f"https://{bucket}.s3.amazonaws.com/{filename}"


def _save_to_local_storage(uploads_dir: Path, file_bytes: bytes, filename: str) -> Path:
  """Persist uploaded bytes to the local uploads directory."""
  uploads_dir.mkdir(parents=True, exist_ok=True)
  local_path = uploads_dir / filename
  with open(local_path, "wb") as destination:
    destination.write(file_bytes)
  return local_path


def _build_store(config: Dict[str, Any]) -> WasteStore:
  """Instantiate the persistence backend named by ``STORAGE_BACKEND``."""
  backend = config["STORAGE_BACKEND"]
  if backend == "aws":
    return DynamoStore(
      config["AWS_DYNAMODB_TABLE_PREFIX"],
      region=config.get("AWS_REGION"),
      endpoint_url=config.get("AWS_DYNAMODB_ENDPOINT_URL"),
    )
  if backend == "sqlite":
    return SqliteStore(config["SQLITE_DB_PATH"])
  raise RuntimeError(f"Unknown STORAGE_BACKEND: {backend}")


def _decode_jwt(token: str, secret: str, algorithm: str) -> Dict[str, Any]:
  """Decode a JWT issued by the auth provider and return its payload."""
  return jwt.decode(token, secret, algorithms=[algorithm], options={"require": ["exp"]})


def _text(payload: Any, *keys: str) -> str:
  """Return the first non-empty value among ``keys`` as stripped text."""
  for key in keys:
    value = payload.get(key)
    if value is not None and str(value).strip():
      return str(value).strip()
  return ""


def create_app(
  config_overrides: Optional[Dict[str, Any]] = None,
  *,
  store: Optional[WasteStore] = None,
  verifier: Optional[WasteVerifier] = None,
) -> Flask:
  """Instantiate the Flask application and register routes."""
  app = Flask(__name__)
  app.config.update(_default_config())
  if config_overrides:
    app.config.update(config_overrides)
  CORS(app, resources={r"/*": {"origins": app.config["CORS_ORIGINS"]}})

  use_aws = app.config["STORAGE_BACKEND"] == "aws"
  store = store if store is not None else _build_store(app.config)
  verifier = verifier if verifier is not None else WasteVerifier(
    app.config["GEMINI_API_KEY"],
    model_names=app.config["GEMINI_MODEL_NAMES"],
    api_base=app.config["GEMINI_API_BASE"],
    timeout=app.config["GEMINI_TIMEOUT"],
  )
  app.extensions["waste_store"] = store
  app.extensions["waste_verifier"] = verifier

  uploads_dir = Path(app.config["UPLOADS_DIR"]).resolve()
  s3_client = None
  s3_bucket = app.config.get("AWS_BUCKET_NAME")
  if use_aws:
    if not s3_bucket:
      raise RuntimeError("AWS_BUCKET_NAME must be set when STORAGE_BACKEND=aws.")
    s3_client = _build_s3_client(app.config.get("AWS_REGION"))

  app.logger.info("Using %s storage backend", store.backend_name)

  def _abort_json(message: str, status: int, details: Optional[str] = None) -> None:
    payload = {"error": message}
    if details:
      payload["details"] = details
    response = jsonify(payload)
    response.status_code = status
    abort(response)

  def _get_request_claims() -> Dict[str, Any]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
      _abort_json("Authorization header missing or invalid.", 401)

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
      _abort_json("Authorization header missing or invalid.", 401)

    try:
      return _decode_jwt(token, app.config["JWT_SECRET_KEY"], app.config["JWT_ALGORITHM"])
    except ExpiredSignatureError:
      _abort_json("Token has expired.", 401)
    except InvalidTokenError:
      _abort_json("Token is invalid.", 401)
    return {}

  def _current_user() -> Dict[str, Any]:
    """Return the caller's user record, creating it on first request."""
    if "current_user" in g:
      return g.current_user

    claims = _get_request_claims()
    email = (claims.get("email") or "").strip()
    if not email:
      _abort_json("Token payload is malformed.", 401)

    user = store.create_user(email, claims.get("name") or "Anonymous user")
    if user is None:
      _abort_json("User store unavailable.", 503)
    g.current_user = user
    return user

  def _limit_arg(default: int) -> int:
    limit = request.args.get("limit", default=default, type=int)
    return max(1, min(limit or default, MAX_LIST_LIMIT))

  def _read_upload() -> Tuple[bytes, Dict[str, Any]]:
    uploaded_file = request.files.get("image")
    if uploaded_file is None or uploaded_file.filename == "":
      _abort_json("No image provided", 400)

    binary_content = uploaded_file.read()
    try:
      image_info = inspect_image(binary_content)
    except ImageInspectionError as exc:
      _abort_json("Invalid image", 400, str(exc))
    return binary_content, image_info

  def _store_image(binary_content: bytes, image_info: Dict[str, Any]) -> str:
    extension = "." + image_info["format"].lower().replace("jpeg", "jpg")
    unique_name = f"{uuid.uuid4().hex}{extension}"

    if use_aws:
      try:
        return _upload_to_s3(
          s3_client,
          s3_bucket,
          io.BytesIO(binary_content),
          unique_name,
          image_info["mime_type"],
          app.config["AWS_S3_ACL"],
        )
      except (BotoCoreError, NoCredentialsError, ClientError) as exc:
        app.logger.exception("S3 upload failed: %s", exc)
        _abort_json("Cloud upload failed", 502, str(exc))

    local_path = _save_to_local_storage(uploads_dir, binary_content, unique_name)
    return f"{request.host_url}uploads/{local_path.name}"

  def _location_hint(image_info: Dict[str, Any]) -> Optional[str]:
    gps = image_info.get("gps")
    if not gps:
      return None
    try:
      return reverse_geocode(
        gps["latitude"],
        gps["longitude"],
        base_url=app.config["NOMINATIM_URL"],
        user_agent=app.config["NOMINATIM_USER_AGENT"],
      )
    except GeocodingError as exc:
      app.logger.info("Location hint unavailable: %s", exc)
      return None

  def _verification_failure(exc: VerificationError) -> Tuple[Dict[str, Any], int]:
    app.logger.warning("Verification failed: %s", exc)
    if exc.quota_exceeded:
      return {"error": "Usage limit exceeded. Please try again later.", "details": str(exc)}, 429
    return {"error": "Verification failed.", "details": str(exc)}, 502

  @app.errorhandler(404)
  def not_found(_exc):
    return jsonify({"error": "Endpoint not found"}), 404

  @app.errorhandler(RequestEntityTooLarge)
  def too_large(_exc):
    limit_mb = app.config["MAX_CONTENT_LENGTH"] // (1024 * 1024)
    return jsonify({"error": f"Image exceeds the {limit_mb}MB upload limit."}), 413

  @app.route("/health", methods=["GET"])
  def health() -> Tuple[Dict[str, str], int]:
    """Simple health-check endpoint."""
    return {
      "status": "ok",
      "storage_backend": store.backend_name,
      "timestamp": datetime.now(timezone.utc).isoformat(),
    }, 200

  @app.route("/auth/sync", methods=["POST"])
  def sync_user() -> Tuple[Dict[str, Any], int]:
    """Ensure the authenticated principal has a user record."""
    return {"user": _current_user()}, 200

  @app.route("/me", methods=["GET"])
  def me() -> Tuple[Dict[str, Any], int]:
    """User, balance and unread notifications in one call."""
    user = _current_user()
    return {
      "user": user,
      "balance": store.get_user_balance(user["id"]),
      "notifications": store.get_unread_notifications(user["id"]) or [],
    }, 200

  @app.route("/balance", methods=["GET"])
  def balance() -> Tuple[Dict[str, int], int]:
    user = _current_user()
    return {"balance": store.get_user_balance(user["id"])}, 200

  @app.route("/notifications", methods=["GET"])
  def notifications() -> Tuple[Dict[str, Any], int]:
    user = _current_user()
    return {"items": store.get_unread_notifications(user["id"]) or []}, 200

  @app.route("/notifications/<notification_id>/read", methods=["POST"])
  def read_notification(notification_id: str) -> Tuple[Dict[str, Any], int]:
    _current_user()
    if not store.mark_notification_as_read(notification_id):
      return {"error": "Notification not found."}, 404
    return {"id": notification_id, "is_read": True}, 200

  @app.route("/reports/verify", methods=["POST"])
  def verify_report() -> Tuple[Dict[str, Any], int]:
    """Classify an uploaded photo before the report is submitted."""
    _current_user()
    binary_content, image_info = _read_upload()

    try:
      verification = verifier.verify_report(binary_content, image_info["mime_type"])
    except VerificationError as exc:
      return _verification_failure(exc)

    payload: Dict[str, Any] = {"verification": verification, "image": image_info}
    location_hint = _location_hint(image_info)
    if location_hint:
      payload["location_hint"] = location_hint
    return payload, 200

  @app.route("/reports", methods=["POST"])
  def create_report() -> Tuple[Dict[str, Any], int]:
    """Store a verified report and award the reporter's points."""
    user = _current_user()
    payload = request.form if request.form else (request.get_json(silent=True) or {})

    location = _text(payload, "location")
    waste_type = _text(payload, "waste_type", "type")
    amount = _text(payload, "amount")
    if not (location and waste_type and amount):
      return {"error": "Location, waste type and amount are required."}, 400

    image_url = None
    uploaded_file = request.files.get("image")
    if uploaded_file is not None and uploaded_file.filename:
      binary_content, image_info = _read_upload()
      image_url = _store_image(binary_content, image_info)

    report = store.create_report(
      user["id"],
      location,
      waste_type,
      amount,
      image_url=image_url,
      verification_result=payload.get("verification_result"),
    )
    if report is None:
      return {"error": "Failed to submit report. Please try again."}, 500

    return {"report": report, "points_earned": REPORT_POINTS}, 201

  @app.route("/reports", methods=["GET"])
  def recent_reports() -> Tuple[Dict[str, Any], int]:
    _current_user()
    return {"items": store.get_recent_reports(_limit_arg(10))}, 200

  @app.route("/collect/tasks", methods=["GET"])
  def collection_tasks() -> Tuple[Dict[str, Any], int]:
    _current_user()
    return {"items": store.get_waste_collection_tasks(_limit_arg(20))}, 200

  def _task_for_collector(report_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """Load a task the caller may act on, answering 404, 409 or 403 otherwise."""
    report = store.get_report(report_id)
    if report is None:
      _abort_json("Task not found.", 404)
    if report.get("status") == "verified":
      _abort_json("Task has already been verified.", 409)
    if report.get("collector_id") and report["collector_id"] != user["id"]:
      _abort_json("Task is assigned to another collector.", 403)
    return report

  @app.route("/collect/tasks/<report_id>/status", methods=["POST"])
  def update_task_status(report_id: str) -> Tuple[Dict[str, Any], int]:
    """Move a task through its lifecycle; the caller becomes its collector."""
    user = _current_user()
    payload = request.get_json(silent=True) or {}
    status = _text(payload, "status")
    if status not in MANUAL_STATUSES:
      return {"error": f"Status must be one of: {', '.join(MANUAL_STATUSES)}."}, 400

    _task_for_collector(report_id, user)
    collector_id = None if status == "pending" else user["id"]
    try:
      report = store.update_task_status(report_id, status, collector_id)
    except ReportNotFoundError:
      return {"error": "Task not found."}, 404
    except STORE_ERRORS as exc:
      return {"error": "Failed to update task status.", "details": str(exc)}, 500
    return {"report": report}, 200

  @app.route("/collect/tasks/<report_id>/verify", methods=["POST"])
  def verify_collection(report_id: str) -> Tuple[Dict[str, Any], int]:
    """Check a pickup photo against the report and reward the collector."""
    user = _current_user()
    report = _task_for_collector(report_id, user)

    binary_content, image_info = _read_upload()
    try:
      verification = verifier.verify_collection(
        binary_content, image_info["mime_type"], report["waste_type"], report["amount"]
      )
    except VerificationError as exc:
      return _verification_failure(exc)

    if not verification["accepted"]:
      return {"verified": False, "verification": verification}, 200

    points = app.config["COLLECTION_REWARD_POINTS"]
    try:
      recorded = store.record_collection(report_id, user["id"], verification, points)
    except ReportNotFoundError:
      return {"error": "Task not found."}, 404
    except TaskAlreadyVerifiedError:
      return {"error": "Task has already been verified."}, 409
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to record collection for %s: %s", report_id, exc)
      return {"error": "Failed to save collection.", "details": str(exc)}, 500

    return {
      "verified": True,
      "verification": verification,
      "collected_waste": recorded["collected_waste"],
      "report": recorded["report"],
      "reward": recorded["reward"],
      "points_earned": points,
    }, 200

  @app.route("/rewards", methods=["GET"])
  def available_rewards() -> Tuple[Dict[str, Any], int]:
    user = _current_user()
    return {"items": store.get_available_rewards(user["id"])}, 200

  @app.route("/rewards/<reward_id>/redeem", methods=["POST"])
  def redeem_reward(reward_id: str) -> Tuple[Dict[str, Any], int]:
    user = _current_user()
    try:
      reward = store.redeem_reward(user["id"], reward_id)
    except InsufficientPointsError as exc:
      return {"error": str(exc)}, 400
    except RewardNotFoundError as exc:
      return {"error": str(exc)}, 404
    except STORE_ERRORS as exc:
      return {"error": "Failed to redeem reward.", "details": str(exc)}, 500
    return {"reward": reward, "balance": store.get_user_balance(user["id"])}, 200

  @app.route("/rewards/transactions", methods=["GET"])
  def reward_transactions() -> Tuple[Dict[str, Any], int]:
    user = _current_user()
    return {"items": store.get_reward_transactions(user["id"])}, 200

  @app.route("/leaderboard", methods=["GET"])
  def leaderboard() -> Tuple[Dict[str, Any], int]:
    _current_user()
    return {"items": store.get_all_rewards()}, 200

  @app.route("/locations/search", methods=["GET"])
  def location_search() -> Tuple[Dict[str, Any], int]:
    """Autocomplete suggestions for the report location field."""
    try:
      items = search_locations(
        request.args.get("q", ""),
        base_url=app.config["NOMINATIM_URL"],
        user_agent=app.config["NOMINATIM_USER_AGENT"],
      )
    except GeocodingError as exc:
      app.logger.warning("Location search failed: %s", exc)
      return {"error": "Failed to fetch location suggestions", "details": str(exc)}, 502
    return {"items": items}, 200

  if not use_aws:
    @app.route("/uploads/<path:filename>", methods=["GET"])
    def serve_upload(filename: str):
      """Serve locally stored uploads during development."""
      return send_from_directory(uploads_dir, filename)

  @app.cli.command("add-reward")
  @click.argument("name")
  @click.argument("cost", type=int)
  @click.option("--description", default=None, help="Shown on the rewards page.")
  @click.option("--collection-info", default="", help="How the reward is handed out.")
  def add_reward_command(name: str, cost: int, description: Optional[str], collection_info: str) -> None:
    """Add a redeemable reward to the catalogue."""
    reward = store.create_catalog_reward(name, cost, description, collection_info)
    click.echo(f"Created reward {reward['id']}: {name} ({cost} points)")

  @app.cli.command("create-tables")
  def create_tables_command() -> None:
    """Create the DynamoDB tables for STORAGE_BACKEND=aws."""
    if not isinstance(store, DynamoStore):
      click.echo("Tables are only created for the DynamoDB backend; SQLite creates its schema on start.")
      return
    store.create_tables()
    click.echo("DynamoDB tables ready: " + ", ".join(store.table_names.values()))

  return app


if __name__ == "__main__":
  logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
  flask_app = create_app()
  flask_app.run(
    host="0.0.0.0",
    port=_safe_int(os.environ.get("PORT"), 5000),
    debug=os.environ.get("FLASK_DEBUG", "").lower() in ("1", "true"),
  )
