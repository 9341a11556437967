"""Shared fixtures: both storage backends, a stub verifier and an app client."""

from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from itertools import count

import jwt
import pytest
from moto import mock_aws
from PIL import Image

from api.dynamo_store import DynamoStore
from api.sqlite_store import SqliteStore
from app import create_app

JWT_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


@pytest.fixture
def clock(monkeypatch):
  """Make record timestamps strictly increasing, one second apart."""
  ticks = count()
  start = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

  def _now() -> str:
    return (start + timedelta(seconds=next(ticks))).isoformat()

  monkeypatch.setattr("api.store.utc_now_iso", _now)
  return _now


@pytest.fixture
def sqlite_store(tmp_path):
  return SqliteStore(tmp_path / "eco_rewards.db")


@pytest.fixture
def dynamo_store(monkeypatch):
  monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
  monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
  monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
  with mock_aws():
    store = DynamoStore("test_", region="us-east-1")
    store.create_tables()
    yield store


@pytest.fixture(params=["sqlite", "dynamo"])
def store(request):
  """Run a test once per persistence backend."""
  return request.getfixturevalue(f"{request.param}_store")


class StubVerifier:
  """Stands in for the remote model; results and errors are set per test."""

  def __init__(self) -> None:
    self.report_result = {"waste_type": "plastic", "quantity": "2 kg", "confidence": 0.9, "model": "stub"}
    self.collection_result = {
      "waste_type_match": True,
      "quantity_match": True,
      "confidence": 0.92,
      "model": "stub",
      "accepted": True,
    }
    self.error = None
    self.calls = []

  def verify_report(self, image_bytes, mime_type):
    self.calls.append(("report", mime_type))
    if self.error:
      raise self.error
    return dict(self.report_result)

  def verify_collection(self, image_bytes, mime_type, waste_type, amount):
    self.calls.append(("collection", mime_type, waste_type, amount))
    if self.error:
      raise self.error
    return dict(self.collection_result)


@pytest.fixture
def verifier():
  return StubVerifier()


@pytest.fixture
def app(tmp_path, sqlite_store, verifier):
  flask_app = create_app(
    {
      "TESTING": True,
      "STORAGE_BACKEND": "sqlite",
      "UPLOADS_DIR": str(tmp_path / "uploads"),
      "JWT_SECRET_KEY": JWT_SECRET,
      "JWT_ALGORITHM": "HS256",
      "COLLECTION_REWARD_POINTS": 15,
    },
    store=sqlite_store,
    verifier=verifier,
  )
  return flask_app


@pytest.fixture
def client(app):
  return app.test_client()


@pytest.fixture
def token_for():
  def _token(email: str, name: str = "Test User", expires_in: int = 3600) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": email, "email": email, "name": name, "iat": now, "exp": now + timedelta(seconds=expires_in)}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")

  return _token


@pytest.fixture
def auth_headers(token_for):
  return {"Authorization": f"Bearer {token_for('alice@example.com', 'Alice')}"}


@pytest.fixture
def collector_headers(token_for):
  return {"Authorization": f"Bearer {token_for('bob@example.com', 'Bob')}"}


def _image_bytes(image_format: str) -> bytes:
  buffer = io.BytesIO()
  Image.new("RGB", (12, 8), color=(40, 160, 60)).save(buffer, format=image_format)
  return buffer.getvalue()


@pytest.fixture
def png_bytes():
  return _image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
  return _image_bytes("JPEG")
