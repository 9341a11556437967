"""
SQLite implementation of the waste/reward store.

One short-lived connection is opened per operation. Writes that touch several
tables run inside a single ``with conn:`` block so they commit or roll back
together.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from api.store import (
  InsufficientPointsError,
  ReportNotFoundError,
  TaskAlreadyVerifiedError,
  WasteStore,
  utc_now_iso,
)

# Columns holding JSON documents.
_JSON_COLUMNS = ("verification_result",)
# Columns stored as 0/1 integers.
_BOOL_COLUMNS = ("is_available", "is_read")

_SCHEMA = (
  """
  CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS reports (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    location TEXT NOT NULL,
    waste_type TEXT NOT NULL,
    amount TEXT NOT NULL,
    image_url TEXT,
    verification_result TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    collector_id TEXT
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS rewards (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    points INTEGER NOT NULL DEFAULT 0,
    cost INTEGER,
    is_available INTEGER NOT NULL DEFAULT 1,
    name TEXT NOT NULL,
    description TEXT,
    collection_info TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS collected_waste (
    id TEXT PRIMARY KEY,
    report_id TEXT NOT NULL,
    collector_id TEXT NOT NULL,
    collection_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'collected',
    verification_result TEXT
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    message TEXT NOT NULL,
    type TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    description TEXT NOT NULL,
    date TEXT NOT NULL
  )
  """,
  "CREATE UNIQUE INDEX IF NOT EXISTS idx_rewards_user ON rewards (user_id) WHERE user_id IS NOT NULL",
  "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions (user_id, date)",
  "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, is_read)",
  "CREATE INDEX IF NOT EXISTS idx_reports_created ON reports (created_at)",
)

# SQLite's default limit on bound parameters is 999.
_IN_CLAUSE_CHUNK = 500


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
  """Convert a row into a plain dict, decoding JSON and boolean columns."""
  if row is None:
    return None
  record = dict(row)
  for column in _JSON_COLUMNS:
    if column in record:
      record[column] = json.loads(record[column]) if record[column] else None
  for column in _BOOL_COLUMNS:
    if column in record:
      record[column] = bool(record[column])
  return record


def _encode(record: Dict[str, Any]) -> Dict[str, Any]:
  encoded = dict(record)
  for column in _JSON_COLUMNS:
    if encoded.get(column) is not None:
      encoded[column] = json.dumps(encoded[column])
  return encoded


def _insert(conn: sqlite3.Connection, table: str, record: Dict[str, Any]) -> None:
  encoded = _encode(record)
  columns = ", ".join(encoded)
  placeholders = ", ".join("?" for _ in encoded)
  conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(encoded.values()))


def _credit_reward(conn: sqlite3.Connection, points: int, new_reward: Dict[str, Any]) -> None:
  """Add ``points`` to the user's reward row, inserting ``new_reward`` on first credit."""
  encoded = _encode(new_reward)
  columns = ", ".join(encoded)
  placeholders = ", ".join("?" for _ in encoded)
  conn.execute(
    f"""
    INSERT INTO rewards ({columns}) VALUES ({placeholders})
    ON CONFLICT (id) DO UPDATE SET points = points + ?, updated_at = excluded.updated_at
    """,
    tuple(encoded.values()) + (points,),
  )


class SqliteStore(WasteStore):
  """Relational backend backed by a local SQLite file."""

  backend_name = "sqlite"

  def __init__(self, db_path: Path | str) -> None:
    self.db_path = Path(db_path).resolve()
    self.initialise()

  @contextmanager
  def _connection(self) -> Iterator[sqlite3.Connection]:
    """Yield a SQLite connection with row access by name."""
    conn = sqlite3.connect(self.db_path)
    conn.row_factory = sqlite3.Row
    try:
      yield conn
    finally:
      conn.close()

  def initialise(self) -> None:
    """Ensure every table and index exists."""
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    with self._connection() as conn, conn:
      for statement in _SCHEMA:
        conn.execute(statement)

  def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
    with self._connection() as conn:
      return _row_to_dict(conn.execute(sql, params).fetchone())

  def _fetch_all(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
    with self._connection() as conn:
      return [_row_to_dict(row) for row in conn.execute(sql, params).fetchall()]

  def _insert_one(self, table: str, record: Dict[str, Any]) -> None:
    with self._connection() as conn, conn:
      _insert(conn, table, record)

  # -- users ----------------------------------------------------------------

  def _get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    return self._fetch_one("SELECT id, email, name, created_at FROM users WHERE id = ?", (user_id,))

  def _find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    return self._fetch_one(
      "SELECT id, email, name, created_at FROM users WHERE lower(email) = lower(?)",
      (email,),
    )

  def _insert_user(self, record: Dict[str, Any]) -> bool:
    try:
      self._insert_one("users", record)
    except sqlite3.IntegrityError:
      return False
    return True

  def _user_names(self, user_ids: List[str]) -> Dict[str, str]:
    names: Dict[str, str] = {}
    with self._connection() as conn:
      for start in range(0, len(user_ids), _IN_CLAUSE_CHUNK):
        chunk = user_ids[start:start + _IN_CLAUSE_CHUNK]
        placeholders = ", ".join("?" for _ in chunk)
        rows = conn.execute(f"SELECT id, name FROM users WHERE id IN ({placeholders})", tuple(chunk))
        names.update({row["id"]: row["name"] for row in rows})
    return names

  # -- notifications ----------------------------------------------------------

  def _insert_notification(self, record: Dict[str, Any]) -> None:
    self._insert_one("notifications", record)

  def _unread_notifications(self, user_id: str) -> List[Dict[str, Any]]:
    return self._fetch_all(
      """
      SELECT id, user_id, message, type, is_read, created_at
      FROM notifications
      WHERE user_id = ? AND is_read = 0
      ORDER BY created_at DESC
      """,
      (user_id,),
    )

  def _mark_notification_read(self, notification_id: str) -> bool:
    with self._connection() as conn, conn:
      cursor = conn.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
    return cursor.rowcount > 0

  # -- ledger -------------------------------------------------------------------

  def _ledger_total(self, user_id: str) -> int:
    row = self._fetch_one(
      """
      SELECT COALESCE(SUM(CASE WHEN type LIKE 'earned%' THEN amount ELSE -amount END), 0) AS total
      FROM transactions
      WHERE user_id = ?
      """,
      (user_id,),
    )
    return int(row["total"]) if row else 0

  def _recent_transactions(self, user_id: str, limit: int) -> List[Dict[str, Any]]:
    return self._fetch_all(
      """
      SELECT id, user_id, type, amount, description, date
      FROM transactions
      WHERE user_id = ?
      ORDER BY date DESC
      LIMIT ?
      """,
      (user_id, limit),
    )

  def _insert_transaction(self, record: Dict[str, Any]) -> None:
    self._insert_one("transactions", record)

  def _commit_earning(
    self,
    points: int,
    new_reward: Dict[str, Any],
    transaction: Dict[str, Any],
    report: Optional[Dict[str, Any]] = None,
    notification: Optional[Dict[str, Any]] = None,
  ) -> None:
    with self._connection() as conn, conn:
      if report is not None:
        _insert(conn, "reports", report)
      _credit_reward(conn, points, new_reward)
      _insert(conn, "transactions", transaction)
      if notification is not None:
        _insert(conn, "notifications", notification)

  def _commit_collection(
    self,
    collected: Dict[str, Any],
    points: int,
    new_reward: Dict[str, Any],
    transaction: Dict[str, Any],
    notification: Dict[str, Any],
  ) -> Dict[str, Any]:
    report_id = collected["report_id"]
    with self._connection() as conn, conn:
      cursor = conn.execute(
        "UPDATE reports SET status = 'verified', collector_id = ? WHERE id = ? AND status <> 'verified'",
        (collected["collector_id"], report_id),
      )
      if cursor.rowcount == 0:
        if conn.execute("SELECT 1 FROM reports WHERE id = ?", (report_id,)).fetchone():
          raise TaskAlreadyVerifiedError(f"Report {report_id} is already verified")
        raise ReportNotFoundError(f"Report {report_id} not found")
      _insert(conn, "collected_waste", collected)
      _credit_reward(conn, points, new_reward)
      _insert(conn, "transactions", transaction)
      _insert(conn, "notifications", notification)
      return _row_to_dict(conn.execute("SELECT * FROM reports WHERE id = ?", (report_id,)).fetchone())

  def _commit_redemption(self, reward_id: str, cost: int, transaction: Dict[str, Any]) -> None:
    with self._connection() as conn, conn:
      cursor = conn.execute(
        "UPDATE rewards SET points = points - ?, updated_at = ? WHERE id = ? AND points >= ?",
        (cost, utc_now_iso(), reward_id, cost),
      )
      if cursor.rowcount == 0:
        raise InsufficientPointsError("Insufficient points")
      _insert(conn, "transactions", transaction)

  # -- rewards ------------------------------------------------------------------

  def _find_reward_for_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    return self._fetch_one("SELECT * FROM rewards WHERE user_id = ?", (user_id,))

  def _insert_reward(self, record: Dict[str, Any]) -> bool:
    try:
      self._insert_one("rewards", record)
    except sqlite3.IntegrityError:
      return False
    return True

  def _increment_reward(self, reward_id: str, delta: int) -> Optional[Dict[str, Any]]:
    with self._connection() as conn, conn:
      conn.execute(
        "UPDATE rewards SET points = points + ?, updated_at = ? WHERE id = ?",
        (delta, utc_now_iso(), reward_id),
      )
    return self._get_reward(reward_id)

  def _get_reward(self, reward_id: str) -> Optional[Dict[str, Any]]:
    return self._fetch_one("SELECT * FROM rewards WHERE id = ?", (reward_id,))

  def _catalog_rewards(self) -> List[Dict[str, Any]]:
    return self._fetch_all("SELECT * FROM rewards WHERE is_available = 1 AND user_id IS NULL")

  def _user_rewards_by_points(self) -> List[Dict[str, Any]]:
    return self._fetch_all("SELECT * FROM rewards WHERE user_id IS NOT NULL ORDER BY points DESC")

  # -- reports ------------------------------------------------------------------

  def _recent_reports(self, limit: int) -> List[Dict[str, Any]]:
    return self._fetch_all("SELECT * FROM reports ORDER BY created_at DESC LIMIT ?", (limit,))

  def _get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
    return self._fetch_one("SELECT * FROM reports WHERE id = ?", (report_id,))

  def _update_report(self, report_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    encoded = _encode(changes)
    assignments = ", ".join(f"{column} = ?" for column in encoded)
    with self._connection() as conn, conn:
      cursor = conn.execute(
        f"UPDATE reports SET {assignments} WHERE id = ?",
        tuple(encoded.values()) + (report_id,),
      )
    if cursor.rowcount == 0:
      return None
    return self._get_report(report_id)

  def _insert_collected_waste(self, record: Dict[str, Any]) -> None:
    self._insert_one("collected_waste", record)


__all__ = ["SqliteStore"]
