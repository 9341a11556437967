"""
Data-access layer for users, waste reports and the reward-points ledger.

``WasteStore`` implements every public operation once, together with the
error policy the HTTP layer relies on: read paths log failures and return an
empty default, write paths that the caller must report on log and re-raise.
Concrete backends (SQLite, DynamoDB) only provide the small set of
``_``-prefixed primitives used below.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

REPORT_POINTS = 10
POINTS_PER_LEVEL = 20
RECENT_REPORTS_LIMIT = 10
COLLECTION_TASKS_LIMIT = 20
RECENT_TRANSACTIONS_LIMIT = 10

# Reward id that stands for "redeem the whole balance".
REDEEM_ALL_REWARD_ID = "0"

TRANSACTION_EARNED_REPORT = "earned_report"
TRANSACTION_EARNED_COLLECT = "earned_collect"
TRANSACTION_REDEEMED = "redeemed"
TRANSACTION_TYPES = (
  TRANSACTION_EARNED_REPORT,
  TRANSACTION_EARNED_COLLECT,
  TRANSACTION_REDEEMED,
)

REPORT_STATUSES = ("pending", "in_progress", "completed", "verified")

NOTIFICATION_TYPE_REWARD = "reward"


class InsufficientPointsError(ValueError):
  """Raised when a redemption costs more than the user's points."""


class ReportNotFoundError(LookupError):
  """Raised when a report id does not exist."""


class RewardNotFoundError(LookupError):
  """Raised when a reward id does not name a redeemable reward."""


class TaskAlreadyVerifiedError(ValueError):
  """Raised when a collection is recorded for a report that is already verified."""


def utc_now_iso() -> str:
  return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
  return uuid.uuid4().hex


def normalise_email(email: str) -> str:
  return (email or "").strip().lower()


def user_id_for_email(email: str) -> str:
  """Derive the stable user id for an email address."""
  return re.sub(r"[^a-zA-Z0-9]", "_", normalise_email(email))


def user_reward_id(user_id: str) -> str:
  """Each user owns exactly one reward row, keyed by their id."""
  return f"reward_{user_id}"


def format_date(value: Any, default: Optional[str] = None) -> str:
  """
  Render a stored timestamp as ``YYYY-MM-DD``.

  ``default`` is returned for missing or unparseable values; when it is
  ``None`` today's UTC date is used instead.
  """
  parsed: Optional[datetime] = None
  if isinstance(value, datetime):
    parsed = value
  elif isinstance(value, str) and value.strip():
    try:
      parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
      parsed = None

  if parsed is None:
    if default is not None:
      return default
    return datetime.now(timezone.utc).date().isoformat()
  return parsed.date().isoformat()


def is_earning(transaction_type: str) -> bool:
  return str(transaction_type or "").startswith("earned")


def ledger_total(transactions: Iterable[Dict[str, Any]]) -> int:
  """Signed sum of a user's transactions (not floored)."""
  total = 0
  for transaction in transactions:
    amount = int(transaction.get("amount") or 0)
    total += amount if is_earning(transaction.get("type")) else -amount
  return total


def level_for_points(points: int) -> int:
  return int(points or 0) // POINTS_PER_LEVEL + 1


def decode_verification(value: Any) -> Optional[Dict[str, Any]]:
  """Accept a verification result as a dict or a JSON string."""
  if value is None or value == "":
    return None
  if isinstance(value, str):
    try:
      value = json.loads(value)
    except ValueError:
      return {"raw": value}
  if isinstance(value, list):
    value = value[0] if value else None
  return value if isinstance(value, dict) else None


class WasteStore:
  """Backend-independent reward and reporting operations."""

  backend_name = "abstract"

  # -- record builders --------------------------------------------------

  @staticmethod
  def _transaction_record(user_id: str, transaction_type: str, amount: int, description: str) -> Dict[str, Any]:
    if transaction_type not in TRANSACTION_TYPES:
      raise ValueError(f"Unknown transaction type: {transaction_type}")
    return {
      "id": new_id(),
      "user_id": user_id,
      "type": transaction_type,
      "amount": int(amount),
      "description": description,
      "date": utc_now_iso(),
    }

  @staticmethod
  def _notification_record(user_id: str, message: str, notification_type: str) -> Dict[str, Any]:
    return {
      "id": new_id(),
      "user_id": user_id,
      "message": message,
      "type": notification_type,
      "is_read": False,
      "created_at": utc_now_iso(),
    }

  @staticmethod
  def _reward_record(
    user_id: Optional[str],
    name: str,
    collection_info: str,
    points: int = 0,
    cost: Optional[int] = None,
    description: Optional[str] = None,
  ) -> Dict[str, Any]:
    now = utc_now_iso()
    return {
      "id": user_reward_id(user_id) if user_id else new_id(),
      "user_id": user_id,
      "points": int(points),
      "cost": cost,
      "is_available": True,
      "name": name,
      "description": description,
      "collection_info": collection_info,
      "created_at": now,
      "updated_at": now,
    }

  # -- users --------------------------------------------------------------

  def create_user(self, email: str, name: str) -> Optional[Dict[str, Any]]:
    """Return the user for ``email``, inserting it on first sight."""
    try:
      user_id = user_id_for_email(email)
      if not user_id:
        raise ValueError("Email is required.")
      existing = self._get_user(user_id)
      if existing:
        return existing

      record = {
        "id": user_id,
        "email": normalise_email(email),
        "name": name or "Anonymous user",
        "created_at": utc_now_iso(),
      }
      if not self._insert_user(record):
        # Lost a race with a concurrent request for the same email.
        return self._get_user(user_id)
      return record
    except Exception:
      logger.exception("Error creating user %s", email)
      return None

  def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    try:
      return self._find_user_by_email(normalise_email(email))
    except Exception:
      logger.exception("Error fetching user by email %s", email)
      return None

  # -- notifications ------------------------------------------------------

  def get_unread_notifications(self, user_id: str) -> Optional[List[Dict[str, Any]]]:
    try:
      notifications = self._unread_notifications(user_id)
    except Exception:
      logger.exception("Error fetching unread notifications for %s", user_id)
      return None
    return sorted(notifications, key=lambda item: item.get("created_at") or "", reverse=True)

  def mark_notification_as_read(self, notification_id: str) -> bool:
    try:
      return self._mark_notification_read(notification_id)
    except Exception:
      logger.exception("Error marking notification %s as read", notification_id)
      return False

  def create_notification(self, user_id: str, message: str, notification_type: str) -> Optional[Dict[str, Any]]:
    try:
      record = self._notification_record(user_id, message, notification_type)
      self._insert_notification(record)
      return record
    except Exception:
      logger.exception("Error creating notification for %s", user_id)
      return None

  # -- ledger ---------------------------------------------------------------

  def get_user_balance(self, user_id: str) -> int:
    """Points earned minus points redeemed, never below zero."""
    try:
      total = self._ledger_total(user_id)
    except Exception:
      logger.exception("Error getting user balance for %s", user_id)
      return 0
    return max(total, 0)

  def get_reward_transactions(self, user_id: str) -> List[Dict[str, Any]]:
    try:
      transactions = self._recent_transactions(user_id, RECENT_TRANSACTIONS_LIMIT)
    except Exception:
      logger.exception("Error fetching reward transactions for %s", user_id)
      return []
    return [dict(transaction, date=format_date(transaction.get("date"))) for transaction in transactions]

  def create_transaction(self, user_id: str, transaction_type: str, amount: int, description: str) -> Dict[str, Any]:
    try:
      record = self._transaction_record(user_id, transaction_type, amount, description)
      self._insert_transaction(record)
      return record
    except Exception:
      logger.exception("Error creating transaction for %s", user_id)
      raise

  # -- reports --------------------------------------------------------------

  def create_report(
    self,
    user_id: str,
    location: str,
    waste_type: str,
    amount: str,
    image_url: Optional[str] = None,
    verification_result: Any = None,
  ) -> Optional[Dict[str, Any]]:
    """
    Store a report and award its points in one atomic write.

    The write covers the report itself, the reporter's reward row, a single
    ``earned_report`` transaction and a single reward notification.
    """
    try:
      report = {
        "id": new_id(),
        "user_id": user_id,
        "location": location,
        "waste_type": waste_type,
        "amount": amount,
        "image_url": image_url or None,
        "verification_result": decode_verification(verification_result),
        "status": "pending",
        "created_at": utc_now_iso(),
        "collector_id": None,
      }
      transaction = self._transaction_record(
        user_id, TRANSACTION_EARNED_REPORT, REPORT_POINTS, "Points earned for reporting waste"
      )
      notification = self._notification_record(
        user_id,
        f"You've earned {REPORT_POINTS} points for reporting waste!",
        NOTIFICATION_TYPE_REWARD,
      )
      self._commit_earning(
        REPORT_POINTS,
        self._earned_reward_record(user_id, REPORT_POINTS),
        transaction,
        report=report,
        notification=notification,
      )
      return report
    except Exception:
      logger.exception("Error creating report for %s", user_id)
      return None

  def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
    try:
      return self._get_report(report_id)
    except Exception:
      logger.exception("Error fetching report %s", report_id)
      return None

  def get_recent_reports(self, limit: int = RECENT_REPORTS_LIMIT) -> List[Dict[str, Any]]:
    try:
      return self._recent_reports(limit)
    except Exception:
      logger.exception("Error fetching recent reports")
      return []

  def get_waste_collection_tasks(self, limit: int = COLLECTION_TASKS_LIMIT) -> List[Dict[str, Any]]:
    try:
      tasks = self._recent_reports(limit)
    except Exception:
      logger.exception("Error fetching waste collection tasks")
      return []
    return [dict(task, date=format_date(task.get("created_at"), default="")) for task in tasks]

  def update_task_status(self, report_id: str, status: str, collector_id: Optional[str] = None) -> Dict[str, Any]:
    try:
      changes: Dict[str, Any] = {"status": status}
      if collector_id is not None:
        changes["collector_id"] = collector_id
      updated = self._update_report(report_id, changes)
      if updated is None:
        raise ReportNotFoundError(f"Report {report_id} not found")
      return updated
    except Exception:
      logger.exception("Error updating task status for %s", report_id)
      raise

  def save_collected_waste(self, report_id: str, collector_id: str, verification_result: Any) -> Dict[str, Any]:
    try:
      record = {
        "id": new_id(),
        "report_id": report_id,
        "collector_id": collector_id,
        "collection_date": utc_now_iso(),
        "status": "verified",
        "verification_result": decode_verification(verification_result),
      }
      self._insert_collected_waste(record)
      return record
    except Exception:
      logger.exception("Error saving collected waste for report %s", report_id)
      raise

  def record_collection(
    self,
    report_id: str,
    collector_id: str,
    verification_result: Any,
    points: int,
  ) -> Dict[str, Any]:
    """
    Close a verified pickup in one atomic write.

    The CollectedWaste row, the report's ``verified`` status, the collector's
    points, one ``earned_collect`` transaction and one notification are
    written together. A report that is already verified is refused, so the
    same pickup is never paid twice.
    """
    try:
      if int(points) <= 0:
        raise ValueError("Reward amount must be positive.")
      collected = {
        "id": new_id(),
        "report_id": report_id,
        "collector_id": collector_id,
        "collection_date": utc_now_iso(),
        "status": "verified",
        "verification_result": decode_verification(verification_result),
      }
      transaction = self._transaction_record(
        collector_id, TRANSACTION_EARNED_COLLECT, points, "Points earned for collecting waste"
      )
      notification = self._notification_record(
        collector_id,
        f"You've earned {int(points)} points for collecting waste!",
        NOTIFICATION_TYPE_REWARD,
      )
      report = self._commit_collection(
        collected,
        int(points),
        self._earned_reward_record(collector_id, int(points)),
        transaction,
        notification,
      )
      return {
        "collected_waste": collected,
        "report": report,
        "reward": self._find_reward_for_user(collector_id),
        "transaction": transaction,
        "notification": notification,
      }
    except Exception:
      logger.exception("Error recording collection of report %s", report_id)
      raise

  # -- rewards --------------------------------------------------------------

  def _earned_reward_record(self, user_id: str, points: int) -> Dict[str, Any]:
    return self._reward_record(
      user_id, "Waste Collection Reward", "Points earned from waste collection", points=points
    )

  def update_reward_points(self, user_id: str, points_to_add: int) -> Optional[Dict[str, Any]]:
    try:
      reward = self._find_reward_for_user(user_id)
      if reward:
        return self._increment_reward(reward["id"], int(points_to_add))
      record = self._earned_reward_record(user_id, int(points_to_add))
      if not self._insert_reward(record):
        # Another request created the row first.
        return self._increment_reward(record["id"], int(points_to_add))
      return record
    except Exception:
      logger.exception("Error updating reward points for %s", user_id)
      return None

  def save_reward(self, user_id: str, amount: int) -> Dict[str, Any]:
    """Credit collection points and record the matching transaction."""
    try:
      if int(amount) <= 0:
        raise ValueError("Reward amount must be positive.")
      transaction = self._transaction_record(
        user_id, TRANSACTION_EARNED_COLLECT, amount, "Points earned for collecting waste"
      )
      self._commit_earning(int(amount), self._earned_reward_record(user_id, int(amount)), transaction)
      return self._find_reward_for_user(user_id)
    except Exception:
      logger.exception("Error saving reward for %s", user_id)
      raise

  def get_or_create_reward(self, user_id: str) -> Optional[Dict[str, Any]]:
    try:
      reward = self._find_reward_for_user(user_id)
      if reward:
        return reward
      record = self._reward_record(user_id, "Default Reward", "Default Collection Info")
      if not self._insert_reward(record):
        return self._find_reward_for_user(user_id)
      return record
    except Exception:
      logger.exception("Error getting or creating reward for %s", user_id)
      return None

  def create_catalog_reward(
    self,
    name: str,
    cost: int,
    description: Optional[str] = None,
    collection_info: str = "",
  ) -> Dict[str, Any]:
    try:
      if int(cost) <= 0:
        raise ValueError("Reward cost must be positive.")
      record = self._reward_record(None, name, collection_info, cost=int(cost), description=description)
      if not self._insert_reward(record):
        raise RuntimeError(f"Reward id collision for {record['id']}")
      return record
    except Exception:
      logger.exception("Error creating catalogue reward %s", name)
      raise

  def get_available_rewards(self, user_id: str) -> List[Dict[str, Any]]:
    try:
      user_points = max(self._ledger_total(user_id), 0)
      catalogue = self._catalog_rewards()
    except Exception:
      logger.exception("Error fetching available rewards for %s", user_id)
      return []

    balance_entry = {
      "id": REDEEM_ALL_REWARD_ID,
      "name": "Your Points",
      "cost": user_points,
      "description": "Redeem your earned points",
      "collection_info": "Points earned from reporting and collecting waste",
    }
    return [balance_entry] + sorted(catalogue, key=lambda reward: reward.get("cost") or 0)

  def redeem_reward(self, user_id: str, reward_id: str) -> Dict[str, Any]:
    """
    Spend points on a catalogue reward, or on everything with id ``"0"``.

    Only points present both on the reward row and in the ledger can be
    spent. The debit and its ``redeemed`` transaction are written together
    and the backend refuses the debit when it would take the row below zero.
    """
    try:
      user_reward = self.get_or_create_reward(user_id)
      if user_reward is None:
        raise RuntimeError(f"Reward balance unavailable for {user_id}")
      available = min(int(user_reward.get("points") or 0), max(self._ledger_total(user_id), 0))

      if str(reward_id) == REDEEM_ALL_REWARD_ID:
        cost = available
        if cost <= 0:
          raise InsufficientPointsError("No points to redeem")
        description = f"Redeemed all points: {cost}"
      else:
        catalogue_reward = self._get_reward(str(reward_id))
        if not catalogue_reward or catalogue_reward.get("user_id") or not catalogue_reward.get("is_available"):
          raise RewardNotFoundError("Reward not found")
        cost = int(catalogue_reward.get("cost") or catalogue_reward.get("points") or 0)
        if available < cost:
          raise InsufficientPointsError("Insufficient points")
        description = f"Redeemed: {catalogue_reward.get('name')}"

      transaction = self._transaction_record(user_id, TRANSACTION_REDEEMED, cost, description)
      self._commit_redemption(user_reward["id"], cost, transaction)
      return self._get_reward(user_reward["id"])
    except Exception:
      logger.exception("Error redeeming reward %s for %s", reward_id, user_id)
      raise

  def get_all_rewards(self) -> List[Dict[str, Any]]:
    """Leaderboard of user reward rows with display name and level."""
    try:
      rewards = self._user_rewards_by_points()
      user_ids = sorted({reward["user_id"] for reward in rewards if reward.get("user_id")})
      names = self._user_names(user_ids) if user_ids else {}
    except Exception:
      logger.exception("Error fetching all rewards")
      return []

    return [
      dict(
        reward,
        user_name=names.get(reward.get("user_id")) or "Unknown User",
        level=level_for_points(reward.get("points") or 0),
      )
      for reward in rewards
    ]

  # -- backend primitives ---------------------------------------------------

  def _get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _insert_user(self, record: Dict[str, Any]) -> bool:
    """Insert ``record``; return False when the id already exists."""
    raise NotImplementedError

  def _user_names(self, user_ids: List[str]) -> Dict[str, str]:
    raise NotImplementedError

  def _insert_notification(self, record: Dict[str, Any]) -> None:
    raise NotImplementedError

  def _unread_notifications(self, user_id: str) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def _mark_notification_read(self, notification_id: str) -> bool:
    raise NotImplementedError

  def _ledger_total(self, user_id: str) -> int:
    raise NotImplementedError

  def _recent_transactions(self, user_id: str, limit: int) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def _insert_transaction(self, record: Dict[str, Any]) -> None:
    raise NotImplementedError

  def _commit_earning(
    self,
    points: int,
    new_reward: Dict[str, Any],
    transaction: Dict[str, Any],
    report: Optional[Dict[str, Any]] = None,
    notification: Optional[Dict[str, Any]] = None,
  ) -> None:
    """
    Atomically credit ``points`` to ``new_reward['user_id']`` and write the
    accompanying records. ``new_reward`` is inserted only when the user has
    no reward row yet.
    """
    raise NotImplementedError

  def _commit_collection(
    self,
    collected: Dict[str, Any],
    points: int,
    new_reward: Dict[str, Any],
    transaction: Dict[str, Any],
    notification: Dict[str, Any],
  ) -> Dict[str, Any]:
    """
    Atomically mark ``collected['report_id']`` verified, insert the
    CollectedWaste row and credit the collector. Return the updated report.
    Raise ReportNotFoundError or TaskAlreadyVerifiedError without writing.
    """
    raise NotImplementedError

  def _commit_redemption(self, reward_id: str, cost: int, transaction: Dict[str, Any]) -> None:
    """Atomically debit ``cost``; raise InsufficientPointsError if short."""
    raise NotImplementedError

  def _find_reward_for_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _insert_reward(self, record: Dict[str, Any]) -> bool:
    """Insert ``record``; return False when the id already exists."""
    raise NotImplementedError

  def _increment_reward(self, reward_id: str, delta: int) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _get_reward(self, reward_id: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _catalog_rewards(self) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def _user_rewards_by_points(self) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def _recent_reports(self, limit: int) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def _get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _update_report(self, report_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    raise NotImplementedError

  def _insert_collected_waste(self, record: Dict[str, Any]) -> None:
    raise NotImplementedError


__all__ = [
  "InsufficientPointsError",
  "REDEEM_ALL_REWARD_ID",
  "REPORT_POINTS",
  "REPORT_STATUSES",
  "ReportNotFoundError",
  "RewardNotFoundError",
  "TRANSACTION_TYPES",
  "TaskAlreadyVerifiedError",
  "WasteStore",
  "format_date",
  "ledger_total",
  "level_for_points",
  "user_id_for_email",
  "user_reward_id",
]
