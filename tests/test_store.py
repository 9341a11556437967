"""Behaviour shared by the SQLite and DynamoDB backends."""

from __future__ import annotations

import sqlite3

import pytest
from botocore.exceptions import ClientError

from api.store import (
  REDEEM_ALL_REWARD_ID,
  REPORT_POINTS,
  InsufficientPointsError,
  ReportNotFoundError,
  RewardNotFoundError,
  TaskAlreadyVerifiedError,
  WasteStore,
  format_date,
  ledger_total,
  level_for_points,
  user_id_for_email,
  user_reward_id,
)

STORE_FAILURES = (sqlite3.DatabaseError, ClientError)


def _user(store, email="alice@example.com", name="Alice"):
  return store.create_user(email, name)


def _report(store, user_id, location="Main Street 1"):
  return store.create_report(
    user_id,
    location,
    "plastic",
    "2 kg",
    image_url="http://localhost/uploads/a.png",
    verification_result='{"wasteType": "plastic", "quantity": "2 kg", "confidence": 0.9}',
  )


def test_user_id_is_derived_from_email():
  assert user_id_for_email(" Alice.Smith+eco@Example.com ") == "alice_smith_eco_example_com"


def test_ledger_helpers():
  transactions = [
    {"type": "earned_report", "amount": 10},
    {"type": "earned_collect", "amount": 15},
    {"type": "redeemed", "amount": 30},
  ]
  assert ledger_total(transactions) == -5
  assert level_for_points(0) == 1
  assert level_for_points(19) == 1
  assert level_for_points(20) == 2
  assert level_for_points(45) == 3


def test_format_date_fallbacks():
  assert format_date("2024-05-01T08:00:00+00:00") == "2024-05-01"
  assert format_date("2024-05-01T08:00:00Z") == "2024-05-01"
  assert format_date("not a date", default="") == ""
  assert len(format_date(None)) == 10


def test_create_user_is_idempotent(store):
  first = _user(store)
  second = store.create_user("ALICE@example.com", "Someone Else")

  assert first["id"] == "alice_example_com"
  assert second["id"] == first["id"]
  assert second["name"] == "Alice"
  assert store.get_user_by_email("Alice@Example.com")["id"] == first["id"]
  assert store.get_user_by_email("nobody@example.com") is None


def test_create_report_writes_one_transaction_and_one_notification(store, clock):
  user = _user(store)
  report = _report(store, user["id"])

  assert report["status"] == "pending"
  assert report["collector_id"] is None
  assert report["verification_result"]["wasteType"] == "plastic"

  transactions = store.get_reward_transactions(user["id"])
  assert len(transactions) == 1
  assert transactions[0]["type"] == "earned_report"
  assert transactions[0]["amount"] == REPORT_POINTS
  assert transactions[0]["date"] == "2024-05-01"

  notifications = store.get_unread_notifications(user["id"])
  assert len(notifications) == 1
  assert notifications[0]["message"] == "You've earned 10 points for reporting waste!"
  assert notifications[0]["type"] == "reward"
  assert notifications[0]["is_read"] is False

  reward = store.get_or_create_reward(user["id"])
  assert reward["points"] == REPORT_POINTS
  assert reward["name"] == "Waste Collection Reward"
  assert store.get_user_balance(user["id"]) == REPORT_POINTS


def test_reports_accumulate_on_a_single_reward_row(store, clock):
  user = _user(store)
  for index in range(3):
    _report(store, user["id"], location=f"Spot {index}")

  assert store.get_user_balance(user["id"]) == 3 * REPORT_POINTS
  assert store.get_or_create_reward(user["id"])["points"] == 3 * REPORT_POINTS
  assert len(store.get_all_rewards()) == 1


def test_balance_is_floored_at_zero(store):
  user = _user(store)
  store.create_transaction(user["id"], "redeemed", 50, "Manual adjustment")
  assert store.get_user_balance(user["id"]) == 0


def test_create_transaction_rejects_unknown_type(store):
  user = _user(store)
  with pytest.raises(ValueError):
    store.create_transaction(user["id"], "gifted", 5, "Not a ledger type")


def test_reward_transactions_are_newest_first_and_capped(store, clock):
  user = _user(store)
  for amount in range(1, 13):
    store.create_transaction(user["id"], "earned_collect", amount, f"Pickup {amount}")

  transactions = store.get_reward_transactions(user["id"])
  assert [item["amount"] for item in transactions] == list(range(12, 2, -1))


def test_mark_notification_as_read(store):
  user = _user(store)
  notification = store.create_notification(user["id"], "Welcome aboard", "info")

  assert store.mark_notification_as_read(notification["id"]) is True
  assert store.get_unread_notifications(user["id"]) == []
  assert store.mark_notification_as_read("missing") is False


def test_recent_reports_and_collection_tasks(store, clock):
  user = _user(store)
  first = _report(store, user["id"], location="First")
  second = _report(store, user["id"], location="Second")

  recent = store.get_recent_reports()
  assert [report["id"] for report in recent] == [second["id"], first["id"]]
  assert store.get_recent_reports(limit=1)[0]["id"] == second["id"]

  tasks = store.get_waste_collection_tasks()
  assert tasks[0]["date"] == "2024-05-01"
  assert store.get_report(first["id"])["location"] == "First"
  assert store.get_report("missing") is None


def test_update_task_status(store):
  user = _user(store)
  report = _report(store, user["id"])

  updated = store.update_task_status(report["id"], "in_progress", "collector_1")
  assert updated["status"] == "in_progress"
  assert updated["collector_id"] == "collector_1"

  updated = store.update_task_status(report["id"], "completed")
  assert updated["status"] == "completed"
  assert updated["collector_id"] == "collector_1"

  with pytest.raises(ReportNotFoundError):
    store.update_task_status("missing", "completed")


def test_save_reward_and_collected_waste(store):
  collector = _user(store, "bob@example.com", "Bob")
  reporter = _user(store)
  report = _report(store, reporter["id"])

  collected = store.save_collected_waste(report["id"], collector["id"], {"confidence": 0.91, "accepted": True})
  assert collected["status"] == "verified"
  assert collected["verification_result"]["confidence"] == 0.91

  reward = store.save_reward(collector["id"], 25)
  assert reward["points"] == 25
  assert store.get_user_balance(collector["id"]) == 25
  assert [item["type"] for item in store.get_reward_transactions(collector["id"])] == ["earned_collect"]

  with pytest.raises(ValueError):
    store.save_reward(collector["id"], 0)


def test_update_reward_points_creates_then_increments(store):
  created = store.update_reward_points("carol_example_com", 5)
  assert created["points"] == 5

  updated = store.update_reward_points("carol_example_com", 7)
  assert updated["id"] == created["id"]
  assert updated["points"] == 12


def test_get_or_create_reward_defaults(store):
  reward = store.get_or_create_reward("dave_example_com")
  assert reward["points"] == 0
  assert reward["name"] == "Default Reward"
  assert reward["is_available"] is True
  assert store.get_or_create_reward("dave_example_com")["id"] == reward["id"]


def test_available_rewards_start_with_balance_entry(store):
  user = _user(store)
  _report(store, user["id"])
  store.create_catalog_reward("Tote bag", 40, description="Reusable bag")
  store.create_catalog_reward("Coffee voucher", 15)

  rewards = store.get_available_rewards(user["id"])
  assert rewards[0]["id"] == REDEEM_ALL_REWARD_ID
  assert rewards[0]["name"] == "Your Points"
  assert rewards[0]["cost"] == REPORT_POINTS
  assert [reward["name"] for reward in rewards[1:]] == ["Coffee voucher", "Tote bag"]


def test_redeem_all_points(store, clock):
  user = _user(store)
  _report(store, user["id"])
  _report(store, user["id"])

  reward = store.redeem_reward(user["id"], REDEEM_ALL_REWARD_ID)

  assert reward["points"] == 0
  assert store.get_user_balance(user["id"]) == 0
  latest = store.get_reward_transactions(user["id"])[0]
  assert latest["type"] == "redeemed"
  assert latest["amount"] == 2 * REPORT_POINTS
  assert latest["description"] == "Redeemed all points: 20"


def test_redeem_all_with_no_points_is_rejected(store):
  user = _user(store)
  with pytest.raises(InsufficientPointsError):
    store.redeem_reward(user["id"], REDEEM_ALL_REWARD_ID)
  assert store.get_reward_transactions(user["id"]) == []


def test_redeem_catalogue_reward(store, clock):
  user = _user(store)
  for _ in range(2):
    _report(store, user["id"])
  voucher = store.create_catalog_reward("Coffee voucher", 15)

  reward = store.redeem_reward(user["id"], voucher["id"])

  assert reward["points"] == 5
  assert store.get_user_balance(user["id"]) == 5
  assert store.get_reward_transactions(user["id"])[0]["description"] == "Redeemed: Coffee voucher"


def test_redeeming_more_than_available_is_rejected(store):
  user = _user(store)
  _report(store, user["id"])
  bag = store.create_catalog_reward("Tote bag", 40)

  with pytest.raises(InsufficientPointsError):
    store.redeem_reward(user["id"], bag["id"])

  assert store.get_user_balance(user["id"]) == REPORT_POINTS
  assert store.get_or_create_reward(user["id"])["points"] == REPORT_POINTS
  assert len(store.get_reward_transactions(user["id"])) == 1


def test_redeem_rejects_unknown_and_personal_rewards(store):
  user = _user(store)
  other = _user(store, "bob@example.com", "Bob")
  _report(store, user["id"])
  _report(store, other["id"])
  other_balance_row = store.get_or_create_reward(other["id"])

  with pytest.raises(RewardNotFoundError):
    store.redeem_reward(user["id"], "missing")
  with pytest.raises(RewardNotFoundError):
    store.redeem_reward(user["id"], other_balance_row["id"])


def test_leaderboard_orders_by_points_with_levels(store):
  alice = _user(store)
  bob = _user(store, "bob@example.com", "Bob")
  _report(store, alice["id"])
  store.save_reward(bob["id"], 45)
  store.update_reward_points("ghost_example_com", 3)
  store.create_catalog_reward("Tote bag", 40)

  leaderboard = store.get_all_rewards()

  assert [(row["user_name"], row["points"], row["level"]) for row in leaderboard] == [
    ("Bob", 45, 3),
    ("Alice", 10, 1),
    ("Unknown User", 3, 1),
  ]


def test_read_paths_log_and_return_defaults(sqlite_store, monkeypatch, caplog):
  def boom(*_args, **_kwargs):
    raise RuntimeError("database offline")

  for primitive in ("_ledger_total", "_unread_notifications", "_recent_reports", "_recent_transactions"):
    monkeypatch.setattr(sqlite_store, primitive, boom)

  assert sqlite_store.get_user_balance("alice") == 0
  assert sqlite_store.get_unread_notifications("alice") is None
  assert sqlite_store.get_recent_reports() == []
  assert sqlite_store.get_waste_collection_tasks() == []
  assert sqlite_store.get_reward_transactions("alice") == []
  assert sqlite_store.get_available_rewards("alice") == []
  assert "Error getting user balance for alice" in caplog.text


def _reuse_notification_id(store, monkeypatch, user_id):
  """Make the next notification collide with an existing one so its insert fails."""
  existing = store.create_notification(user_id, "Welcome aboard", "info")
  monkeypatch.setattr(
    store,
    "_notification_record",
    lambda user_id, message, notification_type: dict(existing, message=message, type=notification_type),
  )
  return existing


def test_create_report_is_all_or_nothing(store, monkeypatch):
  user = _user(store)
  _reuse_notification_id(store, monkeypatch, user["id"])

  assert _report(store, user["id"]) is None

  assert store.get_recent_reports() == []
  assert store.get_reward_transactions(user["id"]) == []
  assert store.get_all_rewards() == []
  assert store.get_user_balance(user["id"]) == 0
  assert [item["message"] for item in store.get_unread_notifications(user["id"])] == ["Welcome aboard"]


def test_record_collection_credits_the_collector_once(store, clock):
  reporter = _user(store)
  collector = _user(store, "bob@example.com", "Bob")
  report = _report(store, reporter["id"])

  recorded = store.record_collection(report["id"], collector["id"], {"confidence": 0.9, "accepted": True}, 15)

  assert recorded["report"]["status"] == "verified"
  assert recorded["report"]["collector_id"] == collector["id"]
  assert recorded["collected_waste"]["verification_result"]["confidence"] == 0.9
  assert recorded["reward"]["points"] == 15
  assert store.get_user_balance(collector["id"]) == 15
  assert [item["type"] for item in store.get_reward_transactions(collector["id"])] == ["earned_collect"]
  messages = [item["message"] for item in store.get_unread_notifications(collector["id"])]
  assert messages == ["You've earned 15 points for collecting waste!"]

  with pytest.raises(TaskAlreadyVerifiedError):
    store.record_collection(report["id"], collector["id"], {"confidence": 0.9}, 15)
  assert store.get_user_balance(collector["id"]) == 15
  assert len(store.get_reward_transactions(collector["id"])) == 1

  with pytest.raises(ReportNotFoundError):
    store.record_collection("missing", collector["id"], {"confidence": 0.9}, 15)


def test_record_collection_is_all_or_nothing(store, monkeypatch):
  reporter = _user(store)
  collector = _user(store, "bob@example.com", "Bob")
  report = _report(store, reporter["id"])
  _reuse_notification_id(store, monkeypatch, collector["id"])

  with pytest.raises(STORE_FAILURES):
    store.record_collection(report["id"], collector["id"], {"confidence": 0.9}, 15)

  unchanged = store.get_report(report["id"])
  assert unchanged["status"] == "pending"
  assert unchanged["collector_id"] is None
  assert store.get_user_balance(collector["id"]) == 0
  assert store.get_reward_transactions(collector["id"]) == []
  assert [row["user_id"] for row in store.get_all_rewards()] == [reporter["id"]]

  # A retry after the failure still pays out.
  monkeypatch.setattr(store, "_notification_record", WasteStore._notification_record)
  recorded = store.record_collection(report["id"], collector["id"], {"confidence": 0.9}, 15)
  assert recorded["report"]["status"] == "verified"
  assert store.get_user_balance(collector["id"]) == 15


def test_reward_row_stays_unique_when_lookups_are_stale(store, monkeypatch):
  user = _user(store)
  monkeypatch.setattr(store, "_find_reward_for_user", lambda user_id: None)

  _report(store, user["id"])
  _report(store, user["id"])
  store.update_reward_points(user["id"], 5)

  rows = store.get_all_rewards()
  assert [(row["user_id"], row["points"]) for row in rows] == [(user["id"], 2 * REPORT_POINTS + 5)]
  assert rows[0]["id"] == user_reward_id(user["id"])


def test_redeem_is_limited_by_the_ledger(store):
  user = _user(store)
  store.update_reward_points(user["id"], 30)
  voucher = store.create_catalog_reward("Coffee voucher", 20)

  with pytest.raises(InsufficientPointsError):
    store.redeem_reward(user["id"], voucher["id"])
  with pytest.raises(InsufficientPointsError):
    store.redeem_reward(user["id"], REDEEM_ALL_REWARD_ID)

  assert store.get_reward_transactions(user["id"]) == []
  assert store.get_or_create_reward(user["id"])["points"] == 30


def test_redeem_is_limited_by_the_reward_row(store, clock):
  user = _user(store)
  _report(store, user["id"])
  store.create_transaction(user["id"], "earned_collect", 40, "Manual credit")
  voucher = store.create_catalog_reward("Coffee voucher", 20)

  with pytest.raises(InsufficientPointsError):
    store.redeem_reward(user["id"], voucher["id"])

  reward = store.redeem_reward(user["id"], REDEEM_ALL_REWARD_ID)
  assert reward["points"] == 0
  assert store.get_reward_transactions(user["id"])[0]["amount"] == REPORT_POINTS
  assert store.get_user_balance(user["id"]) == 40


def test_write_paths_reraise(sqlite_store, monkeypatch):
  def boom(*_args, **_kwargs):
    raise RuntimeError("disk full")

  monkeypatch.setattr(sqlite_store, "_insert_collected_waste", boom)
  monkeypatch.setattr(sqlite_store, "_insert_transaction", boom)

  with pytest.raises(RuntimeError):
    sqlite_store.save_collected_waste("report", "collector", None)
  with pytest.raises(RuntimeError):
    sqlite_store.create_transaction("alice", "earned_report", 10, "Points earned for reporting waste")
