"""
Amazon DynamoDB implementation of the waste/reward store.

Each entity lives in its own table named ``<prefix><entity>`` with a string
``id`` hash key. Multi-record writes go through ``transact_write_items`` so a
report, its points and its ledger entry are never half-written, and
conditional expressions keep user creation idempotent and redemptions from
overdrawing a balance.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from api.store import (
  InsufficientPointsError,
  ReportNotFoundError,
  TaskAlreadyVerifiedError,
  WasteStore,
  ledger_total,
  user_reward_id,
  utc_now_iso,
)

logger = logging.getLogger(__name__)

TABLES = ("users", "reports", "rewards", "transactions", "notifications", "collected_waste")

# Optional attributes are dropped on write; restore them on read.
_OPTIONAL_FIELDS = {
  "reports": ("image_url", "verification_result", "collector_id"),
  "rewards": ("user_id", "cost", "description"),
  "collected_waste": ("verification_result",),
}

_BATCH_GET_LIMIT = 100

_serializer = TypeSerializer()


def _to_dynamo_compatible(value: Any) -> Any:
  """Convert native Python types into structures acceptable by DynamoDB."""
  if isinstance(value, bool):
    return value
  if isinstance(value, float):
    return Decimal(str(value))
  if isinstance(value, dict):
    return {
      str(key): _to_dynamo_compatible(val)
      for key, val in value.items()
      if val is not None
    }
  if isinstance(value, list):
    return [_to_dynamo_compatible(item) for item in value if item is not None]
  return value


def _from_dynamo(value: Any) -> Any:
  """Recursively convert DynamoDB Decimals into JSON friendly primitives."""
  if isinstance(value, Decimal):
    if value % 1 == 0:
      return int(value)
    return float(value)
  if isinstance(value, dict):
    return {key: _from_dynamo(val) for key, val in value.items()}
  if isinstance(value, list):
    return [_from_dynamo(item) for item in value]
  return value


def _serialise(values: Dict[str, Any]) -> Dict[str, Any]:
  """Render a mapping in the low-level AttributeValue wire form."""
  return {key: _serializer.serialize(val) for key, val in _to_dynamo_compatible(values).items()}


def _is_conditional_failure(exc: ClientError) -> bool:
  error = exc.response.get("Error", {})
  code = error.get("Code")
  if code == "ConditionalCheckFailedException":
    return True
  if code == "TransactionCanceledException":
    reasons = exc.response.get("CancellationReasons") or []
    if not reasons:
      return "ConditionalCheckFailed" in (error.get("Message") or "")
    return any(reason.get("Code") == "ConditionalCheckFailed" for reason in reasons)
  return False


class DynamoStore(WasteStore):
  """Document-store backend on DynamoDB."""

  backend_name = "dynamodb"

  def __init__(
    self,
    table_prefix: str = "",
    *,
    region: Optional[str] = None,
    endpoint_url: Optional[str] = None,
  ) -> None:
    kwargs: Dict[str, Any] = {}
    if region:
      kwargs["region_name"] = region
    if endpoint_url:
      kwargs["endpoint_url"] = endpoint_url
    self._resource = boto3.resource("dynamodb", **kwargs)
    self._client = boto3.client("dynamodb", **kwargs)
    self.table_names = {name: f"{table_prefix}{name}" for name in TABLES}
    self._tables = {name: self._resource.Table(table_name) for name, table_name in self.table_names.items()}

  def create_tables(self) -> None:
    """Create any missing table with on-demand billing."""
    for name, table_name in self.table_names.items():
      try:
        table = self._resource.create_table(
          TableName=table_name,
          KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
          AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
          BillingMode="PAY_PER_REQUEST",
        )
      except ClientError as exc:
        if exc.response["Error"]["Code"] == "ResourceInUseException":
          continue
        raise
      table.wait_until_exists()
      logger.info("Created DynamoDB table %s", table_name)

  # -- low-level helpers ----------------------------------------------------

  def _normalise(self, table: str, item: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not item:
      return None
    record = _from_dynamo(item)
    for field in _OPTIONAL_FIELDS.get(table, ()):
      record.setdefault(field, None)
    return record

  def _get(self, table: str, item_id: str) -> Optional[Dict[str, Any]]:
    response = self._tables[table].get_item(Key={"id": item_id})
    return self._normalise(table, response.get("Item"))

  def _put(self, table: str, record: Dict[str, Any]) -> None:
    self._tables[table].put_item(Item=_to_dynamo_compatible(record))

  def _scan(self, table: str, condition: Any = None) -> List[Dict[str, Any]]:
    """Scan a whole table, following pagination."""
    kwargs: Dict[str, Any] = {}
    if condition is not None:
      kwargs["FilterExpression"] = condition
    items: List[Dict[str, Any]] = []
    while True:
      response = self._tables[table].scan(**kwargs)
      items.extend(self._normalise(table, item) for item in response.get("Items", []))
      last_key = response.get("LastEvaluatedKey")
      if not last_key:
        return items
      kwargs["ExclusiveStartKey"] = last_key

  def _put_op(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """Transactional insert that fails instead of overwriting an existing item."""
    return {
      "Put": {
        "TableName": self.table_names[table],
        "Item": _serialise(record),
        "ConditionExpression": "attribute_not_exists(id)",
      }
    }

  def _credit_op(self, points: int, new_reward: Dict[str, Any]) -> Dict[str, Any]:
    """Upsert the user's reward row: create it from ``new_reward`` or add ``points``."""
    return {
      "Update": {
        "TableName": self.table_names["rewards"],
        "Key": _serialise({"id": new_reward["id"]}),
        "UpdateExpression": (
          "SET updated_at = :now, user_id = if_not_exists(user_id, :user_id), "
          "#name = if_not_exists(#name, :name), "
          "collection_info = if_not_exists(collection_info, :collection_info), "
          "is_available = if_not_exists(is_available, :available), "
          "created_at = if_not_exists(created_at, :now) "
          "ADD points :delta"
        ),
        "ExpressionAttributeNames": {"#name": "name"},
        "ExpressionAttributeValues": _serialise(
          {
            ":now": utc_now_iso(),
            ":user_id": new_reward["user_id"],
            ":name": new_reward["name"],
            ":collection_info": new_reward["collection_info"],
            ":available": True,
            ":delta": points,
          }
        ),
      }
    }

  # -- users ----------------------------------------------------------------

  def _get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    return self._get("users", user_id)

  def _find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
    matches = self._scan("users", Attr("email").eq(email))
    return matches[0] if matches else None

  def _insert_user(self, record: Dict[str, Any]) -> bool:
    try:
      self._tables["users"].put_item(
        Item=_to_dynamo_compatible(record),
        ConditionExpression="attribute_not_exists(id)",
      )
    except ClientError as exc:
      if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
        return False
      raise
    return True

  def _user_names(self, user_ids: List[str]) -> Dict[str, str]:
    table_name = self.table_names["users"]
    names: Dict[str, str] = {}
    for start in range(0, len(user_ids), _BATCH_GET_LIMIT):
      chunk = user_ids[start:start + _BATCH_GET_LIMIT]
      request: Dict[str, Any] = {table_name: {"Keys": [{"id": user_id} for user_id in chunk]}}
      while request:
        response = self._resource.batch_get_item(RequestItems=request)
        for item in response.get("Responses", {}).get(table_name, []):
          names[item["id"]] = item.get("name")
        request = response.get("UnprocessedKeys") or {}
    return names

  # -- notifications ----------------------------------------------------------

  def _insert_notification(self, record: Dict[str, Any]) -> None:
    self._put("notifications", record)

  def _unread_notifications(self, user_id: str) -> List[Dict[str, Any]]:
    return self._scan("notifications", Attr("user_id").eq(user_id) & Attr("is_read").eq(False))

  def _mark_notification_read(self, notification_id: str) -> bool:
    try:
      self._tables["notifications"].update_item(
        Key={"id": notification_id},
        UpdateExpression="SET is_read = :read",
        ConditionExpression="attribute_exists(id)",
        ExpressionAttributeValues={":read": True},
      )
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return False
      raise
    return True

  # -- ledger -------------------------------------------------------------------

  def _user_transactions(self, user_id: str) -> List[Dict[str, Any]]:
    return self._scan("transactions", Attr("user_id").eq(user_id))

  def _ledger_total(self, user_id: str) -> int:
    return ledger_total(self._user_transactions(user_id))

  def _recent_transactions(self, user_id: str, limit: int) -> List[Dict[str, Any]]:
    transactions = self._user_transactions(user_id)
    transactions.sort(key=lambda item: item.get("date") or "", reverse=True)
    return transactions[:limit]

  def _insert_transaction(self, record: Dict[str, Any]) -> None:
    self._put("transactions", record)

  def _commit_earning(
    self,
    points: int,
    new_reward: Dict[str, Any],
    transaction: Dict[str, Any],
    report: Optional[Dict[str, Any]] = None,
    notification: Optional[Dict[str, Any]] = None,
  ) -> None:
    operations: List[Dict[str, Any]] = []
    if report is not None:
      operations.append(self._put_op("reports", report))
    operations.append(self._credit_op(points, new_reward))
    operations.append(self._put_op("transactions", transaction))
    if notification is not None:
      operations.append(self._put_op("notifications", notification))

    self._client.transact_write_items(TransactItems=operations)

  def _commit_collection(
    self,
    collected: Dict[str, Any],
    points: int,
    new_reward: Dict[str, Any],
    transaction: Dict[str, Any],
    notification: Dict[str, Any],
  ) -> Dict[str, Any]:
    report_id = collected["report_id"]
    operations = [
      {
        "Update": {
          "TableName": self.table_names["reports"],
          "Key": _serialise({"id": report_id}),
          "UpdateExpression": "SET #status = :verified, collector_id = :collector",
          "ConditionExpression": "attribute_exists(id) AND #status <> :verified",
          "ExpressionAttributeNames": {"#status": "status"},
          "ExpressionAttributeValues": _serialise(
            {":verified": "verified", ":collector": collected["collector_id"]}
          ),
        }
      },
      self._put_op("collected_waste", collected),
      self._credit_op(points, new_reward),
      self._put_op("transactions", transaction),
      self._put_op("notifications", notification),
    ]
    try:
      self._client.transact_write_items(TransactItems=operations)
    except ClientError as exc:
      if _is_conditional_failure(exc):
        report = self._get_report(report_id)
        if report is None:
          raise ReportNotFoundError(f"Report {report_id} not found") from exc
        if report.get("status") == "verified":
          raise TaskAlreadyVerifiedError(f"Report {report_id} is already verified") from exc
      raise
    return self._get_report(report_id)

  def _commit_redemption(self, reward_id: str, cost: int, transaction: Dict[str, Any]) -> None:
    operations = [
      {
        "Update": {
          "TableName": self.table_names["rewards"],
          "Key": _serialise({"id": reward_id}),
          "UpdateExpression": "SET points = points - :cost, updated_at = :now",
          "ConditionExpression": "points >= :cost",
          "ExpressionAttributeValues": _serialise({":cost": cost, ":now": utc_now_iso()}),
        }
      },
      self._put_op("transactions", transaction),
    ]
    try:
      self._client.transact_write_items(TransactItems=operations)
    except ClientError as exc:
      if _is_conditional_failure(exc):
        raise InsufficientPointsError("Insufficient points") from exc
      raise

  # -- rewards ------------------------------------------------------------------

  def _find_reward_for_user(self, user_id: str) -> Optional[Dict[str, Any]]:
    return self._get("rewards", user_reward_id(user_id))

  def _insert_reward(self, record: Dict[str, Any]) -> bool:
    try:
      self._tables["rewards"].put_item(
        Item=_to_dynamo_compatible(record),
        ConditionExpression="attribute_not_exists(id)",
      )
    except ClientError as exc:
      if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
        return False
      raise
    return True

  def _increment_reward(self, reward_id: str, delta: int) -> Optional[Dict[str, Any]]:
    response = self._tables["rewards"].update_item(
      Key={"id": reward_id},
      UpdateExpression="SET updated_at = :now ADD points :delta",
      ExpressionAttributeValues={":now": utc_now_iso(), ":delta": delta},
      ReturnValues="ALL_NEW",
    )
    return self._normalise("rewards", response.get("Attributes"))

  def _get_reward(self, reward_id: str) -> Optional[Dict[str, Any]]:
    return self._get("rewards", reward_id)

  def _catalog_rewards(self) -> List[Dict[str, Any]]:
    return self._scan("rewards", Attr("is_available").eq(True) & Attr("user_id").not_exists())

  def _user_rewards_by_points(self) -> List[Dict[str, Any]]:
    rewards = self._scan("rewards", Attr("user_id").exists())
    rewards.sort(key=lambda item: item.get("points") or 0, reverse=True)
    return rewards

  # -- reports ------------------------------------------------------------------

  def _recent_reports(self, limit: int) -> List[Dict[str, Any]]:
    reports = self._scan("reports")
    reports.sort(key=lambda item: item.get("created_at") or "", reverse=True)
    return reports[:limit]

  def _get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
    return self._get("reports", report_id)

  def _update_report(self, report_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # "status" is a DynamoDB reserved word, so every field goes through a name placeholder.
    names = {f"#f{index}": field for index, field in enumerate(changes)}
    values = {f":v{index}": value for index, value in enumerate(changes.values())}
    assignments = ", ".join(f"#f{index} = :v{index}" for index in range(len(changes)))
    try:
      response = self._tables["reports"].update_item(
        Key={"id": report_id},
        UpdateExpression=f"SET {assignments}",
        ConditionExpression="attribute_exists(id)",
        ExpressionAttributeNames=names,
        ExpressionAttributeValues=_to_dynamo_compatible(values),
        ReturnValues="ALL_NEW",
      )
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return None
      raise
    return self._normalise("reports", response.get("Attributes"))

  def _insert_collected_waste(self, record: Dict[str, Any]) -> None:
    self._put("collected_waste", record)


__all__ = ["DynamoStore", "TABLES"]
