"""rollmodel_shared.store — Single-table DynamoDB item helpers.

Every item carries string `PK` and `SK` keys and an `entityType`. Callers
work with plain dicts; serialization happens here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rollmodel_shared.aws_clients import _get_ddb
from rollmodel_shared.config import TABLE_NAME
from rollmodel_shared.serialization import _deserialize, _serialize, _serialize_item

logger = logging.getLogger(__name__)

_BATCH_SIZE = 25

__all__ = [
    "batch_delete_keys",
    "batch_write_items",
    "delete_item",
    "get_item",
    "put_item",
    "query_items",
    "strip_keys",
]


def _key(pk: str, sk: str) -> Dict[str, Any]:
    return {"PK": _serialize(pk), "SK": _serialize(sk)}


def strip_keys(item: Dict[str, Any]) -> Dict[str, Any]:
    """Drop the table keys and entity type from a stored item."""
    return {k: v for k, v in item.items() if k not in {"PK", "SK", "entityType"}}


def put_item(item: Dict[str, Any]) -> None:
    _get_ddb().put_item(TableName=TABLE_NAME, Item=_serialize_item(item))


def get_item(pk: str, sk: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(TableName=TABLE_NAME, Key=_key(pk, sk))
    raw = resp.get("Item")
    if not raw:
        return None
    return _deserialize(raw)


def delete_item(pk: str, sk: str) -> None:
    _get_ddb().delete_item(TableName=TABLE_NAME, Key=_key(pk, sk))


def query_items(
    pk: str,
    sk_prefix: Optional[str] = None,
    *,
    scan_forward: bool = True,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Query one partition, optionally by SK prefix, following pagination."""
    params: Dict[str, Any] = {
        "TableName": TABLE_NAME,
        "ExpressionAttributeValues": {":pk": _serialize(pk)},
        "ScanIndexForward": scan_forward,
    }
    if sk_prefix:
        params["KeyConditionExpression"] = "PK = :pk AND begins_with(SK, :prefix)"
        params["ExpressionAttributeValues"][":prefix"] = _serialize(sk_prefix)
    else:
        params["KeyConditionExpression"] = "PK = :pk"
    if limit:
        params["Limit"] = limit

    ddb = _get_ddb()
    items: List[Dict[str, Any]] = []
    while True:
        resp = ddb.query(**params)
        items.extend(_deserialize(raw) for raw in resp.get("Items", []))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key or (limit and len(items) >= limit):
            break
        params["ExclusiveStartKey"] = last_key
    return items[:limit] if limit else items


def _batch_write(requests: List[Dict[str, Any]]) -> None:
    ddb = _get_ddb()
    for start in range(0, len(requests), _BATCH_SIZE):
        pending: Dict[str, Any] = {TABLE_NAME: requests[start : start + _BATCH_SIZE]}
        attempts = 0
        while pending and attempts < 5:
            resp = ddb.batch_write_item(RequestItems=pending)
            pending = resp.get("UnprocessedItems") or {}
            attempts += 1
        if pending:
            raise RuntimeError(f"batch_write_item left {len(pending.get(TABLE_NAME, []))} unprocessed items")


def batch_write_items(items: Iterable[Dict[str, Any]]) -> None:
    requests = [{"PutRequest": {"Item": _serialize_item(item)}} for item in items]
    if requests:
        _batch_write(requests)


def batch_delete_keys(keys: Iterable[Tuple[str, str]]) -> None:
    requests = [{"DeleteRequest": {"Key": _key(pk, sk)}} for pk, sk in dict.fromkeys(keys)]
    if requests:
        _batch_write(requests)
