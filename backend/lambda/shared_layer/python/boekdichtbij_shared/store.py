"""boekdichtbij_shared.store — Single-table DynamoDB record store.

All lifecycle records (bookings, broadcasts, events, accept-code and phone
lookups, providers) share one table keyed by PK/SK. This module owns the key
layout and the four store primitives the core relies on: get, put, update and
query. Every write may carry a condition expression; a lost condition raises
`ConditionFailed` so callers can tell a race loss from an outage.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from botocore.exceptions import ClientError

from boekdichtbij_shared.aws_clients import _get_ddb
from boekdichtbij_shared.config import DYNAMODB_TABLE, GSI_STATUS
from boekdichtbij_shared.serialization import _deserialize, _serialize, _serialize_item

logger = logging.getLogger(__name__)

__all__ = [
    "BOOKING_SK",
    "ConditionFailed",
    "PHONE_SK",
    "PROVIDER_SK",
    "accept_code_pk",
    "booking_pk",
    "booking_children",
    "broadcast_sk",
    "event_sk",
    "get_item",
    "phone_pk",
    "provider_pk",
    "put_item",
    "query",
    "query_all",
    "query_status_index",
    "status_index_keys",
    "status_index_pk",
    "update_item",
]


class ConditionFailed(Exception):
    """A conditional write lost: the stated precondition no longer held."""


def _is_conditional_check_failed(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

BOOKING_SK = "BOOKING"
PROVIDER_SK = "PROFILE"
PHONE_SK = "PROVIDER"


def booking_pk(booking_id: str) -> str:
    return f"BOOKING#{booking_id}"


def broadcast_sk(provider_id: str) -> str:
    return f"BROADCAST#PROVIDER#{provider_id}"


def event_sk(at: str, event_name: str) -> str:
    return f"EVENT#{at}#{event_name}"


def accept_code_pk(code: str) -> str:
    return f"ACCEPT#{code}"


def provider_pk(provider_id: str) -> str:
    return f"PROVIDER#{provider_id}"


def phone_pk(phone_e164: str) -> str:
    return f"PHONE#{phone_e164}"


def status_index_pk(area: str, status: str) -> str:
    return f"AREA#{area}#STATUS#{status}"


def status_index_keys(area: str, status: str, created_at: str, booking_id: str) -> Dict[str, str]:
    """GSI1 projection for a booking; rewritten together with every status change."""
    return {
        "GSI1PK": status_index_pk(area, status),
        "GSI1SK": f"CREATED#{created_at}#BOOKING#{booking_id}",
    }


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def _serialize_values(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: _serialize(v) for k, v in (values or {}).items()}


def get_item(pk: str, sk: str, *, consistent: bool = True) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=DYNAMODB_TABLE,
        Key={"PK": _serialize(pk), "SK": _serialize(sk)},
        ConsistentRead=consistent,
    )
    raw = resp.get("Item")
    if not raw:
        return None
    return _deserialize(raw)


def put_item(
    item: Dict[str, Any],
    *,
    condition: Optional[str] = None,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> None:
    """Put a full item, optionally guarded by a condition expression."""
    kwargs: Dict[str, Any] = {
        "TableName": DYNAMODB_TABLE,
        "Item": _serialize_item(item),
    }
    if condition:
        kwargs["ConditionExpression"] = condition
        if names:
            kwargs["ExpressionAttributeNames"] = dict(names)
        if values:
            kwargs["ExpressionAttributeValues"] = _serialize_values(values)
    try:
        _get_ddb().put_item(**kwargs)
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            raise ConditionFailed(f"put {item.get('PK')}/{item.get('SK')}: {condition}") from exc
        raise


def update_item(
    pk: str,
    sk: str,
    patch: Dict[str, Any],
    *,
    condition: Optional[str] = None,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Apply `patch` (None values are removed) and return the item as written."""
    expr_names: Dict[str, str] = dict(names or {})
    expr_values: Dict[str, Any] = dict(values or {})
    set_parts: List[str] = []
    remove_parts: List[str] = []
    for idx, (attr, value) in enumerate(sorted(patch.items())):
        name_ref = f"#u{idx}"
        expr_names[name_ref] = attr
        if value is None:
            remove_parts.append(name_ref)
        else:
            value_ref = f":u{idx}"
            expr_values[value_ref] = value
            set_parts.append(f"{name_ref} = {value_ref}")
    if not set_parts and not remove_parts:
        raise ValueError("update_item requires a non-empty patch")

    clauses = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if remove_parts:
        clauses.append("REMOVE " + ", ".join(remove_parts))

    kwargs: Dict[str, Any] = {
        "TableName": DYNAMODB_TABLE,
        "Key": {"PK": _serialize(pk), "SK": _serialize(sk)},
        "UpdateExpression": " ".join(clauses),
        "ExpressionAttributeNames": expr_names,
        "ReturnValues": "ALL_NEW",
    }
    if expr_values:
        kwargs["ExpressionAttributeValues"] = _serialize_values(expr_values)
    if condition:
        kwargs["ConditionExpression"] = condition
    try:
        resp = _get_ddb().update_item(**kwargs)
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            raise ConditionFailed(f"update {pk}/{sk}: {condition}") from exc
        raise
    return _deserialize(resp.get("Attributes") or {})


def query(
    key_condition: str,
    *,
    values: Dict[str, Any],
    names: Optional[Dict[str, str]] = None,
    index: Optional[str] = None,
    filter_expression: Optional[str] = None,
    scan_forward: bool = True,
    limit: Optional[int] = None,
    start_key: Optional[Dict[str, Any]] = None,
    consistent: bool = False,
) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Run one query page. Returns (items, pagination token or None)."""
    kwargs: Dict[str, Any] = {
        "TableName": DYNAMODB_TABLE,
        "KeyConditionExpression": key_condition,
        "ExpressionAttributeValues": _serialize_values(values),
        "ScanIndexForward": scan_forward,
    }
    if names:
        kwargs["ExpressionAttributeNames"] = dict(names)
    if index:
        kwargs["IndexName"] = index
    elif consistent:
        kwargs["ConsistentRead"] = True
    if filter_expression:
        kwargs["FilterExpression"] = filter_expression
    if limit:
        kwargs["Limit"] = int(limit)
    if start_key:
        kwargs["ExclusiveStartKey"] = start_key
    resp = _get_ddb().query(**kwargs)
    items = [_deserialize(raw) for raw in resp.get("Items", [])]
    return items, resp.get("LastEvaluatedKey")


def query_all(
    key_condition: str,
    *,
    values: Dict[str, Any],
    max_items: Optional[int] = None,
    page_size: Optional[int] = None,
    **kwargs: Any,
) -> Iterator[Dict[str, Any]]:
    """Iterate every matching item across pages, stopping after `max_items`."""
    start_key = None
    yielded = 0
    while True:
        items, start_key = query(
            key_condition, values=values, limit=page_size, start_key=start_key, **kwargs
        )
        for item in items:
            yield item
            yielded += 1
            if max_items is not None and yielded >= max_items:
                return
        if not start_key:
            return


def query_status_index(
    area: str,
    status: str,
    *,
    max_items: Optional[int] = None,
    created_before: Optional[str] = None,
    filter_expression: Optional[str] = None,
    filter_values: Optional[Dict[str, Any]] = None,
    filter_names: Optional[Dict[str, str]] = None,
) -> Iterator[Dict[str, Any]]:
    """Bookings in (area, status), oldest first.

    `max_items` counts only items that pass `filter_expression`.
    """
    key_condition = "GSI1PK = :pk"
    values: Dict[str, Any] = {":pk": status_index_pk(area, status)}
    if created_before:
        key_condition += " AND GSI1SK < :before"
        values[":before"] = f"CREATED#{created_before}"
    values.update(filter_values or {})
    return query_all(
        key_condition,
        values=values,
        names=filter_names,
        index=GSI_STATUS,
        filter_expression=filter_expression,
        scan_forward=True,
        max_items=max_items,
    )


def booking_children(booking_id: str, sk_prefix: str) -> List[Dict[str, Any]]:
    """All items under a booking partition whose SK starts with `sk_prefix`."""
    return list(
        query_all(
            "PK = :pk AND begins_with(SK, :prefix)",
            values={":pk": booking_pk(booking_id), ":prefix": sk_prefix},
            consistent=True,
        )
    )
