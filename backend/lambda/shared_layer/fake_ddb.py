"""fake_ddb.py — In-memory stand-in for the low-level DynamoDB client.

Implements the subset of `boto3.client("dynamodb")` the shared layer calls:
get_item, put_item, update_item and query, with

    - condition / key-condition / filter expressions: = <> < <= > >=,
      AND / OR / NOT, parentheses, attribute_exists, attribute_not_exists,
      begins_with, #name and :value placeholders;
    - update expressions made of SET a = :v and REMOVE a clauses;
    - sparse GSI1..GSI4 (an item is indexed only when it has both keys);
    - Limit / ExclusiveStartKey / LastEvaluatedKey pagination;
    - ConditionalCheckFailedException raised as botocore ClientError.

Every call holds one lock, so a conditional write is atomic with respect to
concurrent callers in other threads, which is what the race tests rely on.
"""

from __future__ import annotations

import copy
import re
import threading
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

INDEXES = {
    "GSI1": ("GSI1PK", "GSI1SK"),
    "GSI2": ("GSI2PK", "GSI2SK"),
    "GSI3": ("GSI3PK", "GSI3SK"),
    "GSI4": ("GSI4PK", "GSI4SK"),
}

_SER = TypeSerializer()
_DESER = TypeDeserializer()
_MISSING = object()

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<op><>|<=|>=|=|<|>)|(?P<lp>\()|(?P<rp>\))|(?P<comma>,)"
    r"|(?P<value>:[A-Za-z0-9_]+)|(?P<name>#?[A-Za-z_][A-Za-z0-9_]*))"
)
_FUNCTIONS = {"attribute_exists", "attribute_not_exists", "begins_with"}


def _client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


def _to_python(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _DESER.deserialize(v) for k, v in raw.items()}


def _to_wire(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _SER.serialize(v) for k, v in item.items()}


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ValueError(f"Cannot parse expression at {text[pos:]!r}")
        pos = match.end()
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
    return tokens


class _Condition:
    """Recursive-descent evaluator for DynamoDB condition expressions."""

    def __init__(self, expression: str, names: Dict[str, str], values: Dict[str, Any]):
        self.tokens = _tokenize(expression)
        self.names = names
        self.values = values
        self.pos = 0
        self.item: Dict[str, Any] = {}

    def evaluate(self, item: Dict[str, Any]) -> bool:
        self.item = item
        self.pos = 0
        result = self._or()
        if self.pos != len(self.tokens):
            raise ValueError(f"Trailing tokens in expression: {self.tokens[self.pos:]}")
        return result

    # -- token helpers --------------------------------------------------

    def _peek(self) -> Tuple[Optional[str], Optional[str]]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None, None

    def _take(self, kind: Optional[str] = None) -> str:
        tok_kind, tok = self._peek()
        if tok_kind is None or (kind and tok_kind != kind):
            raise ValueError(f"Expected {kind}, got {tok!r}")
        self.pos += 1
        return tok

    def _keyword(self, word: str) -> bool:
        kind, tok = self._peek()
        if kind == "name" and tok.upper() == word:
            self.pos += 1
            return True
        return False

    # -- grammar --------------------------------------------------------

    def _or(self) -> bool:
        result = self._and()
        while self._keyword("OR"):
            right = self._and()
            result = result or right
        return result

    def _and(self) -> bool:
        result = self._not()
        while self._keyword("AND"):
            right = self._not()
            result = result and right
        return result

    def _not(self) -> bool:
        if self._keyword("NOT"):
            return not self._not()
        return self._primary()

    def _primary(self) -> bool:
        kind, tok = self._peek()
        if kind == "lp":
            self._take("lp")
            result = self._or()
            self._take("rp")
            return result
        if kind == "name" and tok in _FUNCTIONS:
            return self._function()
        left = self._operand()
        op = self._take("op")
        right = self._operand()
        return self._compare(left, op, right)

    def _function(self) -> bool:
        func = self._take("name")
        self._take("lp")
        path = self._resolve_name(self._take("name"))
        arg = _MISSING
        if self._peek()[0] == "comma":
            self._take("comma")
            arg = self._operand()
        self._take("rp")
        value = self.item.get(path, _MISSING)
        if func == "attribute_exists":
            return value is not _MISSING
        if func == "attribute_not_exists":
            return value is _MISSING
        return isinstance(value, str) and isinstance(arg, str) and value.startswith(arg)

    def _resolve_name(self, token: str) -> str:
        if token.startswith("#"):
            return self.names[token]
        return token

    def _operand(self) -> Any:
        kind, tok = self._peek()
        if kind == "value":
            self.pos += 1
            return self.values[tok]
        if kind == "name":
            self.pos += 1
            return self.item.get(self._resolve_name(tok), _MISSING)
        raise ValueError(f"Expected operand, got {tok!r}")

    @staticmethod
    def _compare(left: Any, op: str, right: Any) -> bool:
        if left is _MISSING or right is _MISSING:
            return False
        if type(left) is not type(right):
            return op == "<>"
        if op == "=":
            return left == right
        if op == "<>":
            return left != right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right


def _apply_update(item: Dict[str, Any], expression: str, names: Dict[str, str], values: Dict[str, Any]) -> None:
    parts = re.split(r"\b(SET|REMOVE)\b", expression)
    action = None
    for part in parts:
        part = part.strip()
        if part in ("SET", "REMOVE"):
            action = part
            continue
        if not part:
            continue
        for clause in (c.strip() for c in part.split(",")):
            if action == "SET":
                target, source = (s.strip() for s in clause.split("=", 1))
                attr = names.get(target, target)
                item[attr] = copy.deepcopy(values[source])
            elif action == "REMOVE":
                item.pop(names.get(clause, clause), None)
            else:
                raise ValueError(f"Unsupported update expression {expression!r}")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class FakeDynamoDB:
    """Thread-safe in-memory single table."""

    def __init__(self):
        self._items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._injected: Dict[str, List[str]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    # -- test helpers ----------------------------------------------------

    def seed(self, item: Dict[str, Any]) -> None:
        """Store a plain-Python item as if it had been written through the client."""
        from boekdichtbij_shared.serialization import _serialize_item

        with self._lock:
            stored = _to_python(_serialize_item(item))
            self._items[(stored["PK"], stored["SK"])] = stored

    def get(self, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get((pk, sk))
            return copy.deepcopy(item) if item else None

    def items_with_prefix(self, pk: str, sk_prefix: str = "") -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(item)
                for (item_pk, item_sk), item in sorted(self._items.items())
                if item_pk == pk and item_sk.startswith(sk_prefix)
            ]

    def inject_error(self, operation: str, code: str = "ProvisionedThroughputExceededException") -> None:
        """Make the next call to `operation` raise ClientError(code)."""
        self._injected.setdefault(operation, []).append(code)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._injected.get(operation)
        if pending:
            raise _client_error(pending.pop(0), operation)

    def _check(self, kwargs: Dict[str, Any], item: Dict[str, Any], operation: str) -> None:
        condition = kwargs.get("ConditionExpression")
        if not condition:
            return
        evaluator = _Condition(
            condition,
            kwargs.get("ExpressionAttributeNames") or {},
            _to_python(kwargs.get("ExpressionAttributeValues") or {}),
        )
        if not evaluator.evaluate(item):
            raise _client_error(
                "ConditionalCheckFailedException", operation, "The conditional request failed"
            )

    # -- client API ------------------------------------------------------

    def get_item(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("get_item", kwargs))
        key = _to_python(kwargs["Key"])
        with self._lock:
            self._maybe_fail("get_item")
            item = self._items.get((key["PK"], key["SK"]))
            return {"Item": _to_wire(item)} if item else {}

    def put_item(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("put_item", kwargs))
        item = _to_python(kwargs["Item"])
        with self._lock:
            self._maybe_fail("put_item")
            current = self._items.get((item["PK"], item["SK"])) or {}
            self._check(kwargs, current, "PutItem")
            self._items[(item["PK"], item["SK"])] = item
        return {}

    def update_item(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("update_item", kwargs))
        key = _to_python(kwargs["Key"])
        with self._lock:
            self._maybe_fail("update_item")
            current = self._items.get((key["PK"], key["SK"]))
            self._check(kwargs, current or {}, "UpdateItem")
            updated = copy.deepcopy(current) if current else dict(key)
            _apply_update(
                updated,
                kwargs["UpdateExpression"],
                kwargs.get("ExpressionAttributeNames") or {},
                _to_python(kwargs.get("ExpressionAttributeValues") or {}),
            )
            self._items[(key["PK"], key["SK"])] = updated
            if kwargs.get("ReturnValues") == "ALL_NEW":
                return {"Attributes": _to_wire(updated)}
        return {}

    def query(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("query", kwargs))
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = _to_python(kwargs.get("ExpressionAttributeValues") or {})
        index = kwargs.get("IndexName")
        if index:
            pk_attr, sk_attr = INDEXES[index]
        else:
            pk_attr, sk_attr = "PK", "SK"

        with self._lock:
            self._maybe_fail("query")
            key_condition = _Condition(kwargs["KeyConditionExpression"], names, values)
            matches = [
                copy.deepcopy(item)
                for item in self._items.values()
                if pk_attr in item and sk_attr in item and key_condition.evaluate(item)
            ]

        matches.sort(key=lambda item: (item[sk_attr], item["PK"], item["SK"]))
        if not kwargs.get("ScanIndexForward", True):
            matches.reverse()

        start = kwargs.get("ExclusiveStartKey")
        if start:
            start_key = _to_python(start)
            for position, item in enumerate(matches):
                if item["PK"] == start_key["PK"] and item["SK"] == start_key["SK"]:
                    matches = matches[position + 1:]
                    break

        limit = kwargs.get("Limit")
        last_key = None
        if limit and len(matches) > limit:
            matches = matches[:limit]
            tail = matches[-1]
            key_attrs = {"PK", "SK", pk_attr, sk_attr}
            last_key = _to_wire({attr: tail[attr] for attr in key_attrs})

        if kwargs.get("FilterExpression"):
            item_filter = _Condition(kwargs["FilterExpression"], names, values)
            matches = [item for item in matches if item_filter.evaluate(item)]

        response: Dict[str, Any] = {"Items": [_to_wire(item) for item in matches], "Count": len(matches)}
        if last_key:
            response["LastEvaluatedKey"] = last_key
        return response
