from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from fastapi import HTTPException

from subledger.core.errors import TransactionConflict
from subledger.core.settings import S
from subledger.metrics import record_txn_conflict

log = logging.getLogger(__name__)

LEDGER = "ledger"
ASSET = "asset"
AUDIT = "audit"

ItemKey = Tuple[str, str, str]
R = TypeVar("R")

_CONFLICT_REASONS = {"ConditionalCheckFailed", "TransactionConflict"}


class VersionConflict(Exception):
    """An item changed between being read and the commit."""


def _ddb_error(exc: ClientError) -> HTTPException:
    return HTTPException(500, f"DynamoDB error: {exc.response.get('Error', {}).get('Message', 'unknown')}")


def _version_condition(expected: int) -> Dict[str, Any]:
    if expected == 0:
        return {"ConditionExpression": "attribute_not_exists(pk)"}
    return {
        "ConditionExpression": "#v = :v",
        "ExpressionAttributeNames": {"#v": "version"},
        "ExpressionAttributeValues": {":v": expected},
    }


class MemoryBackend:
    """Single-writer in-process store.

    Items are keyed by (table, pk, sk). ``commit`` checks every expected
    version and applies the writes under one lock, so a commit is either
    fully visible or not at all.
    """

    def __init__(self) -> None:
        self._items: Dict[ItemKey, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_item(self, table: str, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get((table, pk, sk))
            return copy.deepcopy(item) if item is not None else None

    def query(self, table: str, pk: str, sk_prefix: str = "") -> List[Dict[str, Any]]:
        with self._lock:
            rows = [
                copy.deepcopy(item)
                for (t, p, s), item in self._items.items()
                if t == table and p == pk and s.startswith(sk_prefix)
            ]
        rows.sort(key=lambda it: it["sk"])
        return rows

    def put_item(self, table: str, item: Dict[str, Any]) -> None:
        with self._lock:
            self._items[(table, item["pk"], item["sk"])] = copy.deepcopy(item)

    def commit(self, checks: Dict[ItemKey, int], writes: Dict[ItemKey, Tuple[Dict[str, Any], int]]) -> None:
        expected = dict(checks)
        expected.update({key: version for key, (_, version) in writes.items()})
        with self._lock:
            for key, version in expected.items():
                current = self._items.get(key)
                current_version = int(current.get("version", 0)) if current is not None else 0
                if current_version != version:
                    raise VersionConflict(f"{key} is at version {current_version}, expected {version}")
            for key, (item, _) in writes.items():
                self._items[key] = copy.deepcopy(item)


class DynamoBackend:
    """DynamoDB store. Commits go through TransactWriteItems with one
    version condition per touched item."""

    def __init__(self, tables: Any = None, client: Any = None) -> None:
        if tables is None or client is None:
            from subledger.core.aws import ddb_client
            from subledger.core.tables import T

            tables = tables or T
            client = client or ddb_client
        self._tables = tables
        self._client = client

    def _table(self, table: str) -> Any:
        return getattr(self._tables, table)

    def get_item(self, table: str, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self._table(table).get_item(Key={"pk": pk, "sk": sk}, ConsistentRead=True)
        except ClientError as exc:
            raise _ddb_error(exc) from exc
        return resp.get("Item")

    def query(self, table: str, pk: str, sk_prefix: str = "") -> List[Dict[str, Any]]:
        condition = Key("pk").eq(pk)
        if sk_prefix:
            condition = condition & Key("sk").begins_with(sk_prefix)
        kwargs: Dict[str, Any] = {"KeyConditionExpression": condition, "ConsistentRead": True}
        items: List[Dict[str, Any]] = []
        try:
            while True:
                resp = self._table(table).query(**kwargs)
                items.extend(resp.get("Items", []))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except ClientError as exc:
            raise _ddb_error(exc) from exc
        return items

    def put_item(self, table: str, item: Dict[str, Any]) -> None:
        try:
            self._table(table).put_item(Item=item)
        except ClientError as exc:
            raise _ddb_error(exc) from exc

    def commit(self, checks: Dict[ItemKey, int], writes: Dict[ItemKey, Tuple[Dict[str, Any], int]]) -> None:
        ops: List[Dict[str, Any]] = []
        for (table, _, _), (item, version) in writes.items():
            put = {"TableName": self._table(table).name, "Item": item}
            put.update(_version_condition(version))
            ops.append({"Put": put})
        for (table, pk, sk), version in checks.items():
            check = {"TableName": self._table(table).name, "Key": {"pk": pk, "sk": sk}}
            check.update(_version_condition(version))
            ops.append({"ConditionCheck": check})
        if not ops:
            return
        try:
            self._client.transact_write_items(TransactItems=ops)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            if error.get("Code") == "TransactionCanceledException":
                reasons = {r.get("Code") for r in exc.response.get("CancellationReasons", []) if r}
                if not reasons or reasons & _CONFLICT_REASONS:
                    raise VersionConflict(error.get("Message", "transaction canceled")) from exc
            raise _ddb_error(exc) from exc


class Transaction:
    """Unit of work over one backend.

    Reads remember the version they saw, writes are staged, and ``commit``
    hands both to the backend. Nothing is written before ``commit``.
    """

    def __init__(self, backend: Any) -> None:
        self._backend = backend
        self._versions: Dict[ItemKey, int] = {}
        self._staged: Dict[ItemKey, Dict[str, Any]] = {}

    def get(self, table: str, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        key = (table, pk, sk)
        if key in self._staged:
            return copy.deepcopy(self._staged[key])
        item = self._backend.get_item(table, pk, sk)
        self._versions.setdefault(key, int(item.get("version", 0)) if item else 0)
        return item

    def query(self, table: str, pk: str, sk_prefix: str = "") -> List[Dict[str, Any]]:
        return self._backend.query(table, pk, sk_prefix)

    def put(self, table: str, item: Dict[str, Any]) -> None:
        key = (table, item["pk"], item["sk"])
        if key not in self._versions:
            self.get(table, item["pk"], item["sk"])
        staged = dict(item)
        staged["version"] = self._versions[key] + 1
        self._staged[key] = staged

    def create(self, table: str, item: Dict[str, Any]) -> None:
        # Rows with fresh unique keys; the commit fails if the key exists.
        key = (table, item["pk"], item["sk"])
        self._versions.setdefault(key, 0)
        self.put(table, item)

    @property
    def pending(self) -> int:
        return len(self._staged)

    def commit(self) -> None:
        if not self._staged:
            return
        writes = {key: (item, self._versions[key]) for key, item in self._staged.items()}
        checks = {key: version for key, version in self._versions.items() if key not in self._staged}
        self._backend.commit(checks, writes)


_backend: Any = None


def get_backend() -> Any:
    global _backend
    if _backend is None:
        _backend = MemoryBackend() if S.ledger_backend == "memory" else DynamoBackend()
    return _backend


def set_backend(backend: Any) -> None:
    global _backend
    _backend = backend


def read_item(table: str, pk: str, sk: str, txn: Optional[Transaction] = None) -> Optional[Dict[str, Any]]:
    if txn is not None:
        return txn.get(table, pk, sk)
    return get_backend().get_item(table, pk, sk)


def query_items(table: str, pk: str, sk_prefix: str = "") -> List[Dict[str, Any]]:
    return get_backend().query(table, pk, sk_prefix)


def run_transaction(fn: Callable[[Transaction], R], *, attempts: Optional[int] = None) -> R:
    """Run ``fn`` inside a fresh transaction and commit what it staged.

    An exception from ``fn`` propagates and discards the staged writes. A
    version conflict at commit re-runs ``fn`` from scratch.
    """
    backend = get_backend()
    max_attempts = max(1, attempts or S.ledger_txn_max_attempts)
    for attempt in range(1, max_attempts + 1):
        txn = Transaction(backend)
        result = fn(txn)
        try:
            txn.commit()
        except VersionConflict as exc:
            record_txn_conflict()
            log.debug("ledger transaction conflict (attempt %d/%d): %s", attempt, max_attempts, exc)
            continue
        return result
    raise TransactionConflict()
