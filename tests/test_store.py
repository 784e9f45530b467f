import unittest
from types import SimpleNamespace
from unittest.mock import Mock, patch

from botocore.exceptions import ClientError
from fastapi import HTTPException

from subledger.core import store
from subledger.core.errors import PaymentFailed, TransactionConflict
from subledger.core.store import LEDGER, DynamoBackend, MemoryBackend, Transaction, VersionConflict


def canceled_error(*codes):
    return ClientError(
        {
            "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
            "CancellationReasons": [{"Code": code} for code in codes],
        },
        "TransactWriteItems",
    )


class TestMemoryBackend(unittest.TestCase):
    def setUp(self):
        self.backend = MemoryBackend()
        patcher = patch.object(store, "_backend", self.backend)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_commit_bumps_version_and_applies_all_writes(self):
        txn = Transaction(self.backend)
        txn.put(LEDGER, {"pk": "A", "sk": "1", "value": 1})
        txn.put(LEDGER, {"pk": "A", "sk": "2", "value": 2})
        self.assertIsNone(self.backend.get_item(LEDGER, "A", "1"))
        txn.commit()

        self.assertEqual(self.backend.get_item(LEDGER, "A", "1")["version"], 1)
        self.assertEqual([it["sk"] for it in self.backend.query(LEDGER, "A")], ["1", "2"])

    def test_stale_read_is_rejected(self):
        first = Transaction(self.backend)
        first.put(LEDGER, {"pk": "A", "sk": "1", "value": 1})
        first.commit()

        stale = Transaction(self.backend)
        stale.get(LEDGER, "A", "1")
        fresh = Transaction(self.backend)
        item = fresh.get(LEDGER, "A", "1")
        item["value"] = 2
        fresh.put(LEDGER, item)
        fresh.commit()

        item = {"pk": "A", "sk": "1", "value": 3}
        stale.put(LEDGER, item)
        with self.assertRaises(VersionConflict):
            stale.commit()
        self.assertEqual(self.backend.get_item(LEDGER, "A", "1")["value"], 2)

    def test_read_only_dependency_is_checked(self):
        txn = Transaction(self.backend)
        txn.get(LEDGER, "A", "guard")
        txn.put(LEDGER, {"pk": "A", "sk": "1"})
        self.backend.put_item(LEDGER, {"pk": "A", "sk": "guard", "version": 1})
        with self.assertRaises(VersionConflict):
            txn.commit()
        self.assertIsNone(self.backend.get_item(LEDGER, "A", "1"))

    def test_create_fails_when_key_exists(self):
        self.backend.put_item(LEDGER, {"pk": "A", "sk": "1", "version": 1})
        txn = Transaction(self.backend)
        txn.create(LEDGER, {"pk": "A", "sk": "1"})
        with self.assertRaises(VersionConflict):
            txn.commit()

    def test_staged_writes_are_visible_inside_the_transaction(self):
        txn = Transaction(self.backend)
        txn.put(LEDGER, {"pk": "A", "sk": "1", "value": 5})
        self.assertEqual(txn.get(LEDGER, "A", "1")["value"], 5)

    def test_run_transaction_discards_writes_on_error(self):
        def op(txn):
            txn.put(LEDGER, {"pk": "A", "sk": "1"})
            raise PaymentFailed()

        with self.assertRaises(PaymentFailed):
            store.run_transaction(op)
        self.assertIsNone(self.backend.get_item(LEDGER, "A", "1"))

    def test_run_transaction_retries_conflicts(self):
        calls = []

        def op(txn):
            calls.append(1)
            item = txn.get(LEDGER, "A", "counter") or {"pk": "A", "sk": "counter", "n": 0}
            if len(calls) == 1:
                # Another writer lands between our read and our commit.
                self.backend.put_item(LEDGER, {"pk": "A", "sk": "counter", "n": 10, "version": 1})
            item["n"] = int(item["n"]) + 1
            txn.put(LEDGER, item)
            return item["n"]

        with patch.object(store, "record_txn_conflict") as conflict:
            result = store.run_transaction(op)

        self.assertEqual(result, 11)
        self.assertEqual(len(calls), 2)
        conflict.assert_called_once()
        self.assertEqual(self.backend.get_item(LEDGER, "A", "counter")["version"], 2)

    def test_run_transaction_gives_up_after_max_attempts(self):
        def op(txn):
            txn.get(LEDGER, "A", "1")
            current = self.backend.get_item(LEDGER, "A", "1")
            version = int(current["version"]) if current else 0
            self.backend.put_item(LEDGER, {"pk": "A", "sk": "1", "version": version + 1})
            txn.put(LEDGER, {"pk": "A", "sk": "1"})

        with patch.object(store, "record_txn_conflict"):
            with self.assertRaises(TransactionConflict) as ctx:
                store.run_transaction(op, attempts=2)
        self.assertEqual(ctx.exception.status_code, 409)


class TestDynamoBackend(unittest.TestCase):
    def build(self):
        tables = SimpleNamespace(
            ledger=Mock(),
            asset=Mock(),
            audit=Mock(),
        )
        tables.ledger.name = "ledger-table"
        tables.asset.name = "asset-table"
        client = Mock()
        return DynamoBackend(tables=tables, client=client), tables, client

    def test_commit_builds_version_conditions(self):
        backend, _, client = self.build()
        backend.commit(
            {("asset", "ACCOUNT#a", "BALANCE"): 3},
            {
                ("ledger", "PLAN#1", "META"): ({"pk": "PLAN#1", "sk": "META", "version": 1}, 0),
                ("ledger", "COUNTER", "PLAN"): ({"pk": "COUNTER", "sk": "PLAN", "version": 5}, 4),
            },
        )
        ops = client.transact_write_items.call_args.kwargs["TransactItems"]
        self.assertEqual(len(ops), 3)
        self.assertEqual(ops[0]["Put"]["TableName"], "ledger-table")
        self.assertEqual(ops[0]["Put"]["ConditionExpression"], "attribute_not_exists(pk)")
        self.assertEqual(ops[1]["Put"]["ConditionExpression"], "#v = :v")
        self.assertEqual(ops[1]["Put"]["ExpressionAttributeValues"], {":v": 4})
        check = ops[2]["ConditionCheck"]
        self.assertEqual(check["TableName"], "asset-table")
        self.assertEqual(check["Key"], {"pk": "ACCOUNT#a", "sk": "BALANCE"})
        self.assertEqual(check["ExpressionAttributeValues"], {":v": 3})

    def test_commit_without_writes_is_a_noop(self):
        backend, _, client = self.build()
        backend.commit({}, {})
        client.transact_write_items.assert_not_called()

    def test_condition_failure_maps_to_version_conflict(self):
        backend, _, client = self.build()
        client.transact_write_items.side_effect = canceled_error("None", "ConditionalCheckFailed")
        with self.assertRaises(VersionConflict):
            backend.commit({}, {("ledger", "A", "1"): ({"pk": "A", "sk": "1"}, 0)})

    def test_other_client_errors_surface_as_500(self):
        backend, _, client = self.build()
        client.transact_write_items.side_effect = ClientError(
            {"Error": {"Code": "ValidationException", "Message": "bad item"}},
            "TransactWriteItems",
        )
        with self.assertRaises(HTTPException) as ctx:
            backend.commit({}, {("ledger", "A", "1"): ({"pk": "A", "sk": "1"}, 0)})
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("bad item", ctx.exception.detail)

    def test_query_follows_pagination(self):
        backend, tables, _ = self.build()
        tables.ledger.query.side_effect = [
            {"Items": [{"sk": "PLAN#1"}], "LastEvaluatedKey": {"pk": "PLANS", "sk": "PLAN#1"}},
            {"Items": [{"sk": "PLAN#2"}]},
        ]
        items = backend.query("ledger", "PLANS", "PLAN#")
        self.assertEqual([it["sk"] for it in items], ["PLAN#1", "PLAN#2"])
        second = tables.ledger.query.call_args_list[1].kwargs
        self.assertEqual(second["ExclusiveStartKey"], {"pk": "PLANS", "sk": "PLAN#1"})

    def test_get_item_uses_consistent_read(self):
        backend, tables, _ = self.build()
        tables.ledger.get_item.return_value = {"Item": {"pk": "PLAN#1", "sk": "META"}}
        self.assertEqual(backend.get_item("ledger", "PLAN#1", "META")["pk"], "PLAN#1")
        self.assertTrue(tables.ledger.get_item.call_args.kwargs["ConsistentRead"])
