import asyncio
import json
import unittest
from contextlib import ExitStack
from types import SimpleNamespace
from unittest.mock import patch

from fastapi import HTTPException

from subledger.core import store
from subledger.core.errors import AlreadyActive, InvalidPlanParameters, NoEarnings, Unauthorized, ledger_error_handler
from subledger.core.settings import S
from subledger.core.store import AUDIT, MemoryBackend
from subledger.models import ApproveReq, AutoRenewReq, PlanCreateReq
from subledger.routers import asset as asset_routes
from subledger.routers import earnings as earnings_routes
from subledger.routers import plans as plan_routes
from subledger.routers import subscriptions as subscription_routes
from subledger.services import audit


def run_async(coro):
    return asyncio.run(coro)


def build_request():
    return SimpleNamespace(headers={"user-agent": "agent"}, client=None, state=SimpleNamespace())


class RouteCase(unittest.TestCase):
    def setUp(self):
        self.backend = MemoryBackend()
        self.audits = {}
        with ExitStack() as stack:
            stack.enter_context(patch.object(store, "_backend", self.backend))
            for module in (asset_routes, earnings_routes, plan_routes, subscription_routes):
                self.audits[module.__name__] = stack.enter_context(patch.object(module, "audit_event"))
            self.addCleanup(stack.pop_all().close)

    def audit_calls(self, module):
        return [(c.args[0], c.kwargs.get("outcome")) for c in self.audits[module.__name__].call_args_list]

    def create_plan(self, creator="creator", **fields):
        body = PlanCreateReq(**{"name": "Basic", "price": 100, "duration_seconds": 86400, **fields})
        return run_async(plan_routes.create_plan(body, build_request(), caller=creator))

    def fund(self, account):
        req = build_request()
        run_async(asset_routes.faucet(req, caller=account))
        run_async(asset_routes.approve(ApproveReq(amount=10_000), req, caller=account))


class TestPlanRoutes(RouteCase):
    def test_create_and_read_plans(self):
        plan = self.create_plan()
        self.assertEqual(plan["plan_id"], 1)
        self.assertEqual(self.audit_calls(plan_routes), [("plan_created", "success")])

        by_display = self.create_plan(creator="other", price=None, display_price="2.5")
        self.assertEqual(by_display["price"], 2_500_000)

        self.assertEqual(run_async(plan_routes.get_plan(1))["name"], "Basic")
        listed = run_async(plan_routes.list_plans(viewer=None))
        self.assertEqual([p["plan_id"] for p in listed], [1, 2])
        self.assertNotIn("viewer_active", listed[0])
        creator_plans = run_async(plan_routes.list_creator_plans("CREATOR"))
        self.assertEqual(creator_plans, {"account": "creator", "plan_ids": [1]})

    def test_invalid_plan(self):
        with self.assertRaises(InvalidPlanParameters):
            self.create_plan(price=0)
        with self.assertRaises(InvalidPlanParameters):
            self.create_plan(price=None, display_price="abc")
        with self.assertRaises(InvalidPlanParameters):
            self.create_plan(price=None)
        with self.assertRaises(InvalidPlanParameters):
            self.create_plan(price=1.5)
        with self.assertRaises(InvalidPlanParameters):
            self.create_plan(price="abc")
        with self.assertRaises(InvalidPlanParameters):
            self.create_plan(duration_seconds="soon")
        with self.assertRaises(InvalidPlanParameters):
            self.create_plan(name=42)

    def test_list_plans_with_viewer_status(self):
        self.create_plan(price=1)
        self.create_plan(price=1)
        self.fund("alice")
        run_async(subscription_routes.subscribe(2, build_request(), caller="alice"))

        listed = run_async(plan_routes.list_plans(viewer="alice"))
        self.assertEqual([p["viewer_active"] for p in listed], [False, True])
        self.assertEqual(listed[0]["viewer_expiry"], 0)


class TestSubscriptionRoutes(RouteCase):
    def test_lifecycle(self):
        self.create_plan()
        self.fund("alice")
        req = build_request()

        sub = run_async(subscription_routes.subscribe(1, req, caller="alice"))
        self.assertTrue(sub["is_active"])
        with self.assertRaises(AlreadyActive):
            run_async(subscription_routes.subscribe(1, req, caller="alice"))

        sub = run_async(subscription_routes.set_auto_renew(1, AutoRenewReq(enabled=True), req, caller="alice"))
        self.assertTrue(sub["auto_renew"])
        sub = run_async(subscription_routes.renew(1, req, caller="alice"))
        self.assertEqual(sub["payments_count"], 2)
        sub = run_async(subscription_routes.cancel(1, req, caller="alice"))
        self.assertEqual(sub["expiry"], 0)

        self.assertEqual(
            self.audit_calls(subscription_routes),
            [
                ("subscription_started", "success"),
                ("subscription_started", "failure"),
                ("subscription_auto_renew_set", "success"),
                ("subscription_renewed", "success"),
                ("subscription_canceled", "success"),
            ],
        )
        failure = self.audits[subscription_routes.__name__].call_args_list[1]
        self.assertEqual(failure.kwargs["error"], "already_active")

        read = run_async(subscription_routes.get_subscription("ALICE", 1))
        self.assertEqual(read["status"], "canceled")
        self.assertEqual(run_async(subscription_routes.list_subscriber_plans("alice"))["plan_ids"], [1])
        self.assertEqual(len(run_async(subscription_routes.list_subscriptions("alice"))), 1)
        self.assertEqual(run_async(subscription_routes.list_renewals_due("alice", 0)), [])

    def test_custody_identity_is_refused(self):
        self.create_plan()
        with self.assertRaises(Unauthorized):
            run_async(subscription_routes.subscribe(1, build_request(), caller=S.ledger_custody_account))
        self.assertEqual(self.audit_calls(subscription_routes), [])

    def test_anonymous_caller_is_refused(self):
        self.create_plan()
        with self.assertRaises(HTTPException) as ctx:
            run_async(subscription_routes.subscribe(1, build_request(), caller=""))
        self.assertEqual(ctx.exception.status_code, 401)


class TestEarningsAndAssetRoutes(RouteCase):
    def test_withdraw_flow(self):
        self.create_plan()
        self.fund("alice")
        req = build_request()
        run_async(subscription_routes.subscribe(1, req, caller="alice"))

        self.assertEqual(run_async(earnings_routes.get_earnings("creator"))["amount"], 100)
        result = run_async(earnings_routes.withdraw(req, caller="creator"))
        self.assertEqual(result["display_amount"], "0.000100")
        with self.assertRaises(NoEarnings):
            run_async(earnings_routes.withdraw(req, caller="creator"))
        self.assertEqual(
            self.audit_calls(earnings_routes),
            [("earnings_withdrawn", "success"), ("earnings_withdrawn", "failure")],
        )

        balance = run_async(asset_routes.balance_of("creator"))
        self.assertEqual(balance["balance"], 100)
        entries = run_async(earnings_routes.list_earnings_entries("creator", limit=10, caller="creator"))
        self.assertEqual(len(entries), 2)

    def test_asset_info_and_allowance(self):
        info = run_async(asset_routes.asset_info())
        self.assertEqual(info["decimals"], 6)
        self.fund("bob")
        allowance = run_async(asset_routes.allowance("bob", spender=None))
        self.assertEqual(allowance["spender"], info["custody_account"])
        self.assertEqual(allowance["allowance"], 10_000)


class TestErrorHandlingAndAudit(unittest.TestCase):
    def test_ledger_error_response_body(self):
        resp = run_async(ledger_error_handler(build_request(), AlreadyActive("busy")))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(json.loads(resp.body), {"error": "already_active", "detail": "busy"})

    def test_audit_event_persists_with_ttl(self):
        backend = MemoryBackend()
        with patch.object(store, "_backend", backend), patch.object(audit, "now_ts", return_value=1000):
            audit.audit_event("plan_created", "alice", build_request(), outcome="success", plan_id=1)
        rows = backend.query(AUDIT, "ACCOUNT#alice", "AUDIT#")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["outcome"], "success")
        self.assertEqual(rows[0]["details"]["ip"], "0.0.0.0")
        self.assertEqual(rows[0][audit.S.ddb_ttl_attr], 1000 + audit.S.audit_ttl_days * 86400)

    def test_audit_failures_do_not_propagate(self):
        class Broken:
            def put_item(self, table, item):
                raise RuntimeError("table missing")

        with patch.object(store, "_backend", Broken()):
            audit.audit_event("plan_created", "alice")

    def test_routes_are_registered(self):
        from subledger.main import app

        paths = set(app.openapi()["paths"])
        for path in (
            "/api/plans",
            "/api/plans/{plan_id}/subscribe",
            "/api/plans/{plan_id}/auto-renew",
            "/api/accounts/{account}/renewals",
            "/api/earnings/withdraw",
            "/api/asset/faucet",
        ):
            self.assertIn(path, paths)
