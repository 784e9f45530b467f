from __future__ import annotations

from typing import Any, Dict, List, Optional

from subledger.core.errors import AlreadyActive, CancelNotAllowed, NoSubscriptionRecord, PaymentFailed
from subledger.core.store import LEDGER, Transaction, query_items, read_item, run_transaction
from subledger.core.time import now_ts
from subledger.metrics import record_cancellation, record_payment, record_payment_failure
from subledger.services.asset import custody_account, format_units, transfer_from
from subledger.services.earnings import credit_earnings
from subledger.services.plans import get_plan, sk_plan

SUBSCRIBER_META_SK = "META"


def pk_subscriber(subscriber: str) -> str:
    return f"SUBSCRIBER#{subscriber}"


def subscription_status(item: Optional[Dict[str, Any]], now: int) -> str:
    if not item:
        return "never_subscribed"
    expiry = int(item.get("expiry", 0))
    if expiry > now:
        return "active"
    if expiry == 0:
        return "canceled"
    return "expired"


def subscription_out(subscriber: str, plan_id: int, item: Optional[Dict[str, Any]], now: int) -> Dict[str, Any]:
    item = item or {}
    expiry = int(item.get("expiry", 0))
    return {
        "subscriber": subscriber,
        "plan_id": plan_id,
        "expiry": expiry,
        "auto_renew": bool(item.get("auto_renew", False)),
        "is_active": expiry > now,
        "status": subscription_status(item or None, now),
        "first_subscribed_at": int(item["first_subscribed_at"]) if item.get("first_subscribed_at") else None,
        "last_paid_at": int(item["last_paid_at"]) if item.get("last_paid_at") else None,
        "payments_count": int(item.get("payments_count", 0)),
    }


def _new_record(txn: Transaction, subscriber: str, plan_id: int, ts: int) -> Dict[str, Any]:
    meta = txn.get(LEDGER, pk_subscriber(subscriber), SUBSCRIBER_META_SK) or {
        "pk": pk_subscriber(subscriber),
        "sk": SUBSCRIBER_META_SK,
        "record_count": 0,
    }
    seq = int(meta.get("record_count", 0)) + 1
    meta["record_count"] = seq
    txn.put(LEDGER, meta)
    return {
        "pk": pk_subscriber(subscriber),
        "sk": sk_plan(plan_id),
        "entity": "subscription",
        "subscriber": subscriber,
        "plan_id": plan_id,
        "seq": seq,
        "expiry": 0,
        "auto_renew": False,
        "first_subscribed_at": ts,
        "payments_count": 0,
    }


def _collect_payment(txn: Transaction, plan: Dict[str, Any], subscriber: str, record: Dict[str, Any], ts: int) -> None:
    # Pull into custody, credit the creator and restart the period, all
    # staged in one transaction.
    custody = custody_account()
    transfer_from(txn, custody, subscriber, custody, plan["price"])
    credit_earnings(txn, plan["creator"], plan["price"], plan_id=plan["plan_id"], subscriber=subscriber, now=ts)
    record["expiry"] = ts + plan["duration_seconds"]
    record["last_paid_at"] = ts
    record["payments_count"] = int(record.get("payments_count", 0)) + 1
    txn.put(LEDGER, record)


def _pay(kind: str, caller: str, plan_id: Any, now: Optional[int], *, require_record: bool) -> Dict[str, Any]:
    ts = now if now is not None else now_ts()

    def op(txn: Transaction) -> Dict[str, Any]:
        plan = get_plan(plan_id, txn)
        record = txn.get(LEDGER, pk_subscriber(caller), sk_plan(plan["plan_id"]))
        if record is None:
            if require_record:
                raise NoSubscriptionRecord()
            record = _new_record(txn, caller, plan["plan_id"], ts)
        elif kind == "subscribe" and int(record.get("expiry", 0)) > ts:
            raise AlreadyActive(f"Subscription to plan {plan['plan_id']} is active until {int(record['expiry'])}")
        _collect_payment(txn, plan, caller, record, ts)
        return {"plan": plan, "record": record}

    try:
        result = run_transaction(op)
    except PaymentFailed:
        record_payment_failure(kind)
        raise
    plan = result["plan"]
    record_payment(kind, plan["price"])
    return subscription_out(caller, plan["plan_id"], result["record"], ts)


def subscribe(caller: str, plan_id: Any, *, now: Optional[int] = None) -> Dict[str, Any]:
    """Start (or restart after expiry/cancel) a subscription by paying the plan price."""
    return _pay("subscribe", caller, plan_id, now, require_record=False)


def renew(caller: str, plan_id: Any, *, now: Optional[int] = None) -> Dict[str, Any]:
    """Pay again; the new period starts now whatever the old expiry was."""
    return _pay("renew", caller, plan_id, now, require_record=True)


def set_auto_renew(caller: str, plan_id: Any, enabled: bool, *, now: Optional[int] = None) -> Dict[str, Any]:
    ts = now if now is not None else now_ts()

    def op(txn: Transaction) -> Dict[str, Any]:
        plan = get_plan(plan_id, txn)
        record = txn.get(LEDGER, pk_subscriber(caller), sk_plan(plan["plan_id"]))
        if record is None:
            raise NoSubscriptionRecord()
        if bool(record.get("auto_renew", False)) != bool(enabled):
            record["auto_renew"] = bool(enabled)
            txn.put(LEDGER, record)
        return subscription_out(caller, plan["plan_id"], record, ts)

    return run_transaction(op)


def cancel(caller: str, plan_id: Any, *, now: Optional[int] = None) -> Dict[str, Any]:
    ts = now if now is not None else now_ts()

    def op(txn: Transaction) -> Dict[str, Any]:
        plan = get_plan(plan_id, txn)
        record = txn.get(LEDGER, pk_subscriber(caller), sk_plan(plan["plan_id"]))
        if record is None:
            raise NoSubscriptionRecord()
        if int(record.get("expiry", 0)) <= ts:
            raise CancelNotAllowed()
        record["expiry"] = 0
        record["auto_renew"] = False
        record["canceled_at"] = ts
        txn.put(LEDGER, record)
        return subscription_out(caller, plan["plan_id"], record, ts)

    result = run_transaction(op)
    record_cancellation()
    return result


def get_subscription(subscriber: str, plan_id: int, *, now: Optional[int] = None) -> Dict[str, Any]:
    ts = now if now is not None else now_ts()
    item = read_item(LEDGER, pk_subscriber(subscriber), sk_plan(plan_id)) if plan_id > 0 else None
    return subscription_out(subscriber, plan_id, item, ts)


def _records(subscriber: str) -> List[Dict[str, Any]]:
    items = query_items(LEDGER, pk_subscriber(subscriber), "PLAN#")
    items.sort(key=lambda it: int(it.get("seq", 0)))
    return items


def list_subscriber_plans(subscriber: str) -> List[int]:
    return [int(item["plan_id"]) for item in _records(subscriber)]


def list_subscriptions(subscriber: str, *, now: Optional[int] = None) -> List[Dict[str, Any]]:
    ts = now if now is not None else now_ts()
    return [subscription_out(subscriber, int(item["plan_id"]), item, ts) for item in _records(subscriber)]


def list_renewals_due(subscriber: str, within_seconds: int = 0, *, now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Auto-renew subscriptions that are expired or expire within
    ``within_seconds``. Read only: whoever acts on this list still calls
    ``renew``."""
    ts = now if now is not None else now_ts()
    due: List[Dict[str, Any]] = []
    for item in _records(subscriber):
        if not item.get("auto_renew"):
            continue
        expiry = int(item.get("expiry", 0))
        if expiry - ts > within_seconds:
            continue
        plan = get_plan(int(item["plan_id"]))
        due.append({
            "plan_id": plan["plan_id"],
            "name": plan["name"],
            "price": plan["price"],
            "display_price": format_units(plan["price"]),
            "expiry": expiry,
            "seconds_until_expiry": max(0, expiry - ts),
            "expired": expiry <= ts,
        })
    return due
