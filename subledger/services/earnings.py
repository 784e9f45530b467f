from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from subledger.core.errors import NoEarnings
from subledger.core.store import LEDGER, Transaction, query_items, read_item, run_transaction
from subledger.core.time import now_ts
from subledger.metrics import record_withdrawal
from subledger.services.access import require_owner
from subledger.services.asset import custody_account, format_units, transfer
from subledger.services.plans import pk_creator

EARNINGS_SK = "EARNINGS"


def _earnings_row(txn: Transaction, creator: str) -> Dict[str, Any]:
    return txn.get(LEDGER, pk_creator(creator), EARNINGS_SK) or {
        "pk": pk_creator(creator),
        "sk": EARNINGS_SK,
        "creator": creator,
        "amount": 0,
        "total_earned": 0,
        "total_withdrawn": 0,
    }


def _save_entry(txn: Transaction, creator: str, kind: str, amount: int, ts: int, **fields: Any) -> None:
    entry_id = uuid.uuid4().hex
    txn.create(
        LEDGER,
        {
            "pk": pk_creator(creator),
            "sk": f"LEDGER#{ts:012d}#{entry_id}",
            "entity": "ledger",
            "entry_id": entry_id,
            "creator": creator,
            "kind": kind,
            "amount": amount,
            "created_at": ts,
            **{k: v for k, v in fields.items() if v is not None},
        },
    )


def credit_earnings(
    txn: Transaction,
    creator: str,
    amount: int,
    *,
    plan_id: Optional[int] = None,
    subscriber: Optional[str] = None,
    now: Optional[int] = None,
) -> None:
    """Credit a collected payment to ``creator``.

    Only the subscription payment path calls this, inside the same
    transaction that pulled the funds into custody.
    """
    ts = now if now is not None else now_ts()
    row = _earnings_row(txn, creator)
    row["amount"] = int(row.get("amount", 0)) + amount
    row["total_earned"] = int(row.get("total_earned", 0)) + amount
    row["updated_at"] = ts
    txn.put(LEDGER, row)
    _save_entry(txn, creator, "credit", amount, ts, plan_id=plan_id, subscriber=subscriber)


def earnings_out(creator: str, item: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    item = item or {}
    amount = int(item.get("amount", 0))
    return {
        "creator": creator,
        "amount": amount,
        "display_amount": format_units(amount),
        "total_earned": int(item.get("total_earned", 0)),
        "total_withdrawn": int(item.get("total_withdrawn", 0)),
    }


def get_balance(creator: str) -> int:
    item = read_item(LEDGER, pk_creator(creator), EARNINGS_SK)
    return int(item.get("amount", 0)) if item else 0


def get_earnings(creator: str) -> Dict[str, Any]:
    return earnings_out(creator, read_item(LEDGER, pk_creator(creator), EARNINGS_SK))


def withdraw(caller: str, *, now: Optional[int] = None) -> Dict[str, Any]:
    """Pay the caller's whole balance out of custody and zero it."""
    ts = now if now is not None else now_ts()

    def op(txn: Transaction) -> int:
        row = _earnings_row(txn, caller)
        amount = int(row.get("amount", 0))
        if amount <= 0:
            raise NoEarnings()
        transfer(txn, custody_account(), caller, amount)
        row["amount"] = 0
        row["total_withdrawn"] = int(row.get("total_withdrawn", 0)) + amount
        row["updated_at"] = ts
        txn.put(LEDGER, row)
        _save_entry(txn, caller, "withdrawal", amount, ts)
        return amount

    amount = run_transaction(op)
    record_withdrawal(amount)
    return {"creator": caller, "amount": amount, "display_amount": format_units(amount), "balance": 0}


def _entry_out(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "entry_id": item["entry_id"],
        "kind": item["kind"],
        "amount": int(item["amount"]),
        "plan_id": int(item["plan_id"]) if item.get("plan_id") is not None else None,
        "subscriber": item.get("subscriber"),
        "created_at": int(item["created_at"]),
    }


def list_earnings_entries(caller: str, creator: str, limit: int = 100) -> List[Dict[str, Any]]:
    require_owner(caller, creator, "earnings history")
    items = query_items(LEDGER, pk_creator(creator), "LEDGER#")
    items.sort(key=lambda it: it["sk"], reverse=True)
    return [_entry_out(item) for item in items[:limit]]
