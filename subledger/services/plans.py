from __future__ import annotations

from typing import Any, Dict, List, Optional

from subledger.core.errors import InvalidPlanParameters, PlanNotFound
from subledger.core.settings import S
from subledger.core.store import LEDGER, Transaction, query_items, read_item, run_transaction
from subledger.core.time import now_ts
from subledger.metrics import record_plan_created
from subledger.services.asset import format_units

COUNTER_PK = "COUNTER"
PLAN_COUNTER_SK = "PLAN"
ALL_PLANS_PK = "PLANS"


def pk_plan(plan_id: int) -> str:
    return f"PLAN#{plan_id}"


def sk_plan(plan_id: int) -> str:
    # Zero padded so a key-ordered query returns creation order.
    return f"PLAN#{plan_id:012d}"


def pk_creator(creator: str) -> str:
    return f"CREATOR#{creator}"


def plan_out(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "plan_id": int(item["plan_id"]),
        "creator": item["creator"],
        "name": item["name"],
        "price": int(item["price"]),
        "display_price": format_units(item["price"]),
        "duration_seconds": int(item["duration_seconds"]),
        "created_at": int(item.get("created_at") or 0),
    }


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_plan_params(name: Any, price: Any, duration_seconds: Any) -> str:
    name = name.strip() if isinstance(name, str) else ""
    if not name:
        raise InvalidPlanParameters("Plan name must not be empty")
    if len(name) > S.plan_name_max_length:
        raise InvalidPlanParameters(f"Plan name must be at most {S.plan_name_max_length} characters")
    if not _is_positive_int(price):
        raise InvalidPlanParameters("Plan price must be a positive integer")
    if not _is_positive_int(duration_seconds):
        raise InvalidPlanParameters("Plan duration must be a positive number of seconds")
    return name


def build_plan_items(plan: Dict[str, Any]) -> List[Dict[str, Any]]:
    base = plan.copy()
    base.update({"pk": pk_plan(plan["plan_id"]), "sk": "META", "entity": "plan"})
    all_index = plan.copy()
    all_index.update({"pk": ALL_PLANS_PK, "sk": sk_plan(plan["plan_id"]), "entity": "plan_index"})
    creator_index = plan.copy()
    creator_index.update({"pk": pk_creator(plan["creator"]), "sk": sk_plan(plan["plan_id"]), "entity": "plan_index"})
    return [base, all_index, creator_index]


def create_plan(caller: str, name: Any, price: Any, duration_seconds: Any, *, now: Optional[int] = None) -> Dict[str, Any]:
    name = validate_plan_params(name, price, duration_seconds)
    ts = now if now is not None else now_ts()

    def op(txn: Transaction) -> Dict[str, Any]:
        counter = txn.get(LEDGER, COUNTER_PK, PLAN_COUNTER_SK) or {"pk": COUNTER_PK, "sk": PLAN_COUNTER_SK}
        plan_id = int(counter.get("last_id", 0)) + 1
        counter["last_id"] = plan_id
        txn.put(LEDGER, counter)
        plan = {
            "plan_id": plan_id,
            "creator": caller,
            "name": name,
            "price": int(price),
            "duration_seconds": int(duration_seconds),
            "created_at": ts,
        }
        for item in build_plan_items(plan):
            txn.create(LEDGER, item)
        return plan

    plan = run_transaction(op)
    record_plan_created()
    return plan_out(plan)


def get_plan(plan_id: Any, txn: Optional[Transaction] = None) -> Dict[str, Any]:
    if not _is_positive_int(plan_id):
        raise PlanNotFound(f"Plan {plan_id} not found")
    item = read_item(LEDGER, pk_plan(plan_id), "META", txn)
    if not item:
        raise PlanNotFound(f"Plan {plan_id} not found")
    return plan_out(item)


def list_all_plans() -> List[Dict[str, Any]]:
    return [plan_out(item) for item in query_items(LEDGER, ALL_PLANS_PK, "PLAN#")]


def list_plans_by_creator(creator: str) -> List[int]:
    return [int(item["plan_id"]) for item in query_items(LEDGER, pk_creator(creator), "PLAN#")]
