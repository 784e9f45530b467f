from __future__ import annotations

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Request

from subledger.auth.deps import get_caller_account, get_optional_caller_account
from subledger.core.errors import InvalidAmount, InvalidPlanParameters
from subledger.core.normalize import normalize_account
from subledger.core.time import now_ts
from subledger.models import PlanCreateReq, PlanIdsOut, PlanOut
from subledger.services import plans as registry
from subledger.services import subscriptions as ledger
from subledger.services.access import require_caller
from subledger.services.asset import to_units
from subledger.services.audit import audit_event

router = APIRouter(tags=["plans"])


def _resolve_price(body: PlanCreateReq) -> Any:
    if body.price is not None or body.display_price is None:
        return body.price
    try:
        return to_units(body.display_price)
    except InvalidAmount as exc:
        raise InvalidPlanParameters(exc.detail) from exc


@router.post("/api/plans", response_model=PlanOut)
async def create_plan(body: PlanCreateReq, request: Request, caller: str = Depends(get_caller_account)):
    creator = require_caller(caller)
    plan = registry.create_plan(creator, body.name, _resolve_price(body), body.duration_seconds)
    audit_event(
        "plan_created",
        creator,
        request,
        outcome="success",
        plan_id=plan["plan_id"],
        price=plan["price"],
        duration_seconds=plan["duration_seconds"],
    )
    return plan


@router.get("/api/plans", response_model=List[PlanOut])
async def list_plans(viewer: Optional[str] = Depends(get_optional_caller_account)):
    plans = registry.list_all_plans()
    if not viewer:
        return plans
    ts = now_ts()
    for plan in plans:
        sub = ledger.get_subscription(viewer, plan["plan_id"], now=ts)
        plan["viewer_expiry"] = sub["expiry"]
        plan["viewer_active"] = sub["is_active"]
    return plans


@router.get("/api/plans/{plan_id}", response_model=PlanOut)
async def get_plan(plan_id: int):
    return registry.get_plan(plan_id)


@router.get("/api/creators/{creator}/plans", response_model=PlanIdsOut)
async def list_creator_plans(creator: str):
    creator = normalize_account(creator)
    return {"account": creator, "plan_ids": registry.list_plans_by_creator(creator)}
