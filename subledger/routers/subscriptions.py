from __future__ import annotations

from typing import Callable, Dict, List

from fastapi import APIRouter, Depends, Query, Request

from subledger.auth.deps import get_caller_account
from subledger.core.errors import LedgerError
from subledger.core.normalize import normalize_account
from subledger.models import AutoRenewReq, PlanIdsOut, RenewalDueOut, SubscriptionOut
from subledger.services import subscriptions as ledger
from subledger.services.access import require_caller
from subledger.services.audit import audit_event

router = APIRouter(tags=["subscriptions"])


def _audited(event: str, request: Request, caller: str, plan_id: int, action: Callable[[], Dict]) -> Dict:
    try:
        sub = action()
    except LedgerError as exc:
        audit_event(event, caller, request, outcome="failure", plan_id=plan_id, error=exc.code)
        raise
    audit_event(
        event,
        caller,
        request,
        outcome="success",
        plan_id=plan_id,
        expiry=sub["expiry"],
        auto_renew=sub["auto_renew"],
    )
    return sub


@router.post("/api/plans/{plan_id}/subscribe", response_model=SubscriptionOut)
async def subscribe(plan_id: int, request: Request, caller: str = Depends(get_caller_account)):
    subscriber = require_caller(caller)
    return _audited("subscription_started", request, subscriber, plan_id, lambda: ledger.subscribe(subscriber, plan_id))


@router.post("/api/plans/{plan_id}/renew", response_model=SubscriptionOut)
async def renew(plan_id: int, request: Request, caller: str = Depends(get_caller_account)):
    subscriber = require_caller(caller)
    return _audited("subscription_renewed", request, subscriber, plan_id, lambda: ledger.renew(subscriber, plan_id))


@router.post("/api/plans/{plan_id}/cancel", response_model=SubscriptionOut)
async def cancel(plan_id: int, request: Request, caller: str = Depends(get_caller_account)):
    subscriber = require_caller(caller)
    return _audited("subscription_canceled", request, subscriber, plan_id, lambda: ledger.cancel(subscriber, plan_id))


@router.put("/api/plans/{plan_id}/auto-renew", response_model=SubscriptionOut)
async def set_auto_renew(plan_id: int, body: AutoRenewReq, request: Request, caller: str = Depends(get_caller_account)):
    subscriber = require_caller(caller)
    return _audited(
        "subscription_auto_renew_set",
        request,
        subscriber,
        plan_id,
        lambda: ledger.set_auto_renew(subscriber, plan_id, body.enabled),
    )


@router.get("/api/accounts/{account}/subscriptions/{plan_id}", response_model=SubscriptionOut)
async def get_subscription(account: str, plan_id: int):
    return ledger.get_subscription(normalize_account(account), plan_id)


@router.get("/api/accounts/{account}/subscriptions", response_model=List[SubscriptionOut])
async def list_subscriptions(account: str):
    return ledger.list_subscriptions(normalize_account(account))


@router.get("/api/accounts/{account}/plans", response_model=PlanIdsOut)
async def list_subscriber_plans(account: str):
    account = normalize_account(account)
    return {"account": account, "plan_ids": ledger.list_subscriber_plans(account)}


@router.get("/api/accounts/{account}/renewals", response_model=List[RenewalDueOut])
async def list_renewals_due(account: str, within_seconds: int = Query(default=0, ge=0, le=365 * 24 * 3600)):
    return ledger.list_renewals_due(normalize_account(account), within_seconds)
