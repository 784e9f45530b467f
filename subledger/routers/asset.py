from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from subledger.auth.deps import get_caller_account
from subledger.core.normalize import normalize_account
from subledger.models import AllowanceOut, ApproveReq, AssetBalanceOut, AssetInfoOut, FaucetOut
from subledger.services import asset
from subledger.services.access import require_caller
from subledger.services.audit import audit_event

router = APIRouter(prefix="/api/asset", tags=["asset"])


@router.get("", response_model=AssetInfoOut)
async def asset_info():
    return asset.asset_info()


@router.get("/accounts/{account}", response_model=AssetBalanceOut)
async def balance_of(account: str):
    account = normalize_account(account)
    balance = asset.balance_of(account)
    return {"account": account, "balance": balance, "display_balance": asset.format_units(balance)}


@router.get("/accounts/{account}/allowance", response_model=AllowanceOut)
async def allowance(account: str, spender: Optional[str] = Query(default=None)):
    owner = normalize_account(account)
    spender = normalize_account(spender) if spender else asset.custody_account()
    return {"owner": owner, "spender": spender, "allowance": asset.allowance(owner, spender)}


@router.post("/approve", response_model=AllowanceOut)
async def approve(body: ApproveReq, request: Request, caller: str = Depends(get_caller_account)):
    owner = require_caller(caller)
    result = asset.approve(owner, body.spender or asset.custody_account(), body.amount)
    audit_event("asset_approved", owner, request, outcome="success", spender=result["spender"], amount=result["allowance"])
    return result


@router.post("/faucet", response_model=FaucetOut)
async def faucet(request: Request, caller: str = Depends(get_caller_account)):
    account = require_caller(caller)
    result = asset.faucet(account)
    audit_event("asset_faucet_claimed", account, request, outcome="success", amount=result["minted"])
    return result
