from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, Request

from subledger.auth.deps import get_caller_account
from subledger.core.errors import LedgerError
from subledger.core.normalize import normalize_account
from subledger.models import EarningsEntryOut, EarningsOut, WithdrawOut
from subledger.services import earnings as vault
from subledger.services.access import require_caller
from subledger.services.audit import audit_event

router = APIRouter(tags=["earnings"])


@router.get("/api/creators/{creator}/earnings", response_model=EarningsOut)
async def get_earnings(creator: str):
    return vault.get_earnings(normalize_account(creator))


@router.get("/api/creators/{creator}/earnings/entries", response_model=List[EarningsEntryOut])
async def list_earnings_entries(
    creator: str,
    limit: int = Query(default=100, ge=1, le=1000),
    caller: str = Depends(get_caller_account),
):
    return vault.list_earnings_entries(caller, normalize_account(creator), limit)


@router.post("/api/earnings/withdraw", response_model=WithdrawOut)
async def withdraw(request: Request, caller: str = Depends(get_caller_account)):
    creator = require_caller(caller)
    try:
        result = vault.withdraw(creator)
    except LedgerError as exc:
        audit_event("earnings_withdrawn", creator, request, outcome="failure", error=exc.code)
        raise
    audit_event("earnings_withdrawn", creator, request, outcome="success", amount=result["amount"])
    return result
