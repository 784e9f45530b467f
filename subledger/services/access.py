from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

from subledger.core.errors import Unauthorized
from subledger.core.normalize import normalize_account
from subledger.core.settings import S


def require_caller(caller: Optional[str]) -> str:
    """Every mutation is keyed by the caller, so an anonymous call is refused
    before any record is read."""
    if not caller or not caller.strip():
        raise HTTPException(401, "Missing caller identity")
    account = normalize_account(caller)
    # Custody holds every creator's unwithdrawn earnings; nobody acts as it.
    if account == S.ledger_custody_account:
        raise Unauthorized("The custody account cannot act as a caller")
    return account


def require_owner(caller: Optional[str], owner: str, what: str = "record") -> str:
    account = require_caller(caller)
    if account != normalize_account(owner):
        raise Unauthorized(f"Only the owner may access this {what}")
    return account
