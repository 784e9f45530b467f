from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from fastapi import HTTPException

from subledger.core.errors import InvalidAmount, PaymentFailed
from subledger.core.normalize import normalize_account
from subledger.core.settings import S
from subledger.core.store import ASSET, Transaction, read_item, run_transaction
from subledger.core.time import now_ts

BALANCE_SK = "BALANCE"


def pk_account(account: str) -> str:
    return f"ACCOUNT#{account}"


def sk_allowance(spender: str) -> str:
    return f"ALLOWANCE#{spender}"


def decimals() -> int:
    return S.asset_decimals


def custody_account() -> str:
    return S.ledger_custody_account


def faucet_amount() -> int:
    return S.asset_faucet_whole_tokens * 10 ** decimals()


def to_units(display: Any) -> int:
    try:
        value = Decimal(str(display).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(f"Not a decimal amount: {display!r}") from exc
    units = value.scaleb(decimals())
    if not value.is_finite() or units != units.to_integral_value():
        raise InvalidAmount(f"Amount has more than {decimals()} decimal places")
    return int(units)


def format_units(amount: Any) -> str:
    return format(Decimal(int(amount)).scaleb(-decimals()), "f")


def _amount(item: Optional[Dict[str, Any]]) -> int:
    return int(item.get("amount", 0)) if item else 0


def _require_amount(amount: Any, *, allow_zero: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount()
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount("Amount must be positive" if not allow_zero else None)
    return amount


def balance_of(account: str, txn: Optional[Transaction] = None) -> int:
    return _amount(read_item(ASSET, pk_account(account), BALANCE_SK, txn))


def allowance(owner: str, spender: str, txn: Optional[Transaction] = None) -> int:
    return _amount(read_item(ASSET, pk_account(owner), sk_allowance(spender), txn))


def _set_amount(txn: Transaction, account: str, sk: str, amount: int, **extra: Any) -> None:
    txn.put(ASSET, {"pk": pk_account(account), "sk": sk, "account": account, "amount": amount, **extra})


def _debit(txn: Transaction, account: str, amount: int) -> None:
    current = balance_of(account, txn)
    if current < amount:
        raise PaymentFailed(f"Insufficient balance: {current} < {amount}")
    _set_amount(txn, account, BALANCE_SK, current - amount)


def _credit(txn: Transaction, account: str, amount: int) -> None:
    _set_amount(txn, account, BALANCE_SK, balance_of(account, txn) + amount)


def transfer(txn: Transaction, sender: str, recipient: str, amount: int) -> None:
    """Move ``amount`` units inside ``txn``; nothing lands until it commits."""
    if amount <= 0:
        raise PaymentFailed("Transfer amount must be positive")
    _debit(txn, sender, amount)
    _credit(txn, recipient, amount)


def transfer_from(txn: Transaction, spender: str, owner: str, recipient: str, amount: int) -> None:
    """ERC20 transferFrom: ``spender`` moves ``owner``'s units against the
    allowance ``owner`` granted it."""
    if amount <= 0:
        raise PaymentFailed("Transfer amount must be positive")
    if owner == custody_account():
        raise PaymentFailed("Custody funds cannot pay through an allowance")
    granted = allowance(owner, spender, txn)
    if granted < amount:
        raise PaymentFailed(f"Insufficient allowance: {granted} < {amount}")
    _set_amount(txn, owner, sk_allowance(spender), granted - amount, spender=spender)
    transfer(txn, owner, recipient, amount)


def approve(caller: str, spender: str, amount: int) -> Dict[str, Any]:
    spender = normalize_account(spender)
    amount = _require_amount(amount, allow_zero=True)

    def op(txn: Transaction) -> None:
        _set_amount(txn, caller, sk_allowance(spender), amount, spender=spender, updated_at=now_ts())

    run_transaction(op)
    return {"owner": caller, "spender": spender, "allowance": amount}


def faucet(caller: str) -> Dict[str, Any]:
    if not S.asset_faucet_enabled:
        raise HTTPException(403, "Faucet is disabled")
    minted = faucet_amount()

    def op(txn: Transaction) -> int:
        _credit(txn, caller, minted)
        return balance_of(caller, txn)

    balance = run_transaction(op)
    return {"account": caller, "minted": minted, "balance": balance}


def asset_info() -> Dict[str, Any]:
    return {
        "symbol": S.asset_symbol,
        "decimals": decimals(),
        "custody_account": custody_account(),
        "faucet_enabled": S.asset_faucet_enabled,
        "faucet_amount": faucet_amount(),
    }
