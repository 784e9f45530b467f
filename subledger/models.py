from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field

class PlanCreateReq(BaseModel):
    # Either price (smallest units) or display_price (e.g. "9.99") is required.
    # Type and range checks happen in the plan registry so they surface as
    # invalid_plan_parameters rather than a 422 validation error.
    name: Any = ""
    price: Optional[Any] = None
    display_price: Optional[str] = None
    duration_seconds: Any = 0

class PlanOut(BaseModel):
    plan_id: int
    creator: str
    name: str
    price: int
    display_price: str
    duration_seconds: int
    created_at: int
    viewer_expiry: Optional[int] = None
    viewer_active: Optional[bool] = None

class PlanIdsOut(BaseModel):
    account: str
    plan_ids: List[int] = Field(default_factory=list)

class AutoRenewReq(BaseModel):
    enabled: bool

class SubscriptionOut(BaseModel):
    subscriber: str
    plan_id: int
    expiry: int
    auto_renew: bool
    is_active: bool
    status: str
    first_subscribed_at: Optional[int] = None
    last_paid_at: Optional[int] = None
    payments_count: int = 0

class RenewalDueOut(BaseModel):
    plan_id: int
    name: str
    price: int
    display_price: str
    expiry: int
    seconds_until_expiry: int
    expired: bool

class EarningsOut(BaseModel):
    creator: str
    amount: int
    display_amount: str
    total_earned: int
    total_withdrawn: int

class EarningsEntryOut(BaseModel):
    entry_id: str
    kind: str
    amount: int
    plan_id: Optional[int] = None
    subscriber: Optional[str] = None
    created_at: int

class WithdrawOut(BaseModel):
    creator: str
    amount: int
    display_amount: str
    balance: int

class AssetInfoOut(BaseModel):
    symbol: str
    decimals: int
    custody_account: str
    faucet_enabled: bool
    faucet_amount: int

class AssetBalanceOut(BaseModel):
    account: str
    balance: int
    display_balance: str

class AllowanceOut(BaseModel):
    owner: str
    spender: str
    allowance: int

class ApproveReq(BaseModel):
    amount: int
    # Defaults to the ledger's custody account, the spender subscriptions pull through.
    spender: Optional[str] = None

class FaucetOut(BaseModel):
    account: str
    minted: int
    balance: int
