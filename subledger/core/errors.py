from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


class LedgerError(HTTPException):
    """Base for every failure a ledger operation reports to its caller.

    Raising one aborts the surrounding transaction, so nothing staged by the
    operation is committed. Each subclass pins an HTTP status and a stable
    ``code`` clients can branch on.
    """

    status = 400
    code = "ledger_error"
    message = "Ledger operation failed"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(self.status, detail or self.message)


class InvalidPlanParameters(LedgerError):
    status = 400
    code = "invalid_plan_parameters"
    message = "Plan requires a name, a positive price and a positive duration"


class PlanNotFound(LedgerError):
    status = 404
    code = "plan_not_found"
    message = "Plan not found"


class AlreadyActive(LedgerError):
    status = 409
    code = "already_active"
    message = "Subscription is already active"


class NoSubscriptionRecord(LedgerError):
    status = 404
    code = "no_subscription_record"
    message = "No subscription record for this plan"


class CancelNotAllowed(LedgerError):
    status = 409
    code = "cancel_not_allowed"
    message = "Only an active subscription can be canceled"


class PaymentFailed(LedgerError):
    status = 402
    code = "payment_failed"
    message = "Payment failed"


class NoEarnings(LedgerError):
    status = 409
    code = "no_earnings"
    message = "No earnings to withdraw"


class Unauthorized(LedgerError):
    status = 403
    code = "unauthorized"
    message = "Caller is not allowed to act on this record"


class InvalidAmount(LedgerError):
    status = 400
    code = "invalid_amount"
    message = "Amount must be a non-negative integer"


class TransactionConflict(LedgerError):
    status = 409
    code = "transaction_conflict"
    message = "Conflict: records were updated concurrently, retry the request"


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})
