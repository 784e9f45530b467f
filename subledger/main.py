from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from subledger.core.errors import LedgerError, ledger_error_handler
from subledger.core.settings import S
from subledger.metrics import metrics_endpoint, metrics_middleware, set_app_info
from subledger.routers.asset import router as asset_router
from subledger.routers.earnings import router as earnings_router
from subledger.routers.plans import router as plans_router
from subledger.routers.subscriptions import router as subscriptions_router

def create_app() -> FastAPI:
    app = FastAPI(title="Subscription Ledger", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)
    if S.metrics_enabled:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.include_router(plans_router)
    app.include_router(subscriptions_router)
    app.include_router(earnings_router)
    app.include_router(asset_router)

    return app

app = create_app()
