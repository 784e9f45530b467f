from __future__ import annotations

import os
from dataclasses import dataclass

@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Auth (optional JWKS-backed JWT validation; dev fallback otherwise)
    auth_jwks_url: str = os.environ.get("AUTH_JWKS_URL", "")
    auth_issuer: str = os.environ.get("AUTH_ISSUER", "")
    auth_audience: str = os.environ.get("AUTH_AUDIENCE", "")
    auth_account_claim: str = os.environ.get("AUTH_ACCOUNT_CLAIM", "sub")

    # DynamoDB tables
    ledger_table_name: str = os.environ.get("LEDGER_TABLE_NAME", "subscription_ledger")
    asset_table_name: str = os.environ.get("ASSET_TABLE_NAME", "asset_ledger")
    audit_table_name: str = os.environ.get("AUDIT_TABLE_NAME", "ledger_audit")

    # Transactions
    ledger_backend: str = os.environ.get("LEDGER_BACKEND", "dynamodb").lower()
    ledger_txn_max_attempts: int = int(os.environ.get("LEDGER_TXN_MAX_ATTEMPTS", "3"))

    # Asset
    asset_symbol: str = os.environ.get("ASSET_SYMBOL", "USDC")
    asset_decimals: int = int(os.environ.get("ASSET_DECIMALS", "6"))
    asset_faucet_enabled: bool = os.environ.get("ASSET_FAUCET_ENABLED", "1") not in ("0", "false", "False")
    asset_faucet_whole_tokens: int = int(os.environ.get("ASSET_FAUCET_WHOLE_TOKENS", "1000"))
    ledger_custody_account: str = os.environ.get("LEDGER_CUSTODY_ACCOUNT", "subscription-ledger").strip().lower()

    # Plans
    plan_name_max_length: int = int(os.environ.get("PLAN_NAME_MAX_LENGTH", "128"))

    # Audit
    audit_log_enabled: bool = os.environ.get("AUDIT_LOG_ENABLED", "1") not in ("0", "false", "False")
    audit_ttl_days: int = int(os.environ.get("AUDIT_TTL_DAYS", "90"))

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")

    # Metrics
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")


S = Settings()
