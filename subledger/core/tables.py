from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    ledger: Any
    asset: Any
    audit: Any

T = Tables(
    ledger=ddb.Table(S.ledger_table_name),
    asset=ddb.Table(S.asset_table_name),
    audit=ddb.Table(S.audit_table_name),
)
