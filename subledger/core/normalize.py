from __future__ import annotations

import re

from fastapi import HTTPException

_ACCOUNT_RE = re.compile(r"^[a-z0-9][a-z0-9._:@\-]{0,127}$")


def client_ip_from_request(req) -> str:
    xff = req.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return req.client.host if req.client else "0.0.0.0"


def normalize_account(s: str) -> str:
    # Wallet addresses are case-insensitive hex, so every identity is folded
    # to lower case before it becomes part of a key.
    s = (s or "").strip().lower()
    if not _ACCOUNT_RE.match(s):
        raise HTTPException(400, "Invalid account identifier")
    return s
