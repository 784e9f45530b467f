from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException, Request

from subledger.core.normalize import normalize_account
from subledger.core.settings import S


def _jwt_enabled() -> bool:
    return bool(S.auth_jwks_url)


@lru_cache(maxsize=1)
def _jwks() -> Dict[str, Any]:
    resp = requests.get(S.auth_jwks_url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _resolve_signing_key(kid: str) -> Dict[str, Any]:
    for key in _jwks().get("keys", []):
        if key.get("kid") == kid:
            return key
    raise HTTPException(401, "Unknown signing key id")


def _decode_token(token: str) -> Dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token header") from exc

    key = _resolve_signing_key(header.get("kid", ""))
    public_key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key))
    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            audience=S.auth_audience or None,
            issuer=S.auth_issuer or None,
            options={"verify_aud": bool(S.auth_audience)},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc


def _decode_unverified_sub(token: str) -> Optional[str]:
    if token.count(".") != 2:
        return None
    _, payload, _ = token.split(".", 2)
    if not payload:
        return None
    padding = "=" * (-len(payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload + padding).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    sub = data.get(S.auth_account_claim) if isinstance(data, dict) else None
    return sub if isinstance(sub, str) and sub.strip() else None


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


async def get_caller_account(request: Request) -> str:
    """
    Resolve the account that is making the request.

    With AUTH_JWKS_URL set the bearer token must be a valid RS256 JWT and the
    account comes from AUTH_ACCOUNT_CLAIM. Without it (local/dev) the
    X-Account header wins, then the bearer token's claim, then the raw token.
    """
    if _jwt_enabled():
        token = extract_bearer_token(request.headers.get("authorization"))
        payload = _decode_token(token)
        account = payload.get(S.auth_account_claim)
        if not account:
            raise HTTPException(401, "Token missing account claim")
        return normalize_account(str(account))

    header_account = request.headers.get("x-account")
    if header_account:
        return normalize_account(header_account)

    token = extract_bearer_token(request.headers.get("authorization"))
    return normalize_account(_decode_unverified_sub(token) or token)


async def get_optional_caller_account(request: Request) -> Optional[str]:
    if not request.headers.get("authorization") and not request.headers.get("x-account"):
        return None
    return await get_caller_account(request)
