from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from subledger.core.normalize import client_ip_from_request
from subledger.core.settings import S
from subledger.core.store import AUDIT, get_backend
from subledger.core.time import now_ts

log = logging.getLogger(__name__)


def with_ttl(item: Dict[str, Any], ttl_epoch: int) -> Dict[str, Any]:
    item[S.ddb_ttl_attr] = int(ttl_epoch)
    return item


def audit_event(event: str, account: str, request=None, **fields: Any) -> None:
    if not S.audit_log_enabled:
        return
    ts = now_ts()
    payload: Dict[str, Any] = {"event": event, "account": account, "ts": ts, **fields}
    if request is not None:
        payload["ip"] = client_ip_from_request(request)
        payload["user_agent"] = request.headers.get("user-agent", "")[:256]

    item = {
        "pk": f"ACCOUNT#{account}",
        "sk": f"AUDIT#{ts:012d}#{uuid.uuid4().hex}",
        "event": event,
        "outcome": str(fields.get("outcome", "info")),
        "details": payload,
        "created_at": ts,
    }
    # Best effort: the audited operation has already committed or been refused.
    try:
        get_backend().put_item(AUDIT, with_ttl(item, ts + S.audit_ttl_days * 86400))
    except Exception:
        log.warning("failed to persist audit event %s for %s", event, account, exc_info=True)
