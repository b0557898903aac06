import json
import logging
from typing import Any

import httpx
from fastapi import Request
from postgrest.exceptions import APIError
from supabase import Client

logger = logging.getLogger(__name__)

AUDIT_LOGS_TABLE = "audit_logs"
PAYLOAD_PREVIEW_LIMIT = 2000


def create_audit_log(
    client: Client,
    event_type: str,
    event_description: str,
    request: Request | None = None,
    user_id=None,
) -> bool:
    ip_address = None
    user_agent = None

    if request is not None:
        if request.client:
            ip_address = request.client.host
        user_agent = request.headers.get("user-agent")

    row = {
        "user_id": user_id,
        "event_type": event_type,
        "event_description": event_description,
        "ip_address": ip_address,
        "user_agent": user_agent,
    }

    try:
        client.table(AUDIT_LOGS_TABLE).insert(row).execute()
    except (APIError, httpx.HTTPError):
        # Auditing must never change the webhook response.
        logger.exception("audit_log_failed event_type=%s user_id=%s", event_type, user_id)
        return False
    return True


def log_subscription_webhook(
    client: Client,
    user_id: Any,
    event_type: str,
    payload: dict[str, Any],
    outcome: str,
    request: Request | None = None,
) -> bool:
    compact = json.dumps(payload, default=str)[:PAYLOAD_PREVIEW_LIMIT]
    return create_audit_log(
        client=client,
        user_id=user_id,
        event_type="SUBSCRIPTION_WEBHOOK_EVENT",
        event_description=f"event={event_type} outcome={outcome} payload={compact}",
        request=request,
    )
