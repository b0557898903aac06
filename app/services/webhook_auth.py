from __future__ import annotations

import hmac
import json
import logging
import os
from typing import Any

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


def verify_revenuecat_authorization(request: Request) -> None:
    """
    RevenueCat sends back whatever Authorization value was configured in its
    dashboard, so the whole header must equal the secret exactly.
    Fails closed when the secret is not configured.
    """
    secret = os.getenv("REVENUECAT_WEBHOOK_SECRET")
    if not secret:
        logger.error("revenuecat_webhook_rejected reason=secret_not_configured")
        raise HTTPException(status_code=500, detail="RevenueCat webhook secret not configured")

    supplied = request.headers.get("authorization")
    if supplied is None:
        logger.warning("revenuecat_webhook_rejected reason=missing_authorization")
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8")):
        logger.warning("revenuecat_webhook_rejected reason=invalid_authorization")
        raise HTTPException(status_code=401, detail="Unauthorized")


def parse_webhook_body(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        logger.warning("revenuecat_webhook_rejected reason=invalid_json size=%s", len(raw_body))
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if not isinstance(payload, dict):
        logger.warning("revenuecat_webhook_rejected reason=payload_not_object")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    return payload


async def read_webhook_payload(request: Request) -> dict[str, Any]:
    """Reads the body on the event loop so the handler itself can stay synchronous."""
    return parse_webhook_body(await request.body())
