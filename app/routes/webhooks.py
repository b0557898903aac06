from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from supabase import Client

from app.services.audit_logger import log_subscription_webhook
from app.services.event_classifier import resolve_subject
from app.services.ledger import LedgerRepository, get_ledger_repository
from app.services.listing_projector import ListingRepository, get_listing_repository
from app.services.reconciler import reconcile_event
from app.services.supabase_client import get_supabase
from app.services.webhook_auth import read_webhook_payload, verify_revenuecat_authorization

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

# The provider dashboard of the first deployment still points here.
legacy_router = APIRouter(tags=["Webhooks"])


@router.post("/revenuecat")
def revenuecat_webhook(
    request: Request,
    _authorized: None = Depends(verify_revenuecat_authorization),
    payload: dict[str, Any] = Depends(read_webhook_payload),
    ledger: LedgerRepository = Depends(get_ledger_repository),
    listings: ListingRepository = Depends(get_listing_repository),
    client: Client = Depends(get_supabase),
):
    # Plain def: the Supabase client blocks, so FastAPI runs this in its threadpool.
    # Dependencies resolve in order, so the body is read only after authorization.
    event = payload.get("event") if isinstance(payload.get("event"), dict) else {}
    event_type = str(event.get("type") or "UNKNOWN").upper()
    subject = resolve_subject(event)

    try:
        result = reconcile_event(payload, ledger, listings)
    except HTTPException:
        log_subscription_webhook(
            client=client,
            user_id=subject,
            event_type=event_type,
            payload=payload,
            outcome="failed",
            request=request,
        )
        raise

    log_subscription_webhook(
        client=client,
        user_id=result.user_id,
        event_type=result.event_type,
        payload=payload,
        outcome=result.outcome,
        request=request,
    )
    return {"received": True}


legacy_router.post("/api/revenuecat-webhook")(revenuecat_webhook)
