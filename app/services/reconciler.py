from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException

from app.core.errors import LedgerWriteError, ProjectionError, ReconciliationError
from app.models.subscription import IgnoredEvent, Transition, TransitionKind
from app.services.event_classifier import classify_event
from app.services.idempotency import event_fingerprint
from app.services.ledger import LedgerRepository, write_grant, write_revoke
from app.services.listing_projector import ListingRepository, project_grant

logger = logging.getLogger(__name__)

OUTCOME_IGNORED = "ignored"
OUTCOME_GRANTED = "granted"
OUTCOME_REVOKED = "revoked"
OUTCOME_REVOKE_NOOP = "revoke_noop"
OUTCOME_REVOKE_FAILED = "revoke_failed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str
    user_id: str | None
    event_type: str
    listing_id: str | None = None


def reconcile_event(
    payload: dict[str, Any],
    ledger: LedgerRepository,
    listings: ListingRepository,
) -> ReconcileResult:
    """
    Apply one authenticated webhook body to the ledger and listings.

    Grant-path storage failures raise a 500 so RevenueCat retries; both
    writes are idempotent so a retry is safe. Revoke-path failures are
    logged and acknowledged to avoid retry storms on terminal states.
    """
    decision = classify_event(payload)

    if isinstance(decision, IgnoredEvent):
        logger.info(
            "revenuecat_webhook_ignored user_id=%s product_id=%s event=%s reason=%s",
            decision.user_id,
            decision.product_id,
            decision.event_type,
            decision.reason,
        )
        return ReconcileResult(OUTCOME_IGNORED, decision.user_id, decision.event_type)

    if decision.kind is TransitionKind.GRANT:
        return _apply_grant(decision, ledger, listings)
    return _apply_revoke(decision, ledger)


def _apply_grant(
    transition: Transition,
    ledger: LedgerRepository,
    listings: ListingRepository,
) -> ReconcileResult:
    fingerprint = event_fingerprint(transition)
    try:
        entry = write_grant(ledger, transition)
        listing_id = project_grant(listings, entry, listing_hint=transition.listing_hint)
    except LedgerWriteError as exc:
        _log_failure("ledger_write_failed", transition, fingerprint, exc)
        raise HTTPException(status_code=500, detail="Subscription ledger write failed") from exc
    except ProjectionError as exc:
        _log_failure("listing_projection_failed", transition, fingerprint, exc)
        raise HTTPException(status_code=500, detail="Listing status update failed") from exc

    return ReconcileResult(OUTCOME_GRANTED, transition.user_id, transition.event_type, listing_id)


def _apply_revoke(transition: Transition, ledger: LedgerRepository) -> ReconcileResult:
    fingerprint = event_fingerprint(transition)
    try:
        entry = write_revoke(ledger, transition)
    except ReconciliationError as exc:
        _log_failure("ledger_revoke_failed", transition, fingerprint, exc)
        return ReconcileResult(OUTCOME_REVOKE_FAILED, transition.user_id, transition.event_type)

    # Listings are left as they are on revoke; hiding paid listings is a
    # separate moderation decision.
    outcome = OUTCOME_REVOKED if entry is not None else OUTCOME_REVOKE_NOOP
    return ReconcileResult(outcome, transition.user_id, transition.event_type)


def _log_failure(
    message: str,
    transition: Transition,
    fingerprint: str,
    exc: Exception,
) -> None:
    logger.error(
        "%s user_id=%s plan_id=%s product_id=%s event=%s event_id=%s fingerprint=%s error=%s",
        message,
        transition.user_id,
        transition.plan_id,
        transition.product_ref,
        transition.event_type,
        transition.event_id,
        fingerprint,
        exc,
    )
