"""
Redelivery safety for the RevenueCat reconciler.

There is no processed-event table. Safety comes from two properties of the
writes themselves:

- A GRANT row is a pure function of the event, written with an upsert on
  (profile_id, plan_id). Writing the same event twice leaves the same row.
- A REVOKE is an update predicated on the statuses it may move away from,
  so a replayed EXPIRATION finds nothing left to change.

Events for the same pair are not ordered against each other. A late GRANT
for an earlier period overwrites a newer REVOKE; last write wins. Ordering
would need a per-pair event sequence column, which the ledger does not have.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any

from app.models.subscription import LedgerStatus, Transition

REVOKE_PRIOR_STATUSES: dict[LedgerStatus, tuple[LedgerStatus, ...]] = {
    LedgerStatus.CANCELLED: (LedgerStatus.ACTIVE,),
    LedgerStatus.EXPIRED: (LedgerStatus.ACTIVE, LedgerStatus.CANCELLED),
}


def prior_statuses_for(target: LedgerStatus) -> tuple[LedgerStatus, ...]:
    try:
        return REVOKE_PRIOR_STATUSES[target]
    except KeyError:
        raise ValueError(f"{target.value} is not a revoke target") from None


def build_grant_row(transition: Transition) -> dict[str, Any]:
    """
    Deterministic ledger row for a GRANT. No wall-clock columns are added
    here, so a redelivered event converges on exactly the same row.
    """
    return {
        "profile_id": transition.user_id,
        "plan_id": transition.plan_id,
        "status": LedgerStatus.ACTIVE.value,
        "start_date": _iso(transition.start),
        "end_date": _iso(transition.end),
        "revenuecat_customer_id": transition.customer_ref,
        "revenuecat_product_id": transition.product_ref,
        "revenuecat_entitlement_id": transition.entitlement_ref,
    }


def build_revoke_changes(transition: Transition) -> dict[str, Any]:
    changes: dict[str, Any] = {"status": transition.revoke_status.value}
    if transition.end is not None:
        changes["end_date"] = _iso(transition.end)
    return changes


def event_fingerprint(transition: Transition) -> str:
    """
    Short stable digest used to correlate log lines of redelivered events
    during manual reconciliation. Not persisted and not used for dedup.
    """
    parts = [
        transition.event_id or "",
        transition.event_type,
        transition.user_id,
        str(transition.plan_id),
        transition.product_ref or "",
        _iso(transition.start) or "",
        _iso(transition.end) or "",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
