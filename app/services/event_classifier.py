from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from app.core.plans import FAR_FUTURE_OFFSET, is_one_off_product, resolve_plan
from app.models.subscription import IgnoredEvent, LedgerStatus, Transition, TransitionKind

logger = logging.getLogger(__name__)

GRANT_EVENT_TYPES = frozenset(
    {
        "INITIAL_PURCHASE",
        "RENEWAL",
        "PRODUCT_CHANGE",
        "NON_RENEWING_PURCHASE",
        "TEMPORARY_ENTITLEMENT_GRANT",
    }
)

REVOKE_EVENT_STATUS = {
    "CANCELLATION": LedgerStatus.CANCELLED,
    "EXPIRATION": LedgerStatus.EXPIRED,
}

# Logged louder than other ignored events; nothing in the ledger changes.
WARN_EVENT_TYPES = frozenset({"BILLING_ISSUE"})

ANONYMOUS_PREFIX = "$RCAnonymousID:"

START_FIELDS = ("period_start_at_ms", "event_timestamp_ms")
END_FIELDS = ("period_end_at_ms", "expiration_at_ms")


def classify_event(
    payload: dict[str, Any],
    now: Callable[[], datetime] | None = None,
) -> Transition | IgnoredEvent:
    """
    Map a RevenueCat webhook body to a ledger transition.

    Never raises for bad input: anything that cannot be acted on comes back
    as an IgnoredEvent with a reason, so the handler can acknowledge it.
    """
    clock = now or _utcnow
    event = payload.get("event")
    if not isinstance(event, dict):
        return IgnoredEvent(event_type="UNKNOWN", reason="missing_event")

    event_type = str(event.get("type") or "UNKNOWN").strip().upper()
    product_id = _clean(event.get("product_id"))
    user_id = resolve_subject(event)

    def ignored(reason: str) -> IgnoredEvent:
        return IgnoredEvent(event_type=event_type, reason=reason, user_id=user_id, product_id=product_id)

    if event_type in WARN_EVENT_TYPES:
        logger.warning(
            "revenuecat_billing_issue user_id=%s product_id=%s",
            user_id,
            product_id,
        )
        return ignored("billing_issue")

    if event_type in GRANT_EVENT_TYPES:
        kind = TransitionKind.GRANT
    elif event_type in REVOKE_EVENT_STATUS:
        kind = TransitionKind.REVOKE
    else:
        return ignored("unhandled_event_type")

    if not user_id:
        return ignored("missing_subject")
    if not product_id:
        return ignored("missing_product")

    plan_id = resolve_plan(product_id)
    if plan_id is None:
        return ignored("product_not_in_plan")

    common = {
        "user_id": user_id,
        "plan_id": plan_id,
        "event_type": event_type,
        "customer_ref": _clean(event.get("original_app_user_id")) or user_id,
        "product_ref": product_id,
        "entitlement_ref": resolve_entitlement(event),
        "event_id": _clean(event.get("id")),
        "listing_hint": resolve_listing_hint(event),
    }

    if kind is TransitionKind.REVOKE:
        return Transition(
            kind=kind,
            revoke_status=REVOKE_EVENT_STATUS[event_type],
            end=_first_timestamp(event, ("expiration_at_ms",)),
            **common,
        )

    start, end = resolve_window(event, product_id, clock)
    if end is not None and end < start:
        logger.warning(
            "revenuecat_window_invalid user_id=%s product_id=%s start=%s end=%s",
            user_id,
            product_id,
            start.isoformat(),
            end.isoformat(),
        )
        return ignored("window_end_before_start")

    return Transition(kind=kind, start=start, end=end, **common)


def resolve_window(
    event: dict[str, Any],
    product_id: str,
    now: Callable[[], datetime],
) -> tuple[datetime, datetime | None]:
    start = _first_timestamp(event, START_FIELDS) or now()
    end = _first_timestamp(event, END_FIELDS)
    if end is None and is_one_off_product(product_id):
        end = start + FAR_FUTURE_OFFSET
    return start, end


def resolve_subject(event: dict[str, Any]) -> str | None:
    """
    The app logs in to RevenueCat with the Supabase profile id. Anonymous
    RevenueCat ids cannot be mapped to a profile and are skipped.
    """
    for field in ("app_user_id", "original_app_user_id"):
        candidate = _clean(event.get(field))
        if candidate and not candidate.startswith(ANONYMOUS_PREFIX):
            return candidate
    return None


def resolve_entitlement(event: dict[str, Any]) -> str | None:
    entitlement_ids = event.get("entitlement_ids")
    if isinstance(entitlement_ids, list):
        for value in entitlement_ids:
            cleaned = _clean(value)
            if cleaned:
                return cleaned
    return _clean(event.get("entitlement_id"))


def resolve_listing_hint(event: dict[str, Any]) -> str | None:
    hint = _clean(event.get("external_id"))
    if hint:
        return hint
    attributes = event.get("subscriber_attributes")
    if isinstance(attributes, dict):
        external = attributes.get("external_id")
        if isinstance(external, dict):
            return _clean(external.get("value"))
    return None


def parse_epoch_ms(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _first_timestamp(event: dict[str, Any], fields: Iterable[str]) -> datetime | None:
    for field in fields:
        parsed = parse_epoch_ms(event.get(field))
        if parsed is not None:
            return parsed
    return None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
