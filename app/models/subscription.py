from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import TypeAdapter


SUBSCRIPTIONS_TABLE = "subscriptions"
LEDGER_CONFLICT_TARGET = "profile_id,plan_id"


class LedgerStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class TransitionKind(str, Enum):
    GRANT = "GRANT"
    REVOKE = "REVOKE"
    IGNORE = "IGNORE"


@dataclass(frozen=True)
class Transition:
    """Normalized result of classifying one provider event."""

    kind: TransitionKind
    user_id: str
    plan_id: int
    event_type: str
    start: datetime | None = None
    end: datetime | None = None
    revoke_status: LedgerStatus | None = None
    customer_ref: str | None = None
    product_ref: str | None = None
    entitlement_ref: str | None = None
    event_id: str | None = None
    listing_hint: str | None = None


@dataclass(frozen=True)
class IgnoredEvent:
    event_type: str
    reason: str
    user_id: str | None = None
    product_id: str | None = None

    kind: TransitionKind = TransitionKind.IGNORE


@dataclass(frozen=True)
class LedgerEntry:
    user_id: str
    plan_id: int
    status: LedgerStatus
    start: datetime
    end: datetime | None
    customer_ref: str | None = None
    product_ref: str | None = None
    entitlement_ref: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "LedgerEntry":
        return cls(
            user_id=str(row["profile_id"]),
            plan_id=int(row["plan_id"]),
            status=LedgerStatus(row["status"]),
            start=_as_datetime(row["start_date"]),
            end=_as_datetime(row.get("end_date")),
            customer_ref=row.get("revenuecat_customer_id"),
            product_ref=row.get("revenuecat_product_id"),
            entitlement_ref=row.get("revenuecat_entitlement_id"),
        )


_DATETIME = TypeAdapter(datetime)


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    # PostgREST trims trailing zeros from fractional seconds ("...:20.12+00:00").
    return _DATETIME.validate_python(value)
