from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from fastapi import Depends
from postgrest.exceptions import APIError
from supabase import Client

from app.core.errors import ProjectionError
from app.models.listing import LISTINGS_TABLE, ListingStatus
from app.models.subscription import LedgerEntry, LedgerStatus
from app.services.supabase_client import get_supabase

logger = logging.getLogger(__name__)


class ListingRepository(ABC):

    @abstractmethod
    def window_projected(self, owner_id: str, start: str | None, end: str | None) -> bool:
        """Whether a listing of owner_id already carries this subscription window."""

    @abstractmethod
    def find_pending_payment(self, owner_id: str, listing_id: str | None = None) -> str | None:
        """
        Id of the newest listing owned by owner_id in pending_payment, or of
        listing_id when given and it matches the same filters.
        """

    @abstractmethod
    def promote(self, listing_id: str, owner_id: str, changes: dict[str, Any]) -> bool:
        """
        Apply changes to one listing only while it is still pending_payment.
        Returns whether a row changed.
        """


class SupabaseListingRepository(ListingRepository):
    def __init__(self, client: Client):
        self.client = client

    def window_projected(self, owner_id: str, start: str | None, end: str | None) -> bool:
        query = (
            self.client
            .table(LISTINGS_TABLE)
            .select("listing_id")
            .eq("owner_id", owner_id)
            .eq("subscription_start_date", start)
        )
        query = query.is_("subscription_end_date", "null") if end is None else query.eq("subscription_end_date", end)

        try:
            resp = query.limit(1).execute()
        except (APIError, httpx.HTTPError) as exc:
            raise ProjectionError(f"listings lookup failed: {exc}") from exc

        return bool(resp.data)

    def find_pending_payment(self, owner_id: str, listing_id: str | None = None) -> str | None:
        query = (
            self.client
            .table(LISTINGS_TABLE)
            .select("listing_id")
            .eq("owner_id", owner_id)
            .eq("status", ListingStatus.PENDING_PAYMENT.value)
        )
        if listing_id is not None:
            query = query.eq("listing_id", listing_id)

        try:
            resp = query.order("created_at", desc=True).limit(1).execute()
        except (APIError, httpx.HTTPError) as exc:
            raise ProjectionError(f"listings lookup failed: {exc}") from exc

        data = resp.data or []
        return str(data[0]["listing_id"]) if data else None

    def promote(self, listing_id: str, owner_id: str, changes: dict[str, Any]) -> bool:
        try:
            resp = (
                self.client
                .table(LISTINGS_TABLE)
                .update(changes)
                .eq("listing_id", listing_id)
                .eq("owner_id", owner_id)
                .eq("status", ListingStatus.PENDING_PAYMENT.value)
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            raise ProjectionError(f"listings update failed: {exc}") from exc

        return bool(resp.data)


def get_listing_repository(client: Client = Depends(get_supabase)) -> ListingRepository:
    return SupabaseListingRepository(client)


def project_grant(
    repo: ListingRepository,
    entry: LedgerEntry,
    listing_hint: str | None = None,
) -> str | None:
    """
    Move the user's newest pending_payment listing to pending_review after
    an entitlement became active. Returns the promoted listing id, or None
    when there was nothing to promote. Review and publication happen
    elsewhere.
    """
    if entry.status is not LedgerStatus.ACTIVE:
        return None

    start = entry.start.isoformat() if entry.start else None
    end = entry.end.isoformat() if entry.end else None

    # A redelivered grant must not promote a second pending listing. The
    # check and the promotion are separate statements, so this holds for
    # sequential redeliveries only; two concurrent ones can each promote.
    if repo.window_projected(entry.user_id, start, end):
        logger.info("listing_projection_noop user_id=%s reason=window_already_projected", entry.user_id)
        return None

    listing_id = None
    if listing_hint:
        listing_id = repo.find_pending_payment(entry.user_id, listing_id=listing_hint)
        if listing_id is None:
            logger.info(
                "listing_hint_unmatched user_id=%s listing_id=%s",
                entry.user_id,
                listing_hint,
            )
    if listing_id is None:
        listing_id = repo.find_pending_payment(entry.user_id)

    if listing_id is None:
        logger.info("listing_projection_noop user_id=%s reason=no_pending_payment_listing", entry.user_id)
        return None

    changes = {
        "status": ListingStatus.PENDING_REVIEW.value,
        "subscription_start_date": start,
        "subscription_end_date": end,
    }
    if not repo.promote(listing_id, entry.user_id, changes):
        # Another delivery promoted it between the lookup and the update.
        logger.info(
            "listing_projection_noop user_id=%s listing_id=%s reason=status_changed",
            entry.user_id,
            listing_id,
        )
        return None

    logger.info(
        "listing_promoted user_id=%s listing_id=%s status=%s",
        entry.user_id,
        listing_id,
        ListingStatus.PENDING_REVIEW.value,
    )
    return listing_id
