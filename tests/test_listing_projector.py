from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from app.core.errors import ProjectionError
from app.core.plans import DEFAULT_PROSERVICE_PLAN_ID
from app.models.subscription import LedgerEntry, LedgerStatus
from app.services.listing_projector import SupabaseListingRepository, project_grant

START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = datetime(2026, 4, 1, tzinfo=timezone.utc)


def _entry(user_id: str = "U1", status: LedgerStatus = LedgerStatus.ACTIVE) -> LedgerEntry:
    return LedgerEntry(user_id=user_id, plan_id=DEFAULT_PROSERVICE_PLAN_ID, status=status, start=START, end=END)


@pytest.fixture
def listings(listing_repo):
    listing_repo.add("L-old", "U1", "pending_payment", "2026-01-01T00:00:00+00:00")
    listing_repo.add("L-new", "U1", "pending_payment", "2026-02-01T00:00:00+00:00")
    listing_repo.add("L-live", "U1", "live", "2026-02-15T00:00:00+00:00")
    listing_repo.add("L-other", "U2", "pending_payment", "2026-02-20T00:00:00+00:00")
    return listing_repo


def test_promotes_newest_pending_payment_listing(listings):
    promoted = project_grant(listings, _entry())

    assert promoted == "L-new"
    row = listings.get("L-new")
    assert row["status"] == "pending_review"
    assert row["subscription_start_date"] == START.isoformat()
    assert row["subscription_end_date"] == END.isoformat()
    assert listings.get("L-old")["status"] == "pending_payment"
    assert listings.get("L-live")["status"] == "live"
    assert listings.get("L-other")["status"] == "pending_payment"


def test_redelivered_grant_promotes_only_once(listings):
    assert project_grant(listings, _entry()) == "L-new"
    assert project_grant(listings, _entry()) is None

    assert listings.get("L-old")["status"] == "pending_payment"


def test_listing_promoted_between_lookup_and_update_is_noop(listings, caplog):
    find = listings.find_pending_payment

    def find_then_lose_race(owner_id, listing_id=None):
        found = find(owner_id, listing_id)
        listings.get(found)["status"] = "pending_review"
        return found

    listings.find_pending_payment = find_then_lose_race

    with caplog.at_level("INFO"):
        assert project_grant(listings, _entry()) is None

    assert "reason=status_changed" in caplog.text
    assert listings.get("L-new")["subscription_start_date"] is None
    assert listings.get("L-old")["status"] == "pending_payment"


def test_listing_hint_is_preferred(listings):
    assert project_grant(listings, _entry(), listing_hint="L-old") == "L-old"
    assert listings.get("L-new")["status"] == "pending_payment"


def test_hint_owned_by_someone_else_falls_back(listings):
    assert project_grant(listings, _entry(), listing_hint="L-other") == "L-new"
    assert listings.get("L-other")["status"] == "pending_payment"


def test_no_pending_listing_is_noop(listing_repo):
    listing_repo.add("L-live", "U1", "live", "2026-02-15T00:00:00+00:00")

    assert project_grant(listing_repo, _entry()) is None
    assert listing_repo.get("L-live")["status"] == "live"


def test_inactive_entry_is_not_projected(listings):
    assert project_grant(listings, _entry(status=LedgerStatus.EXPIRED)) is None
    assert listings.get("L-new")["status"] == "pending_payment"


def test_lost_race_is_noop():
    repo = MagicMock()
    repo.window_projected.return_value = False
    repo.find_pending_payment.return_value = "L-new"
    repo.promote.return_value = False

    assert project_grant(repo, _entry()) is None


class TestSupabaseListingRepository:
    def _client(self, data):
        builder = MagicMock()
        for name in ("select", "update", "eq", "is_", "order", "limit"):
            getattr(builder, name).return_value = builder
        builder.execute.return_value = MagicMock(data=data)
        client = MagicMock()
        client.table.return_value = builder
        return client, builder

    def test_find_orders_by_newest(self):
        client, builder = self._client([{"listing_id": "L-new"}])

        assert SupabaseListingRepository(client).find_pending_payment("U1") == "L-new"
        client.table.assert_called_once_with("listings")
        builder.eq.assert_any_call("owner_id", "U1")
        builder.eq.assert_any_call("status", "pending_payment")
        builder.order.assert_called_once_with("created_at", desc=True)
        builder.limit.assert_called_once_with(1)

    def test_promote_repeats_status_predicate(self):
        client, builder = self._client([{"listing_id": "L-new"}])

        assert SupabaseListingRepository(client).promote("L-new", "U1", {"status": "pending_review"})
        builder.update.assert_called_once_with({"status": "pending_review"})
        builder.eq.assert_any_call("listing_id", "L-new")
        builder.eq.assert_any_call("owner_id", "U1")
        builder.eq.assert_any_call("status", "pending_payment")

    def test_window_projected_with_open_end(self):
        client, builder = self._client([])

        assert not SupabaseListingRepository(client).window_projected("U1", START.isoformat(), None)
        builder.is_.assert_called_once_with("subscription_end_date", "null")

    def test_api_error_becomes_projection_error(self):
        client, builder = self._client(None)
        builder.execute.side_effect = APIError({"message": "permission denied", "code": "42501"})

        with pytest.raises(ProjectionError):
            SupabaseListingRepository(client).find_pending_payment("U1")
