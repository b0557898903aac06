"""Shared fixtures: in-memory stand-ins for the Supabase-backed repositories."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.core.errors import LedgerWriteError, ProjectionError
from app.main import app
from app.models.listing import ListingStatus
from app.models.subscription import LedgerEntry, LedgerStatus
from app.services.ledger import LedgerRepository, get_ledger_repository
from app.services.listing_projector import ListingRepository, get_listing_repository
from app.services.supabase_client import get_supabase

WEBHOOK_SECRET = "Bearer test-revenuecat-secret"

T0_MS = 1_700_000_000_000
T1_MS = T0_MS + 30 * 24 * 60 * 60 * 1000


def ms_to_iso(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


class InMemoryLedgerRepository(LedgerRepository):
    def __init__(self) -> None:
        self.rows: dict[tuple[str, int], dict[str, Any]] = {}
        self.fail_with: Exception | None = None
        self.upsert_calls = 0
        self.update_calls = 0

    def upsert(self, row: dict[str, Any]) -> LedgerEntry:
        self.upsert_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        key = (row["profile_id"], row["plan_id"])
        self.rows[key] = dict(row)
        return LedgerEntry.from_row(self.rows[key])

    def update_status(
        self,
        user_id: str,
        plan_id: int,
        changes: dict[str, Any],
        prior_statuses: Sequence[LedgerStatus],
        started_by: str | None = None,
    ) -> list[LedgerEntry]:
        self.update_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        row = self.rows.get((user_id, plan_id))
        if row is None or row["status"] not in {status.value for status in prior_statuses}:
            return []
        if started_by is not None and _parse(row["start_date"]) > _parse(started_by):
            return []
        row.update(changes)
        return [LedgerEntry.from_row(row)]

    def seed(self, user_id: str, plan_id: int, status: str, start: str, end: str | None) -> None:
        self.rows[(user_id, plan_id)] = {
            "profile_id": user_id,
            "plan_id": plan_id,
            "status": status,
            "start_date": start,
            "end_date": end,
            "revenuecat_customer_id": user_id,
            "revenuecat_product_id": "PROSERVICE_Monthly",
            "revenuecat_entitlement_id": "pro",
        }


class InMemoryListingRepository(ListingRepository):
    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    def add(self, listing_id: str, owner_id: str, status: str, created_at: str) -> None:
        self.rows.append(
            {
                "listing_id": listing_id,
                "owner_id": owner_id,
                "status": status,
                "created_at": created_at,
                "subscription_start_date": None,
                "subscription_end_date": None,
            }
        )

    def get(self, listing_id: str) -> dict[str, Any]:
        return next(row for row in self.rows if row["listing_id"] == listing_id)

    def window_projected(self, owner_id: str, start: str | None, end: str | None) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        return any(
            row["owner_id"] == owner_id
            and row["subscription_start_date"] == start
            and row["subscription_end_date"] == end
            for row in self.rows
        )

    def find_pending_payment(self, owner_id: str, listing_id: str | None = None) -> str | None:
        if self.fail_with is not None:
            raise self.fail_with
        matches = [
            row
            for row in self.rows
            if row["owner_id"] == owner_id
            and row["status"] == ListingStatus.PENDING_PAYMENT.value
            and (listing_id is None or row["listing_id"] == listing_id)
        ]
        if not matches:
            return None
        return max(matches, key=lambda row: row["created_at"])["listing_id"]

    def promote(self, listing_id: str, owner_id: str, changes: dict[str, Any]) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        for row in self.rows:
            if (
                row["listing_id"] == listing_id
                and row["owner_id"] == owner_id
                and row["status"] == ListingStatus.PENDING_PAYMENT.value
            ):
                row.update(changes)
                return True
        return False


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value)


@pytest.fixture
def ledger_repo() -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository()


@pytest.fixture
def listing_repo() -> InMemoryListingRepository:
    return InMemoryListingRepository()


@pytest.fixture
def audit_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def client(monkeypatch, ledger_repo, listing_repo, audit_client):
    monkeypatch.setenv("REVENUECAT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    app.dependency_overrides[get_ledger_repository] = lambda: ledger_repo
    app.dependency_overrides[get_listing_repository] = lambda: listing_repo
    app.dependency_overrides[get_supabase] = lambda: audit_client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def storage_error() -> Exception:
    return LedgerWriteError("connection reset")


@pytest.fixture
def projection_error() -> Exception:
    return ProjectionError("listings update failed")


def revenuecat_event(**fields: Any) -> dict[str, Any]:
    event = {
        "id": "evt-1",
        "type": "INITIAL_PURCHASE",
        "app_user_id": "U1",
        "original_app_user_id": "U1",
        "product_id": "PROSERVICE_Monthly",
        "period_start_at_ms": T0_MS,
        "period_end_at_ms": T1_MS,
        "event_timestamp_ms": T0_MS + 5_000,
        "entitlement_ids": ["proservice"],
    }
    event.update(fields)
    return {"api_version": "1.0", "event": {k: v for k, v in event.items() if v is not None}}
