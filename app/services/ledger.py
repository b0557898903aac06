from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Sequence

import httpx
from fastapi import Depends
from postgrest.exceptions import APIError
from supabase import Client

from app.core.errors import LedgerWriteError
from app.models.subscription import (
    LEDGER_CONFLICT_TARGET,
    SUBSCRIPTIONS_TABLE,
    LedgerEntry,
    LedgerStatus,
    Transition,
    TransitionKind,
)
from app.services.idempotency import build_grant_row, build_revoke_changes, prior_statuses_for
from app.services.supabase_client import get_supabase

logger = logging.getLogger(__name__)


class LedgerRepository(ABC):

    @abstractmethod
    def upsert(self, row: dict[str, Any]) -> LedgerEntry:
        """
        Insert or replace the row for (profile_id, plan_id) in one statement.
        Concurrent writers are serialized by the database conflict handling.
        """

    @abstractmethod
    def update_status(
        self,
        user_id: str,
        plan_id: int,
        changes: dict[str, Any],
        prior_statuses: Sequence[LedgerStatus],
        started_by: str | None = None,
    ) -> list[LedgerEntry]:
        """
        Apply changes to the row only while its status is one of
        prior_statuses (and, with started_by, its start_date <= started_by).
        Returns the rows that changed.
        """


class SupabaseLedgerRepository(LedgerRepository):
    def __init__(self, client: Client):
        self.client = client

    def upsert(self, row: dict[str, Any]) -> LedgerEntry:
        try:
            resp = (
                self.client
                .table(SUBSCRIPTIONS_TABLE)
                .upsert(row, on_conflict=LEDGER_CONFLICT_TARGET)
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            raise LedgerWriteError(f"subscriptions upsert failed: {exc}") from exc

        data = resp.data or []
        if not data:
            raise LedgerWriteError("subscriptions upsert returned no row")
        return _entries(data[:1])[0]

    def update_status(
        self,
        user_id: str,
        plan_id: int,
        changes: dict[str, Any],
        prior_statuses: Sequence[LedgerStatus],
        started_by: str | None = None,
    ) -> list[LedgerEntry]:
        query = (
            self.client
            .table(SUBSCRIPTIONS_TABLE)
            .update(changes)
            .eq("profile_id", user_id)
            .eq("plan_id", plan_id)
            .in_("status", [status.value for status in prior_statuses])
        )
        if started_by is not None:
            query = query.lte("start_date", started_by)

        try:
            resp = query.execute()
        except (APIError, httpx.HTTPError) as exc:
            raise LedgerWriteError(f"subscriptions update failed: {exc}") from exc

        return _entries(resp.data or [])


def _entries(rows: list[dict[str, Any]]) -> list[LedgerEntry]:
    try:
        return [LedgerEntry.from_row(row) for row in rows]
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerWriteError(f"subscriptions row could not be read: {exc}") from exc


def get_ledger_repository(client: Client = Depends(get_supabase)) -> LedgerRepository:
    return SupabaseLedgerRepository(client)


def write_grant(repo: LedgerRepository, transition: Transition) -> LedgerEntry:
    if transition.kind is not TransitionKind.GRANT:
        raise ValueError(f"expected a GRANT transition, got {transition.kind.value}")

    entry = repo.upsert(build_grant_row(transition))
    logger.info(
        "ledger_granted user_id=%s plan_id=%s product_id=%s start=%s end=%s",
        entry.user_id,
        entry.plan_id,
        transition.product_ref,
        entry.start.isoformat() if entry.start else None,
        entry.end.isoformat() if entry.end else None,
    )
    return entry


def write_revoke(repo: LedgerRepository, transition: Transition) -> LedgerEntry | None:
    """
    Move the active (or cancelled) entry to the revoke status. Returns None
    when there is nothing to revoke, which is not an error.
    """
    if transition.kind is not TransitionKind.REVOKE or transition.revoke_status is None:
        raise ValueError(f"expected a REVOKE transition, got {transition.kind.value}")

    prior = prior_statuses_for(transition.revoke_status)
    changes = build_revoke_changes(transition)

    if "end_date" in changes:
        updated = repo.update_status(
            transition.user_id,
            transition.plan_id,
            changes,
            prior,
            started_by=changes["end_date"],
        )
        if not updated:
            # Expiration earlier than the stored start would break the window
            # invariant; keep the stored end and change only the status.
            status_only = {"status": changes["status"]}
            updated = repo.update_status(transition.user_id, transition.plan_id, status_only, prior)
    else:
        updated = repo.update_status(transition.user_id, transition.plan_id, changes, prior)

    if not updated:
        logger.info(
            "ledger_revoke_noop user_id=%s plan_id=%s event=%s reason=no_matching_entry",
            transition.user_id,
            transition.plan_id,
            transition.event_type,
        )
        return None

    entry = updated[0]
    logger.info(
        "ledger_revoked user_id=%s plan_id=%s status=%s end=%s",
        entry.user_id,
        entry.plan_id,
        entry.status.value,
        entry.end.isoformat() if entry.end else None,
    )
    return entry
