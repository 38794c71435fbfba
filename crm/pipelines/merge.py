"""Contact merge pipeline.

Reconciles a survivor contact with its duplicates, applies the reconciled
fields to the survivor, moves the duplicates' activity history over,
deletes the duplicates and records an audit entry, all inside one unit of
work. Dry runs stop after computing the plan.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from crm.pipelines.normalization import canonical_email
from crm.repository import AuditSink, ContactNotFoundError, ContactRecord, ContactRepository

logger = logging.getLogger(__name__)


class MergeValidationError(Exception):
    """Raised when a merge request is malformed. No storage is touched."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class MergeError(Exception):
    """Raised when applying a merge fails; nothing from the merge is kept."""
    pass


class MergePicks(BaseModel):
    """Explicit field overrides chosen by the operator."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    full_name: str | None = None
    phone: str | None = None
    status: str | None = None
    email: str | None = None


class MergeRequest(BaseModel):
    """Merge input as posted by the CRM UI."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    survivor_id: str = Field(min_length=1)
    merge_ids: list[str]
    picks: MergePicks | None = None
    dry_run: bool = False
    note: str | None = Field(default=None, max_length=2000)

    @field_validator("merge_ids")
    @classmethod
    def drop_blank_ids(cls, v: list[str]) -> list[str]:
        ids = [i for i in v if i]
        if not ids:
            raise ValueError("at least one id to merge is required")
        return ids


@dataclass
class MergePlan:
    """What a merge will do: update the survivor, delete the losers."""
    survivor_id: str
    loser_ids: list[str]
    update: dict[str, Any]

    def __post_init__(self):
        if not self.loser_ids:
            raise MergeValidationError("mergeIds_required")
        if self.survivor_id in self.loser_ids:
            raise MergeValidationError("survivor_in_losers")


@dataclass
class MergeOutcome:
    """Result of a merge call."""
    plan: MergePlan
    applied: bool
    activities_moved: int = 0


def resolve_ids(request: MergeRequest) -> tuple[list[str], list[str]]:
    """Combined id set (survivor first) and the loser ids, both de-duplicated.

    A survivor id that slipped into ``merge_ids`` is dropped from the losers.
    """
    all_ids = list(dict.fromkeys([request.survivor_id, *request.merge_ids]))
    loser_ids = all_ids[1:]
    if not loser_ids:
        raise MergeValidationError("mergeIds_required")
    return all_ids, loser_ids


def _present(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


def _recency(contact: ContactRecord) -> tuple:
    return (contact.updated_at is not None, contact.updated_at or 0)


def reconcile_email(survivor: ContactRecord, rows: list[ContactRecord], picked: str | None) -> str | None:
    """Email the survivor keeps after the merge.

    Order: explicit pick, survivor's own email, then the canonical email of
    the most recently updated row that has one.
    """
    if _present(picked):
        return picked.strip().lower()
    if _present(survivor.email):
        return survivor.email

    with_email = [r for r in rows if canonical_email(r.email)]
    if not with_email:
        return None
    # max() keeps the first of equally recent rows
    newest = max(with_email, key=_recency)
    return canonical_email(newest.email)


def reconcile_fields(
    survivor: ContactRecord,
    rows: list[ContactRecord],
    picks: MergePicks | None = None,
) -> dict[str, Any]:
    """Field set applied to the survivor, keyed by wire name."""
    picks = picks or MergePicks()
    return {
        "email": reconcile_email(survivor, rows, picks.email),
        "fullName": _present(picks.full_name) or _present(survivor.full_name),
        "phone": _present(picks.phone) or _present(survivor.phone),
        "status": _present(picks.status) or _present(survivor.status),
    }


def build_merge_plan(request: MergeRequest, rows: list[ContactRecord]) -> MergePlan:
    """Build the plan from the fetched rows of every id in the request.

    Raises:
        ContactNotFoundError: If any requested id has no row
    """
    all_ids, loser_ids = resolve_ids(request)
    by_id = {row.id: row for row in rows}
    missing = set(all_ids) - set(by_id)
    if missing:
        raise ContactNotFoundError(missing)

    ordered = [by_id[i] for i in all_ids]
    survivor = ordered[0]
    return MergePlan(
        survivor_id=survivor.id,
        loser_ids=loser_ids,
        update=reconcile_fields(survivor, ordered, request.picks),
    )


class MergeExecutor:
    """Runs merges against an injected repository and audit sink."""

    def __init__(self, repository: ContactRepository, audit: AuditSink):
        self.repository = repository
        self.audit = audit

    async def merge(self, request: MergeRequest) -> MergeOutcome:
        """Plan and (unless dry-run) apply a merge.

        Raises:
            MergeValidationError: Nothing left to merge once the survivor is removed
            ContactNotFoundError: An id is unknown, or vanished under a concurrent merge
            MergeError: Storage failed while applying; the merge was rolled back
        """
        all_ids, loser_ids = resolve_ids(request)
        logger.info(
            f"Merge requested: survivor={request.survivor_id} losers={loser_ids} "
            f"dry_run={request.dry_run}"
        )

        try:
            async with self.repository.unit_of_work():
                rows = await self.repository.find_contacts_by_ids(all_ids, lock=not request.dry_run)
                if len(rows) != len(all_ids):
                    found = {r.id for r in rows}
                    raise ContactNotFoundError(set(all_ids) - found)

                plan = build_merge_plan(request, rows)
                if request.dry_run:
                    return MergeOutcome(plan=plan, applied=False)

                moved = await self._apply(plan, request.note)
                return MergeOutcome(plan=plan, applied=True, activities_moved=moved)

        except (ContactNotFoundError, MergeValidationError):
            raise
        except Exception as e:
            logger.error(f"Merge into {request.survivor_id} failed: {e}", exc_info=True)
            raise MergeError(f"Merge into {request.survivor_id} failed") from e

    async def _apply(self, plan: MergePlan, note: str | None) -> int:
        await self.repository.update_contact(plan.survivor_id, plan.update)
        moved = await self.audit.move_activities(plan.loser_ids, plan.survivor_id)

        deleted = await self.repository.delete_contacts(plan.loser_ids)
        if deleted != len(plan.loser_ids):
            logger.warning(
                f"Expected to delete {len(plan.loser_ids)} contacts, deleted {deleted}; "
                "a concurrent merge likely removed them"
            )
            raise ContactNotFoundError()

        await self.audit.record_merge(plan.survivor_id, plan.loser_ids, plan.update, note)
        logger.info(
            f"Merged {plan.loser_ids} into {plan.survivor_id} "
            f"({moved} activities moved)"
        )
        return moved
