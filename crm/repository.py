"""Persistence access for contacts and their activity log.

The dedupe pipelines depend on the ``ContactRepository`` and ``AuditSink``
protocols only; the SQL implementations below are wired in by the API layer
and share one ``AsyncSession`` per request so a merge commits or rolls back
as a single unit.
"""
from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import models

logger = logging.getLogger(__name__)

# Columns the merge executor may write, keyed by their wire name
UPDATABLE_FIELDS = {
    "email": "email",
    "fullName": "full_name",
    "phone": "phone",
    "status": "status",
}


class ContactNotFoundError(Exception):
    """Raised when referenced contact ids do not resolve to existing rows."""

    def __init__(self, missing: Iterable[str] = ()):
        self.missing = sorted(missing)
        detail = f": {', '.join(self.missing)}" if self.missing else ""
        super().__init__(f"Contact(s) not found{detail}")


@dataclass
class ContactRecord:
    """Snapshot of a contact row, detached from the session."""
    id: str
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None
    status: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, row: models.Contact) -> ContactRecord:
        return cls(
            id=row.id,
            email=row.email,
            phone=row.phone,
            full_name=row.full_name,
            status=row.status,
            updated_at=row.updated_at,
        )

    def preview(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "fullName": self.full_name,
            "status": self.status,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ActivityRecord:
    """One contact activity log entry."""
    id: int
    contact_id: str
    type: str
    content: str
    direction: str | None = None
    metadata: dict | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, row: models.ContactLog) -> ActivityRecord:
        return cls(
            id=row.id,
            contact_id=row.contact_id,
            type=row.type,
            content=row.content,
            direction=row.direction,
            metadata=row.metadata_,
            created_at=row.created_at,
        )


class ContactRepository(Protocol):
    async def list_all_contacts(self) -> list[ContactRecord]: ...

    async def find_contacts_by_ids(self, ids: list[str], *, lock: bool = False) -> list[ContactRecord]: ...

    async def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None: ...

    async def delete_contacts(self, ids: list[str]) -> int: ...

    def unit_of_work(self) -> AbstractAsyncContextManager[None]: ...


class AuditSink(Protocol):
    async def move_activities(self, from_ids: list[str], to_id: str) -> int: ...

    async def record_merge(
        self,
        survivor_id: str,
        merged_ids: list[str],
        changes: dict[str, Any],
        note: str | None = None,
    ) -> None: ...


class SqlContactRepository:
    """ContactRepository backed by an async SQLAlchemy session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[None]:
        """Commit everything done inside the block, or roll it all back."""
        try:
            yield
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def list_all_contacts(self) -> list[ContactRecord]:
        stmt = select(models.Contact).order_by(models.Contact.created_at, models.Contact.id)
        result = await self.session.scalars(stmt)
        return [ContactRecord.from_model(row) for row in result.all()]

    async def find_contacts_by_ids(self, ids: list[str], *, lock: bool = False) -> list[ContactRecord]:
        if not ids:
            return []
        # Lock in id order so overlapping merges queue instead of deadlocking
        stmt = select(models.Contact).where(models.Contact.id.in_(ids)).order_by(models.Contact.id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.scalars(stmt)
        return [ContactRecord.from_model(row) for row in result.all()]

    async def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None:
        values = {UPDATABLE_FIELDS[k]: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        values["updated_at"] = models.utcnow()
        stmt = update(models.Contact).where(models.Contact.id == contact_id).values(**values)
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise ContactNotFoundError([contact_id])

    async def delete_contacts(self, ids: list[str]) -> int:
        if not ids:
            return 0
        stmt = delete(models.Contact).where(models.Contact.id.in_(ids))
        result = await self.session.execute(stmt)
        return result.rowcount


class SqlActivityLog:
    """AuditSink writing to the contact_logs table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def move_activities(self, from_ids: list[str], to_id: str) -> int:
        if not from_ids:
            return 0
        stmt = (
            update(models.ContactLog)
            .where(models.ContactLog.contact_id.in_(from_ids))
            .values(contact_id=to_id)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def record_merge(
        self,
        survivor_id: str,
        merged_ids: list[str],
        changes: dict[str, Any],
        note: str | None = None,
    ) -> None:
        entry = models.ContactLog(
            contact_id=survivor_id,
            type="system",
            content=merge_summary(survivor_id, merged_ids, note),
            metadata_={"action": "merge", "merged_ids": list(merged_ids), "changes": changes, "note": note},
        )
        self.session.add(entry)
        await self.session.flush()

    async def log_activity(
        self,
        contact_id: str,
        type: str,
        body: str,
        direction: str | None = None,
        subject: str | None = None,
    ) -> ActivityRecord:
        """Append an sms/call/email/note entry to a contact's log.

        Raises:
            ContactNotFoundError: If the contact does not exist
        """
        if await self.session.get(models.Contact, contact_id) is None:
            raise ContactNotFoundError([contact_id])

        entry = models.ContactLog(
            contact_id=contact_id,
            type=type,
            direction=direction,
            content=body,
            metadata_={"subject": subject} if subject else None,
            created_at=models.utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return ActivityRecord.from_model(entry)

    async def list_activities(self, contact_id: str, limit: int = 50) -> list[ActivityRecord]:
        stmt = (
            select(models.ContactLog)
            .where(models.ContactLog.contact_id == contact_id)
            .order_by(models.ContactLog.created_at.desc(), models.ContactLog.id.desc())
            .limit(limit)
        )
        result = await self.session.scalars(stmt)
        return [ActivityRecord.from_model(row) for row in result.all()]


def merge_summary(survivor_id: str, merged_ids: list[str], note: str | None = None) -> str:
    """Human-readable audit line for a merge."""
    text = f"Merged contact(s) {', '.join(merged_ids)} into {survivor_id}"
    if note and note.strip():
        text = f"{text}. Note: {note.strip()}"
    return text
