"""Shared fixtures: an in-memory contact store standing in for the database."""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from crm import api
from crm.models import utcnow
from crm.repository import (
    UPDATABLE_FIELDS,
    ActivityRecord,
    ContactNotFoundError,
    ContactRecord,
    merge_summary,
)

BASE_TIME = datetime(2025, 1, 1, tzinfo=UTC)


def make_contact(
    contact_id: str,
    *,
    email: str | None = None,
    phone: str | None = None,
    full_name: str | None = None,
    status: str | None = "active",
    minutes: int = 0,
) -> ContactRecord:
    """Contact whose updated_at is ``minutes`` after BASE_TIME."""
    return ContactRecord(
        id=contact_id,
        email=email,
        phone=phone,
        full_name=full_name,
        status=status,
        updated_at=BASE_TIME + timedelta(minutes=minutes),
    )


class InMemoryContactStore:
    """Contacts and activity rows shared by the in-memory repository pair."""

    def __init__(self, contacts: list[ContactRecord] | None = None):
        self.contacts: dict[str, ContactRecord] = {c.id: c for c in contacts or []}
        self.activities: list[ActivityRecord] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()

    def add(self, *contacts: ContactRecord) -> None:
        for contact in contacts:
            self.contacts[contact.id] = contact

    def add_activity(self, contact_id: str, content: str, type: str = "note") -> ActivityRecord:
        record = ActivityRecord(
            id=len(self.activities) + 1,
            contact_id=contact_id,
            type=type,
            content=content,
            created_at=utcnow(),
        )
        self.activities.append(record)
        return record

    def touch(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"simulated {name} failure")

    def snapshot(self) -> tuple:
        return copy.deepcopy(self.contacts), copy.deepcopy(self.activities)

    def restore(self, saved: tuple) -> None:
        self.contacts, self.activities = saved


class InMemoryContactRepository:
    """ContactRepository over an InMemoryContactStore."""

    def __init__(self, store: InMemoryContactStore):
        self.store = store

    @asynccontextmanager
    async def unit_of_work(self):
        saved = self.store.snapshot()
        try:
            yield
        except Exception:
            self.store.restore(saved)
            raise

    async def list_all_contacts(self) -> list[ContactRecord]:
        self.store.touch("list_all_contacts")
        return [replace(c) for c in self.store.contacts.values()]

    async def find_contacts_by_ids(self, ids: list[str], *, lock: bool = False) -> list[ContactRecord]:
        self.store.touch("find_contacts_by_ids")
        return [replace(self.store.contacts[i]) for i in sorted(set(ids)) if i in self.store.contacts]

    async def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None:
        self.store.touch("update_contact")
        if contact_id not in self.store.contacts:
            raise ContactNotFoundError([contact_id])
        values = {UPDATABLE_FIELDS[k]: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        self.store.contacts[contact_id] = replace(
            self.store.contacts[contact_id], updated_at=utcnow(), **values
        )

    async def delete_contacts(self, ids: list[str]) -> int:
        self.store.touch("delete_contacts")
        deleted = 0
        for contact_id in ids:
            if self.store.contacts.pop(contact_id, None) is not None:
                deleted += 1
        return deleted


class InMemoryActivityLog:
    """AuditSink over an InMemoryContactStore."""

    def __init__(self, store: InMemoryContactStore):
        self.store = store

    async def move_activities(self, from_ids: list[str], to_id: str) -> int:
        self.store.touch("move_activities")
        moved = 0
        for activity in self.store.activities:
            if activity.contact_id in from_ids:
                activity.contact_id = to_id
                moved += 1
        return moved

    async def record_merge(self, survivor_id, merged_ids, changes, note=None) -> None:
        self.store.touch("record_merge")
        record = self.store.add_activity(survivor_id, merge_summary(survivor_id, merged_ids, note), type="system")
        record.metadata = {"action": "merge", "merged_ids": list(merged_ids), "changes": changes, "note": note}

    async def log_activity(self, contact_id, type, body, direction=None, subject=None) -> ActivityRecord:
        self.store.touch("log_activity")
        if contact_id not in self.store.contacts:
            raise ContactNotFoundError([contact_id])
        record = self.store.add_activity(contact_id, body, type=type)
        record.direction = direction
        record.metadata = {"subject": subject} if subject else None
        return record

    async def list_activities(self, contact_id: str, limit: int = 50) -> list[ActivityRecord]:
        self.store.touch("list_activities")
        rows = [a for a in self.store.activities if a.contact_id == contact_id]
        return list(reversed(rows))[:limit]


@pytest.fixture()
def store() -> InMemoryContactStore:
    return InMemoryContactStore()


@pytest.fixture()
def repository(store) -> InMemoryContactRepository:
    return InMemoryContactRepository(store)


@pytest.fixture()
def activity_log(store) -> InMemoryActivityLog:
    return InMemoryActivityLog(store)


@pytest.fixture()
def app(store):
    """The API app with storage dependencies pointed at the in-memory store."""
    api.app.dependency_overrides[api.get_contact_repository] = lambda: InMemoryContactRepository(store)
    api.app.dependency_overrides[api.get_activity_log] = lambda: InMemoryActivityLog(store)
    yield api.app
    api.app.dependency_overrides.clear()


def client_for(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture()
async def client(app):
    async with client_for(app) as c:
        yield c
