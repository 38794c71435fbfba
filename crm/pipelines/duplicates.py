"""Duplicate contact detection.

Groups the full contact set by canonical email and/or phone key and reports
every key shared by more than one contact.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from crm.pipelines.normalization import canonical_email, canonical_phone
from crm.repository import ContactRecord, ContactRepository

logger = logging.getLogger(__name__)


class GroupBy(str, Enum):
    """Duplicate grouping mode."""
    EMAIL = "email"
    PHONE = "phone"
    BOTH = "both"


@dataclass
class DuplicateGroup:
    """Contacts sharing one identity key."""
    key: str
    ids: list[str]
    kind: str = "email"
    preview: list[dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.ids)


@dataclass
class DuplicateScan:
    """Result of a duplicate scan.

    ``error`` is set when the contact set could not be read; ``groups`` is
    then empty and means "unknown", not "no duplicates".
    """
    group_by: GroupBy
    groups: list[DuplicateGroup] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _kinded_keys(contact: ContactRecord, group_by: GroupBy) -> list[tuple[str, str]]:
    keys = []
    if group_by in (GroupBy.EMAIL, GroupBy.BOTH):
        keys.append(("email", canonical_email(contact.email)))
    if group_by in (GroupBy.PHONE, GroupBy.BOTH):
        keys.append(("phone", canonical_phone(contact.phone)))
    return [(kind, key) for kind, key in keys if key]


def identity_keys(contact: ContactRecord, group_by: GroupBy) -> list[str]:
    """Non-empty grouping keys of a contact for the given mode."""
    return [key for _, key in _kinded_keys(contact, group_by)]


def group_duplicates(contacts: Iterable[ContactRecord], group_by: GroupBy) -> list[DuplicateGroup]:
    """Group contacts by identity key and keep keys with 2+ distinct members.

    Email and phone keys are grouped separately, so a digits-only email never
    meets a phone key. In ``both`` mode a contact may appear in an email group
    and a phone group. Groups are ordered largest first; equal sizes keep the
    order in which their key was first seen.
    """
    by_key: dict[tuple[str, str], dict[str, ContactRecord]] = {}
    for contact in contacts:
        for kind_key in _kinded_keys(contact, group_by):
            by_key.setdefault(kind_key, {}).setdefault(contact.id, contact)

    groups = [
        DuplicateGroup(
            key=key,
            kind=kind,
            ids=list(members),
            preview=[c.preview() for c in members.values()],
        )
        for (kind, key), members in by_key.items()
        if len(members) > 1
    ]
    groups.sort(key=lambda g: g.count, reverse=True)
    return groups


class DuplicateFinder:
    """Reads contacts through a repository and groups them."""

    def __init__(self, repository: ContactRepository):
        self.repository = repository

    async def find(self, group_by: GroupBy = GroupBy.EMAIL) -> DuplicateScan:
        try:
            contacts = await self.repository.list_all_contacts()
        except Exception as e:
            logger.error(f"Duplicate scan by {group_by.value} failed to read contacts: {e}", exc_info=True)
            return DuplicateScan(group_by=group_by, error="duplicate_scan_failed")

        groups = group_duplicates(contacts, group_by)
        logger.info(
            f"Duplicate scan by {group_by.value}: {len(contacts)} contacts, "
            f"{len(groups)} duplicate groups"
        )
        return DuplicateScan(group_by=group_by, groups=groups)
