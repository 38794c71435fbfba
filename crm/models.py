"""Core SQLAlchemy models (2.x style) for the CRM contact schema.

Only the tables the dedupe service reads or writes are mapped here:
contacts and their activity log.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Contact(Base):
    """CRM contacts table."""
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    phone: Mapped[str | None] = mapped_column(String(50))
    full_name: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str | None] = mapped_column(String(50), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    logs: Mapped[list[ContactLog]] = relationship(
        "ContactLog",
        back_populates="contact",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_contacts_created_at", "created_at"),
    )


class ContactLog(Base):
    """Contact activity log (sms, call, email, note, system entries)."""
    __tablename__ = "contact_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[str] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # sms | call | email | note | system
    direction: Mapped[str | None] = mapped_column(String(20))  # inbound | outbound | None
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationship
    contact: Mapped[Contact] = relationship("Contact", back_populates="logs")

    __table_args__ = (
        Index("ix_contact_logs_contact_created", "contact_id", "created_at"),
    )
