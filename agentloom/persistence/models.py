"""SQLModel tables backing :class:`SQLRepository`."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class DocumentRow(SQLModel, table=True):
    """One persisted contract, stored as its JSON dump.

    ``status`` and ``parent_id`` are lifted out of the document so they can
    be filtered and compare-and-set without decoding.
    """

    __tablename__ = "documents"

    kind: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    parent_id: Optional[str] = Field(default=None, index=True)
    status: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    data: dict = Field(sa_column=Column(JSON, nullable=False))


class IdempotencyRow(SQLModel, table=True):
    __tablename__ = "idempotency_keys"

    key: str = Field(primary_key=True)
    execution_id: str
    expires_at: datetime


class SharedContextRow(SQLModel, table=True):
    """Key-value store for workspace shared context."""

    __tablename__ = "shared_context"

    workspace_id: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    value: dict = Field(sa_column=Column(JSON, nullable=False))
