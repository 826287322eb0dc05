"""
Storage tables for the SQL document store.

Every collection lives in one ``documents`` table; the document body is a
JSON column. Unique properties are written as rows of ``unique_keys`` in the
same transaction as the document, so the unique constraint on that table is
the atomic guard against concurrent duplicates.
"""

from typing import Any, Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin


class DocumentRecord(TimestampMixin, table=True):
    __tablename__ = "documents"

    id: str = Field(primary_key=True, max_length=64)
    collection: str = Field(index=True, max_length=100)
    membership_id: Optional[str] = Field(default=None, index=True, max_length=64)
    body: dict[str, Any] = Field(default_factory=dict, sa_type=sa.JSON, nullable=False)


class UniqueKeyRecord(SQLModel, table=True):
    __tablename__ = "unique_keys"
    __table_args__ = (
        sa.UniqueConstraint("collection", "scope", "path", "value", name="uq_unique_keys_value"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    collection: str = Field(max_length=100)
    scope: str = Field(max_length=64)
    path: str = Field(max_length=255)
    value: str = Field(max_length=1024)
    document_id: str = Field(index=True, max_length=64)
