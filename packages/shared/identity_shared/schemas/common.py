from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class ReservedRoles(str, Enum):
    ADMINISTRATOR = "administrator"
    SERVER = "server"


RESERVED_ROLE_SLUGS: frozenset[str] = frozenset(r.value for r in ReservedRoles)


class HashAlgorithm(str, Enum):
    MD5 = "MD5"
    SHA1 = "SHA1"
    SHA2_256 = "SHA2-256"
    SHA2_384 = "SHA2-384"
    SHA2_512 = "SHA2-512"
    BCRYPT = "BCRYPT"


class SourceProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"
    FACEBOOK = "facebook"
    MICROSOFT = "microsoft"
    APPLE = "apple"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class SysModel(BaseModel):
    """Audit stamp attached to every stored entity."""
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    modified_at: Optional[datetime] = None
    modified_by: Optional[str] = None


class Page(BaseModel):
    items: List[Any] = Field(default_factory=list)
    count: Optional[int] = None


class BulkDeleteOutcome(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    ALL_FAILED = "all_failed"
    PARTIAL = "partial"


class BulkDeleteResult(BaseModel):
    """Outcome of a bulk delete, keeping track of which ids failed."""
    succeeded_ids: List[str] = Field(default_factory=list)
    failed_ids: List[str] = Field(default_factory=list)

    @property
    def outcome(self) -> BulkDeleteOutcome:
        if not self.failed_ids:
            return BulkDeleteOutcome.ALL_SUCCEEDED
        if not self.succeeded_ids:
            return BulkDeleteOutcome.ALL_FAILED
        return BulkDeleteOutcome.PARTIAL
