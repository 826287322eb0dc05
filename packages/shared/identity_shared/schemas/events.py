"""Typed event descriptions produced by every mutating operation."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    ROLE_CREATED = "RoleCreated"
    ROLE_UPDATED = "RoleUpdated"
    ROLE_DELETED = "RoleDeleted"
    USER_CREATED = "UserCreated"
    USER_UPDATED = "UserUpdated"
    USER_DELETED = "UserDeleted"
    USER_PASSWORD_CHANGED = "UserPasswordChanged"
    USER_PASSWORD_RESET = "UserPasswordReset"
    USER_TYPE_CREATED = "UserTypeCreated"
    USER_TYPE_UPDATED = "UserTypeUpdated"
    USER_TYPE_DELETED = "UserTypeDeleted"


class AuthEvent(BaseModel):
    membership_id: str
    event_type: EventType
    utilizer_id: Optional[str] = None
    document: Optional[Any] = None
    prior: Optional[Any] = None
    event_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
