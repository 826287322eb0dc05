"""
Acting identities and credential tokens.

The acting identity ("utilizer") is a tagged variant: a human user with an
id and a role, or the system itself. Authorization checks branch on the
``type`` tag.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .common import ReservedRoles


class UtilizerType(str, Enum):
    HUMAN = "human"
    SYSTEM = "system"


SYSTEM_UTILIZER_NAME = "system"


class HumanUtilizer(BaseModel):
    type: Literal["human"] = UtilizerType.HUMAN.value
    id: str
    role: str
    membership_id: str
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.username or self.id


class SystemUtilizer(BaseModel):
    type: Literal["system"] = UtilizerType.SYSTEM.value
    membership_id: Optional[str] = None

    @property
    def id(self) -> str:
        return SYSTEM_UTILIZER_NAME

    @property
    def display_name(self) -> str:
        return SYSTEM_UTILIZER_NAME


Utilizer = Annotated[Union[HumanUtilizer, SystemUtilizer], Field(discriminator="type")]


def is_system(utilizer: Union[HumanUtilizer, SystemUtilizer]) -> bool:
    return isinstance(utilizer, SystemUtilizer)


def can_manage_credentials(
    utilizer: Union[HumanUtilizer, SystemUtilizer], subject_id: Optional[str]
) -> bool:
    """System identities, administrators, the server role and the subject themself."""
    if isinstance(utilizer, SystemUtilizer):
        return True
    if utilizer.role in (ReservedRoles.ADMINISTRATOR.value, ReservedRoles.SERVER.value):
        return True
    return subject_id is not None and utilizer.id == subject_id


class ResetPasswordToken(BaseModel):
    reset_token: str
    expires_in: int = 3600
    token_type: Literal["reset_token"] = "reset_token"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.expires_in)
