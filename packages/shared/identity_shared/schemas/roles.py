"""Role schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import SysModel


class Role(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    membership_id: Optional[str] = None
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    forbidden: Optional[List[str]] = None
    sys: Optional[SysModel] = None
