"""Membership (tenant) schema. Memberships are administered outside the core."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import HashAlgorithm, SysModel


class Membership(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    name: str
    secret_key: str = Field(min_length=1)
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA2_256
    default_language: str = "none"
    expires_in: int = Field(default=43200, gt=0)
    refresh_token_expires_in: int = Field(default=86400, gt=0)
    sys: Optional[SysModel] = None

    def public_dump(self) -> dict:
        """Serialized membership without its secret key."""
        return self.model_dump(by_alias=True, mode="json", exclude={"secret_key"})
