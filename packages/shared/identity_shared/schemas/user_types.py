"""
User type schemas.

A user type is the tenant-defined schema of a user document: its property
definitions (keyed by dotted path), the required paths, whether it can be
assigned directly (``is_abstract``) and the slug of the type it extends.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .common import SysModel

ORIGIN_USER_TYPE_SLUG = "base-user"


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    DATE = "date"
    REFERENCE = "reference"


class ReferenceType(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"


class PropertyKind(str, Enum):
    PLAIN = "plain"
    UNIQUE = "unique"
    REFERENCE = "reference"


class PropertyDefinition(BaseModel):
    type: FieldType = FieldType.STRING
    description: Optional[str] = None
    is_unique: bool = False
    reference_type: Optional[ReferenceType] = None
    content_type: Optional[str] = None

    @model_validator(mode="after")
    def _check_reference(self) -> "PropertyDefinition":
        if self.type == FieldType.REFERENCE and self.reference_type is None:
            raise ValueError("reference properties need a reference_type (single or multiple)")
        if self.type != FieldType.REFERENCE and (self.reference_type or self.content_type):
            raise ValueError("reference_type and content_type only apply to reference properties")
        return self

    @property
    def kind(self) -> PropertyKind:
        if self.type == FieldType.REFERENCE:
            return PropertyKind.REFERENCE
        if self.is_unique:
            return PropertyKind.UNIQUE
        return PropertyKind.PLAIN


class UserType(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    membership_id: Optional[str] = None
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    is_abstract: bool = False
    base_type: Optional[str] = None
    properties: Dict[str, PropertyDefinition] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)
    sys: Optional[SysModel] = None


def origin_user_type(membership_id: str) -> UserType:
    """The built-in type every other user type ultimately extends."""
    return UserType(
        _id=ORIGIN_USER_TYPE_SLUG,
        membership_id=membership_id,
        name="Base User",
        slug=ORIGIN_USER_TYPE_SLUG,
        description="Built-in origin user type",
        properties={
            "username": PropertyDefinition(type=FieldType.STRING, is_unique=True),
            "email_address": PropertyDefinition(type=FieldType.STRING, is_unique=True),
            "firstname": PropertyDefinition(type=FieldType.STRING),
            "lastname": PropertyDefinition(type=FieldType.STRING),
            "role": PropertyDefinition(type=FieldType.STRING),
            "permissions": PropertyDefinition(type=FieldType.ARRAY),
            "forbidden": PropertyDefinition(type=FieldType.ARRAY),
            "sourceProvider": PropertyDefinition(type=FieldType.STRING),
        },
        required=["username", "email_address", "role"],
    )
