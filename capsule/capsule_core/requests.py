"""
Input models for user-initiated writes.

Validation happens here, before any storage call. Pydantic errors are
converted into the core ValidationError so callers see one taxonomy.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator

from .errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_GROUP_NAME = 100


def _not_blank(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class CreateGroupRequest(BaseModel):
    """Create a group with a fixed unlock time.

    Past unlock times are accepted; such a group is unlocked from the start.
    Naive timestamps (as produced by a datetime-local input) are read as UTC.
    """

    name: str = Field(..., max_length=MAX_GROUP_NAME, description="Group name")
    unlock_at: datetime = Field(..., description="Unlock instant")

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        return _not_blank(value)

    @field_validator("unlock_at")
    @classmethod
    def _unlock_at_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class JoinGroupRequest(BaseModel):
    """Join an existing group by its id."""

    group_id: str = Field(..., description="Group id shared out of band")

    @field_validator("group_id")
    @classmethod
    def _group_id_not_blank(cls, value: str) -> str:
        return _not_blank(value)


class TextEntryRequest(BaseModel):
    """Submit a text entry to a group."""

    group_id: str = Field(..., description="Target group")
    text: str = Field(..., description="Entry text")

    @field_validator("group_id")
    @classmethod
    def _group_id_not_blank(cls, value: str) -> str:
        return _not_blank(value)

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        # Checked on the stripped value, stored as typed
        _not_blank(value)
        return value


def parse_request(model: type[ModelT], **data: Any) -> ModelT:
    """Validate `data` against `model`.

    Raises:
        ValidationError: With one message per failing field
    """
    try:
        return model(**data)
    except pydantic.ValidationError as e:
        errors = []
        field_name = None
        for err in e.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            field_name = field_name or loc or None
            errors.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        raise ValidationError(
            "; ".join(errors) or "Invalid input",
            field_name=field_name,
            errors=errors,
        ) from e
