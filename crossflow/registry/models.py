"""Pydantic models describing registered domain operations."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OperationDescriptor(BaseModel):
    """A domain operation callable by workflow actions."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    domain: str
    name: str
    handler: Any = Field(exclude=True)
    description: Optional[str] = None

    @field_validator("domain", "name")
    @classmethod
    def _ensure_identifier(cls, v: str) -> str:
        if not v:
            raise ValueError("domain and name must be non-empty strings")
        return v

    @property
    def qualified_name(self) -> str:
        return f"{self.domain}.{self.name}"
