"""Shared base model and scalar types."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

Direction = Literal["income", "expense", "transfer"]
SourceKind = Literal["file", "paste"]


class FrozenModel(BaseModel):
    """Base model with shared configuration settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)


__all__ = ["Direction", "FrozenModel", "SourceKind"]
