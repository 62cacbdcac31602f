# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for flakefix."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict


class FlakefixBaseModel(BaseModel):
    """Base model with shared config for flakefix schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class FrozenModel(BaseModel):
    """Base model for records that must not change once parsed."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
    )
