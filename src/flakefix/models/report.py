# Copyright (c) Syntropy Systems
"""Pydantic models for reliability reports and the records parsed from them."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, cast

from pydantic import AliasChoices, Field, field_validator, model_validator

from .base import FlakefixBaseModel, FrozenModel

if TYPE_CHECKING:
    from collections.abc import Iterable

_ARM = re.compile(r"arm64|aarch64|\barm(?:v\d+l?)?\b")
_MACOS = re.compile(r"osx|macos|darwin|\bmac\b")
_WINDOWS = re.compile(r"\bwin|windows|vs20\d\d")
_LINUX = re.compile(
    r"linux|ubuntu|debian|fedora|rhel|centos|alpine|s390x|ppc"
)


class Platform(str, Enum):
    """Platform a test failure was observed on."""

    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"
    ARM64 = "arm64"
    OTHER = "other"

    @classmethod
    def classify(cls, label: str) -> Platform:
        """Map a free-form CI label (e.g. ``test-osx-arm64``) to a platform."""
        text = label.strip().lower()
        if not text:
            return cls.OTHER
        if _ARM.search(text):
            return cls.ARM64
        if _MACOS.search(text):
            return cls.MACOS
        if _WINDOWS.search(text):
            return cls.WINDOWS
        if _LINUX.search(text):
            return cls.LINUX
        return cls.OTHER

    @classmethod
    def combine(cls, platforms: Iterable[Platform]) -> Platform:
        """Collapse several platforms into one; mixed platforms give OTHER."""
        distinct = set(platforms)
        if len(distinct) == 1:
            return distinct.pop()
        return cls.OTHER


class FlakyTestRecord(FrozenModel):
    """One test listed in a reliability report."""

    test_path: str = Field(min_length=1)
    failure_count: int = Field(ge=0)
    platform: Platform = Platform.OTHER
    triggering_references: tuple[str, ...] = ()
    reason: str | None = None
    position: int = Field(default=0, ge=0)

    @field_validator("test_path")
    @classmethod
    def _strip_test_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "test_path must not be blank"
            raise ValueError(msg)
        return value


class IssuePayload(FlakefixBaseModel):
    """Issue metadata as returned by ``gh issue list --json`` or the REST API."""

    number: int
    title: str = ""
    url: str = ""
    created_at: datetime = Field(validation_alias=AliasChoices("created_at", "createdAt"))
    body: str = ""

    @model_validator(mode="before")
    @classmethod
    def _prefer_html_url(cls, data: object) -> object:
        # The REST API's "url" points at the API resource, not the web page.
        if isinstance(data, dict) and data.get("html_url"):
            payload = cast("dict[str, object]", dict(data))
            payload["url"] = payload["html_url"]
            return payload
        return data

    @field_validator("body", mode="before")
    @classmethod
    def _none_body(cls, value: object) -> object:
        return "" if value is None else value


class ReliabilityReport(FlakefixBaseModel):
    """A fetched reliability report and its parsed records."""

    repository: str
    issue: IssuePayload
    records: list[FlakyTestRecord] = Field(default_factory=list)

    @property
    def observed_until(self) -> datetime:
        """End of the observation window the report covers."""
        return self.issue.created_at

    @property
    def reference(self) -> str:
        """Identifier used to refer back to the report."""
        if self.issue.url:
            return self.issue.url
        return f"{self.repository}#{self.issue.number}"
