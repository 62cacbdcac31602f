# Copyright (c) Syntropy Systems
"""Candidate selection: exclusion heuristics and ranking."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from flakefix.errors import ConfigError, ExternalToolError
from flakefix.models.report import FlakyTestRecord, Platform
from flakefix.models.result import Exclusion, Selection
from flakefix.runner import run_tool

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

REGEX_PREFIX = "re:"

LastModified = Callable[[str], Optional[datetime]]


class DenyList:
    """Known infrastructure-failure signatures.

    Entries prefixed with ``re:`` are regular expressions searched in the
    test path and the failure reason. Other entries match a test path
    exactly or occur verbatim in the failure reason.
    """

    def __init__(self, entries: Iterable[str] = ()) -> None:
        self.exact: list[str] = []
        self.patterns: list[re.Pattern[str]] = []
        for entry in entries:
            if entry.startswith(REGEX_PREFIX):
                try:
                    self.patterns.append(re.compile(entry[len(REGEX_PREFIX):]))
                except re.error as e:
                    msg = f"Invalid deny_list pattern {entry!r}: {e}"
                    raise ConfigError(msg) from e
            elif entry:
                self.exact.append(entry)

    def match(self, record: FlakyTestRecord) -> str | None:
        """Return the matching signature, or None."""
        reason = record.reason or ""
        for signature in self.exact:
            if signature == record.test_path or (reason and signature in reason):
                return signature
        for pattern in self.patterns:
            if pattern.search(record.test_path) or (reason and pattern.search(reason)):
                return f"{REGEX_PREFIX}{pattern.pattern}"
        return None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def rank_candidates(
    records: Sequence[FlakyTestRecord],
    *,
    deny_list: DenyList | None = None,
    skip_platforms: Iterable[Platform] = (),
    observed_until: datetime | None = None,
    last_modified: LastModified | None = None,
) -> Selection:
    """Filter records through the exclusion heuristics and rank the rest.

    Exclusions are applied in order: deny-list signatures, skipped platforms,
    then test files modified after the report's observation window. The
    remaining records are ordered by failure count, highest first, with ties
    going to the record that appears first in the report.
    """
    deny_list = deny_list or DenyList()
    skipped = set(skip_platforms)
    eligible: list[FlakyTestRecord] = []
    excluded: list[Exclusion] = []

    for record in records:
        signature = deny_list.match(record)
        if signature is not None:
            excluded.append(Exclusion(record=record, reason=f"deny-list: {signature}"))
            continue
        if record.platform in skipped:
            excluded.append(
                Exclusion(record=record, reason=f"platform-only: {record.platform.value}")
            )
            continue
        if observed_until is not None and last_modified is not None:
            modified = last_modified(record.test_path)
            if modified is not None and _as_utc(modified) > _as_utc(observed_until):
                excluded.append(
                    Exclusion(
                        record=record,
                        reason=f"modified after report: {modified.isoformat()}",
                    )
                )
                continue
        eligible.append(record)

    for exclusion in excluded:
        logger.info("Excluded %s (%s)", exclusion.record.test_path, exclusion.reason)

    ranked = sorted(
        eligible,
        key=lambda record: (-record.failure_count, record.position),
    )
    return Selection(ranked=ranked, excluded=excluded)


def select_candidate(
    records: Sequence[FlakyTestRecord],
    *,
    deny_list: DenyList | None = None,
    skip_platforms: Iterable[Platform] = (),
    observed_until: datetime | None = None,
    last_modified: LastModified | None = None,
) -> FlakyTestRecord | None:
    """Return the single best candidate, or None when all are excluded."""
    return rank_candidates(
        records,
        deny_list=deny_list,
        skip_platforms=skip_platforms,
        observed_until=observed_until,
        last_modified=last_modified,
    ).candidate


def resolve_test_file(test_path: str, template: str, workdir: Path) -> Path:
    """Map a test identifier to the file that defines it."""
    direct = workdir / test_path
    if direct.is_file():
        return direct
    return workdir / template.format(test=test_path)


class GitLastModified:
    """Looks up when a test file was last committed, via ``git log``."""

    def __init__(
        self,
        workdir: Path,
        log_path: Path,
        template: str,
        timeout: float = 60.0,
    ) -> None:
        self.workdir = workdir
        self.log_path = log_path
        self.template = template
        self.timeout = timeout

    def __call__(self, test_path: str) -> datetime | None:
        test_file = resolve_test_file(test_path, self.template, self.workdir)
        if not test_file.exists():
            logger.debug("No test file for %s at %s", test_path, test_file)
            return None
        try:
            result = run_tool(
                "git",
                ["git", "log", "-1", "--format=%cI", "--", str(test_file)],
                workdir=self.workdir,
                log_path=self.log_path,
                timeout=self.timeout,
            )
        except ExternalToolError as e:
            logger.warning("Could not read history of %s: %s", test_file, e)
            return None
        stamp = result.output.strip()
        if not stamp:
            return None
        try:
            return datetime.fromisoformat(stamp.splitlines()[-1])
        except ValueError:
            logger.warning("Unexpected git date %r for %s", stamp, test_file)
            return None
