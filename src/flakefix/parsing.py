# Copyright (c) Syntropy Systems
"""Markdown table parsing for reliability reports."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from pydantic import ValidationError

from flakefix.models.report import FlakyTestRecord, Platform

logger = logging.getLogger(__name__)

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "test": ("test", "test path", "test name", "tests", "name"),
    "failures": ("failures", "failure count", "count", "fails", "failed", "# failures"),
    "platform": ("platform", "platforms", "appeared", "appeared in", "os"),
    "references": (
        "prs",
        "failed prs",
        "failed pr",
        "pull requests",
        "references",
        "refs",
        "triggering references",
    ),
    "reason": ("reason", "type", "signature", "error"),
}

_SEPARATOR_CELL = re.compile(r"^:?-{2,}:?$")
_CELL_SPLIT = re.compile(r"(?<!\\)\|")
_INTEGER = re.compile(r"-?\d+")
_REFERENCE = re.compile(r"https?://[^\s)>\]]+|[\w.-]+/[\w.-]+#\d+|#\d+")
_LINK = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_PLATFORM_SPLIT = re.compile(r"[,;\s]+")


def split_row(line: str) -> list[str]:
    """Split a markdown table row into stripped cell texts."""
    text = line.strip()
    text = text.removeprefix("|")
    if text.endswith("|") and not text.endswith("\\|"):
        text = text[:-1]
    return [cell.strip().replace("\\|", "|") for cell in _CELL_SPLIT.split(text)]


def _is_separator(cells: list[str]) -> bool:
    return bool(cells) and all(_SEPARATOR_CELL.match(cell.replace(" ", "")) for cell in cells)


def _column_map(header: list[str]) -> dict[str, int]:
    columns: dict[str, int] = {}
    for index, cell in enumerate(header):
        name = _LINK.sub(r"\1", cell).strip("*_` ").lower()
        for column, aliases in COLUMN_ALIASES.items():
            if column not in columns and name in aliases:
                columns[column] = index
    return columns


def clean_test_path(cell: str) -> str:
    """Strip markdown decoration (links, backticks, emphasis) from a test name."""
    text = _LINK.sub(r"\1", cell)
    return text.strip().strip("`*_").strip()


def parse_failure_count(cell: str) -> int | None:
    """Return the first integer in the cell, or None when there is none."""
    match = _INTEGER.search(cell.replace(",", ""))
    if match is None:
        return None
    return int(match.group(0))


def parse_references(cell: str) -> list[str]:
    """Return ``#123``-style references and URLs in order of appearance."""
    return list(dict.fromkeys(_REFERENCE.findall(cell)))


def parse_platform(cell: str) -> Platform:
    """Classify a platform cell that may list several CI labels."""
    labels = [_LINK.sub(r"\1", label).strip("`") for label in _PLATFORM_SPLIT.split(cell)]
    labels = [label for label in labels if label]
    if not labels:
        return Platform.OTHER
    return Platform.combine(Platform.classify(label) for label in labels)


@dataclass
class _Row:
    test_path: str
    failure_count: int
    platforms: list[Platform] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    reason: str | None = None
    position: int = 0


def _iter_tables(body: str) -> list[list[list[str]]]:
    """Group consecutive table lines into tables of split rows."""
    tables: list[list[list[str]]] = []
    current: list[list[str]] = []
    for line in body.splitlines():
        if line.strip().startswith("|"):
            current.append(split_row(line))
            continue
        if current:
            tables.append(current)
            current = []
    if current:
        tables.append(current)
    return tables


def _parse_table(table: list[list[str]], rows: dict[str, _Row]) -> None:
    if len(table) < 2 or not _is_separator(table[1]):  # noqa: PLR2004
        logger.debug("Ignoring table without a header separator")
        return
    columns = _column_map(table[0])
    if "test" not in columns or "failures" not in columns:
        logger.debug("Ignoring table with columns %s", table[0])
        return

    width = len(table[0])
    for line_no, cells in enumerate(table[2:], start=3):
        if len(cells) != width:
            logger.warning(
                "Skipping row %d: expected %d cells, got %d", line_no, width, len(cells)
            )
            continue

        test_path = clean_test_path(cells[columns["test"]])
        if not test_path:
            logger.warning("Skipping row %d: empty test name", line_no)
            continue

        count = parse_failure_count(cells[columns["failures"]])
        if count is None or count < 0:
            logger.warning(
                "Skipping row %d (%s): invalid failure count %r",
                line_no,
                test_path,
                cells[columns["failures"]],
            )
            continue

        platform = (
            parse_platform(cells[columns["platform"]])
            if "platform" in columns
            else Platform.OTHER
        )
        references = (
            parse_references(cells[columns["references"]])
            if "references" in columns
            else []
        )
        reason = cells[columns["reason"]].strip("`") if "reason" in columns else None

        existing = rows.get(test_path)
        if existing is None:
            rows[test_path] = _Row(
                test_path=test_path,
                failure_count=count,
                platforms=[platform],
                references=references,
                reason=reason or None,
                position=len(rows),
            )
            continue

        # Same test listed again: merge into its first appearance
        existing.failure_count += count
        existing.platforms.append(platform)
        existing.references = list(dict.fromkeys(existing.references + references))
        if existing.reason is None and reason:
            existing.reason = reason


def parse_report(body: str) -> list[FlakyTestRecord]:
    """Parse every recognized markdown table in a report body.

    Returns records ordered by failure count, highest first. Records with the
    same count keep the order in which they first appear in the report.
    Malformed rows are skipped and logged.
    """
    rows: dict[str, _Row] = {}
    for table in _iter_tables(body):
        _parse_table(table, rows)

    records: list[FlakyTestRecord] = []
    for row in rows.values():
        try:
            records.append(
                FlakyTestRecord(
                    test_path=row.test_path,
                    failure_count=row.failure_count,
                    platform=Platform.combine(row.platforms),
                    triggering_references=tuple(row.references),
                    reason=row.reason,
                    position=row.position,
                )
            )
        except ValidationError as e:
            logger.warning("Skipping record %s: %s", row.test_path, e)

    # sorted() is stable, so equal counts keep report order
    return sorted(records, key=lambda record: -record.failure_count)
