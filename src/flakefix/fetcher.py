# Copyright (c) Syntropy Systems
"""Fetching reliability reports from the issue tracker."""
from __future__ import annotations

import json
import logging
import os
import time
from typing import TYPE_CHECKING, Callable, Protocol, cast

import httpx
from pydantic import TypeAdapter, ValidationError
from typing_extensions import Self

from flakefix.errors import ExternalToolError, FetchError
from flakefix.models.report import IssuePayload, ReliabilityReport
from flakefix.parsing import parse_report
from flakefix.runner import run_tool

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

    from flakefix.config import FlakefixConfig

logger = logging.getLogger(__name__)

_ISSUE_LIST_ADAPTER = TypeAdapter(list[IssuePayload])

GH_JSON_FIELDS = "number,title,url,createdAt,body"


class IssueSource(Protocol):
    """Anything that can list the newest issues of a repository."""

    def latest_issues(
        self,
        repository: str,
        limit: int,
        label: str | None = None,
    ) -> list[IssuePayload]:
        ...


def _decode_json_array(payload: str) -> object | None:
    """Decode the first JSON array in output that may carry stderr noise."""
    try:
        return cast("object", json.loads(payload))
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    idx = payload.find("[")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(payload[idx:])
        except json.JSONDecodeError:
            idx = payload.find("[", idx + 1)
            continue
        return cast("object", obj)
    return None


def _validate_issues(data: object, origin: str) -> list[IssuePayload]:
    try:
        return _ISSUE_LIST_ADAPTER.validate_python(data)
    except ValidationError as e:
        msg = f"Malformed issue list from {origin}: {e.error_count()} validation error(s)"
        raise FetchError(msg) from e


class GhCliSource:
    """Lists issues through ``gh issue list``."""

    def __init__(
        self,
        workdir: Path,
        log_path: Path,
        timeout: float = 120.0,
        executable: str = "gh",
    ) -> None:
        self.workdir = workdir
        self.log_path = log_path
        self.timeout = timeout
        self.executable = executable

    def latest_issues(
        self,
        repository: str,
        limit: int,
        label: str | None = None,
    ) -> list[IssuePayload]:
        argv = [
            self.executable,
            "issue",
            "list",
            "--repo",
            repository,
            "--limit",
            str(limit),
            "--state",
            "all",
            "--json",
            GH_JSON_FIELDS,
        ]
        if label:
            argv.extend(["--label", label])

        try:
            result = run_tool(
                "gh",
                argv,
                workdir=self.workdir,
                log_path=self.log_path,
                timeout=self.timeout,
            )
        except ExternalToolError as e:
            msg = f"Could not list issues for {repository}: {e}"
            raise FetchError(msg) from e

        data = _decode_json_array(result.output)
        if data is None:
            msg = f"gh returned invalid JSON for {repository}"
            raise FetchError(msg)
        return _validate_issues(data, "gh")


class GitHubApiSource:
    """Lists issues through the GitHub REST API."""

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            api_url: Base URL of the API
            token: Bearer token; defaults to GITHUB_TOKEN or GH_TOKEN
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)

        """
        if token is None:
            token = os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.api_url = api_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> Self:
        """Enter the source context and return self."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the source context and close the HTTP client."""
        self.close()

    def latest_issues(
        self,
        repository: str,
        limit: int,
        label: str | None = None,
    ) -> list[IssuePayload]:
        params: dict[str, str | int] = {"per_page": limit, "state": "all"}
        if label:
            params["labels"] = label
        try:
            response = self._client.get(f"/repos/{repository}/issues", params=params)
            _ = response.raise_for_status()
            data = cast("object", response.json())
        except httpx.HTTPStatusError as e:
            msg = f"Server error: {e.response.status_code} for {repository}"
            raise FetchError(msg) from e
        except httpx.RequestError as e:
            msg = f"Connection error: {e}"
            raise FetchError(msg) from e
        except ValueError as e:
            msg = f"API returned invalid JSON for {repository}: {e}"
            raise FetchError(msg) from e

        if not isinstance(data, list):
            msg = f"Malformed issue list from API: expected a list, got {type(data).__name__}"
            raise FetchError(msg)
        # The issues endpoint also returns pull requests
        issues = [
            item
            for item in cast("list[object]", data)
            if not (isinstance(item, dict) and "pull_request" in item)
        ]
        return _validate_issues(issues[:limit], "API")


class IssueFetcher:
    """Fetches the newest reliability report with a bounded retry."""

    def __init__(
        self,
        source: IssueSource,
        attempts: int = 3,
        backoff: float = 2.0,
        limit: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.attempts = attempts
        self.backoff = backoff
        self.limit = limit
        self._sleep = sleep

    def _delay(self, attempt: int) -> float:
        return self.backoff * (2**attempt)

    def latest_issue(self, repository: str, label: str | None = None) -> IssuePayload:
        """Return the newest issue, retrying transient failures."""
        last_error: FetchError | None = None
        for attempt in range(self.attempts):
            try:
                issues = self.source.latest_issues(repository, self.limit, label)
            except FetchError as e:
                last_error = e
                if attempt + 1 < self.attempts:
                    delay = self._delay(attempt)
                    logger.warning(
                        "Fetch attempt %d/%d failed: %s; retrying in %.1fs",
                        attempt + 1,
                        self.attempts,
                        e,
                        delay,
                    )
                    self._sleep(delay)
                continue
            if not issues:
                msg = f"No reliability reports found in {repository}"
                raise FetchError(msg)
            return max(issues, key=lambda issue: issue.created_at)

        if last_error is None:
            msg = f"No fetch attempts were made for {repository}"
            raise FetchError(msg)
        raise last_error

    def fetch_latest(self, repository: str, label: str | None = None) -> ReliabilityReport:
        """Fetch and parse the newest reliability report."""
        issue = self.latest_issue(repository, label)
        records = parse_report(issue.body)
        logger.info(
            "Parsed %d record(s) from %s#%d", len(records), repository, issue.number
        )
        return ReliabilityReport(repository=repository, issue=issue, records=records)


def make_source(config: FlakefixConfig, workdir: Path, log_path: Path) -> IssueSource:
    """Build the issue source selected by ``config.tracker``."""
    if config.tracker == "api":
        return GitHubApiSource(api_url=config.api_url, timeout=config.tool_timeout)
    return GhCliSource(workdir, log_path, timeout=config.tool_timeout)
