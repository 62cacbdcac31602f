# Copyright (c) Syntropy Systems
"""The fetch → select → reproduce → fix → submit pipeline."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from flakefix.errors import (
    ExternalToolError,
    FlakefixError,
    LintError,
    NoCandidateError,
    NonReproducibleError,
)
from flakefix.fetcher import GitHubApiSource, IssueFetcher, make_source
from flakefix.models.report import Platform
from flakefix.orchestrator import ChangeOrchestrator
from flakefix.reproduce import Reproducer
from flakefix.selector import DenyList, GitLastModified, LastModified, rank_candidates

if TYPE_CHECKING:
    from pathlib import Path

    from flakefix.config import FlakefixConfig
    from flakefix.fetcher import IssueSource
    from flakefix.models.report import FlakyTestRecord, ReliabilityReport
    from flakefix.models.result import PullRequest, ReproductionResult, Selection

logger = logging.getLogger(__name__)

# Called when a fix must be applied by hand; receives the candidate and,
# on a retry, the lint error to correct. Returns False to abandon.
FixHook = Callable[["FlakyTestRecord", "LintError | None"], bool]


def new_run_id() -> str:
    """Create a sortable identifier for a workflow run."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


@dataclass
class WorkflowState:
    """Process-scoped state of one workflow run."""

    run_id: str
    stage: str = "start"
    report: ReliabilityReport | None = None
    selection: Selection | None = None
    candidate: FlakyTestRecord | None = None
    branch: str | None = None
    results: dict[str, ReproductionResult] = field(default_factory=dict)
    verification: ReproductionResult | None = None
    pull_request: PullRequest | None = None
    log: list[str] = field(default_factory=list)

    def enter(self, stage: str) -> None:
        """Record a stage transition."""
        self.stage = stage
        self.note(f"stage: {stage}")

    def note(self, message: str) -> None:
        """Append a line to the run log."""
        self.log.append(message)
        logger.info(message)


class FlakeWorkflow:
    """Drives one candidate from a reliability report to a pull request.

    Failures while fetching, selecting or reproducing abort only the current
    candidate. Once a branch has been created any failure aborts the whole
    run, since the working tree is no longer in a known state.
    """

    def __init__(
        self,
        config: FlakefixConfig,
        workdir: Path,
        run_dir: Path,
        source: IssueSource | None = None,
        fix_hook: FixHook | None = None,
        last_modified: LastModified | None = None,
    ) -> None:
        self.config = config
        self.workdir = workdir
        self.run_dir = run_dir
        self._owns_source = source is None
        self.source = source or make_source(config, workdir, run_dir / "fetch.log")
        self.fix_hook = fix_hook
        self.last_modified = last_modified or GitLastModified(
            workdir,
            run_dir / "select.log",
            config.test_file_template,
            timeout=config.tool_timeout,
        )
        self.reproducer = Reproducer(config, workdir, run_dir)
        self.orchestrator = ChangeOrchestrator(config, workdir, run_dir, self.reproducer)
        self.state = WorkflowState(run_id=run_dir.name)

    def close(self) -> None:
        """Release the issue source if this workflow created it."""
        if self._owns_source and isinstance(self.source, GitHubApiSource):
            self.source.close()

    def fetch(self) -> ReliabilityReport:
        """Fetch and parse the newest reliability report."""
        self.state.enter("fetch")
        fetcher = IssueFetcher(
            self.source,
            attempts=self.config.fetch_attempts,
            backoff=self.config.fetch_backoff,
            limit=self.config.report_limit,
        )
        report = fetcher.fetch_latest(
            self.config.report_repository, self.config.report_label
        )
        self.state.report = report
        self.state.note(
            f"report {report.reference}: {len(report.records)} record(s)"
        )
        return report

    def select(self, report: ReliabilityReport) -> Selection:
        """Rank the report's records after applying the exclusion heuristics."""
        self.state.enter("select")
        selection = rank_candidates(
            report.records,
            deny_list=DenyList(self.config.deny_list),
            skip_platforms=[Platform(name) for name in self.config.skip_platforms],
            observed_until=report.observed_until,
            last_modified=self.last_modified,
        )
        self.state.selection = selection
        self.state.note(
            f"{len(selection.ranked)} eligible, {len(selection.excluded)} excluded"
        )
        return selection

    def reproduce(self, record: FlakyTestRecord) -> ReproductionResult:
        """Reproduce one candidate; NonReproducibleError when it never fails."""
        self.state.enter("reproduce")
        self.state.candidate = record
        result = self.reproducer.reproduce(record.test_path, self.config.repeat)
        self.state.results[record.test_path] = result
        if not result.reproduced:
            raise NonReproducibleError(result)
        return result

    def triage(self) -> tuple[FlakyTestRecord, ReproductionResult]:
        """Find the first ranked candidate that fails locally.

        Raises NoCandidateError when every candidate is excluded, does not
        reproduce, or cannot be run.
        """
        report = self.state.report or self.fetch()
        selection = self.select(report)

        candidates = selection.ranked
        if self.config.max_candidates:
            candidates = candidates[: self.config.max_candidates]

        for record in candidates:
            try:
                result = self.reproduce(record)
            except NonReproducibleError as e:
                self.state.note(f"skip {record.test_path}: {e}")
                continue
            except ExternalToolError as e:
                self.state.note(f"abandon {record.test_path}: {e}")
                continue
            self.state.note(f"candidate {record.test_path}: {result.describe()}")
            return record, result

        self.state.candidate = None
        msg = "No reproducible candidate in the latest report"
        raise NoCandidateError(msg)

    def _apply_fix(self, record: FlakyTestRecord, report: ReliabilityReport) -> None:
        self.state.enter("fix")
        if self.orchestrator.apply_fix(record, report):
            return
        if self.fix_hook is None or not self.fix_hook(record, None):
            msg = f"No fix applied for {record.test_path}"
            raise FlakefixError(msg)

    def _lint(self, record: FlakyTestRecord, report: ReliabilityReport) -> None:
        self.state.enter("lint")
        for attempt in range(1, self.config.lint_attempts + 1):
            try:
                _ = self.orchestrator.lint()
            except LintError as e:
                self.state.note(f"lint attempt {attempt} failed: {e}")
                if attempt == self.config.lint_attempts:
                    raise
                if self.config.fix_command:
                    _ = self.orchestrator.apply_fix(record, report)
                elif self.fix_hook is None or not self.fix_hook(record, e):
                    raise
                continue
            return

    def fix(
        self,
        record: FlakyTestRecord,
        before: ReproductionResult,
    ) -> PullRequest:
        """Branch, fix, lint, verify, commit, push and open a pull request."""
        if not before.reproduced:
            raise NonReproducibleError(before)
        report = self.state.report
        if report is None:
            msg = "fix() needs a fetched report"
            raise FlakefixError(msg)

        if not self.config.fix_command and self.fix_hook is None:
            self.state.enter("fix")
            msg = f"No fix command configured and no one to fix {record.test_path}"
            raise FlakefixError(msg)

        orchestrator = self.orchestrator
        self.state.enter("branch")
        branch = orchestrator.branch_name(record)
        orchestrator.create_branch(branch)
        self.state.branch = branch

        self._apply_fix(record, report)
        if not orchestrator.has_changes():
            msg = f"The fix for {record.test_path} left no changes to commit"
            raise FlakefixError(msg)

        self._lint(record, report)

        self.state.enter("verify")
        after = orchestrator.verify(record)
        self.state.verification = after
        self.state.note(f"verified {record.test_path}: {after.describe()}")

        self.state.enter("commit")
        _ = orchestrator.commit(record, report, before=before, after=after)

        self.state.enter("submit")
        orchestrator.push(branch)
        pull_request = orchestrator.submit(record, report, branch, before=before, after=after)
        self.state.pull_request = pull_request
        self.state.enter("done")
        return pull_request

    def run(self) -> WorkflowState:
        """Run the whole pipeline for the best reproducible candidate."""
        record, before = self.triage()
        _ = self.fix(record, before)
        return self.state
