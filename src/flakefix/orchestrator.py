# Copyright (c) Syntropy Systems
"""Branch, lint, commit and pull-request steps driven through external CLIs."""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from flakefix.config import DIR_NAME
from flakefix.errors import LintError, VerificationError
from flakefix.models.result import PullRequest, ReproductionResult
from flakefix.reproduce import Reproducer, render_command
from flakefix.runner import run_tool
from flakefix.selector import resolve_test_file

if TYPE_CHECKING:
    from pathlib import Path

    from flakefix.config import FlakefixConfig
    from flakefix.models.report import FlakyTestRecord, ReliabilityReport
    from flakefix.models.result import ToolResult

logger = logging.getLogger(__name__)

SUBJECT_LIMIT = 72
_URL = re.compile(r"https?://\S+")

# Run logs live under the checkout; keep them out of status and commits
WORKTREE_PATHSPEC = [".", f":(exclude){DIR_NAME}"]


def slugify(text: str) -> str:
    """Turn a test path into something usable in a branch name."""
    name = text.rsplit("/", 1)[-1]
    name = re.sub(r"\.[A-Za-z0-9]+$", "", name)
    slug = re.sub(r"[^A-Za-z0-9]+", "-", name).strip("-").lower()
    return slug or "test"


def commit_message(
    subsystem: str,
    summary: str,
    reference: str,
    details: str | None = None,
) -> str:
    """Build a commit message with a ``subsystem: summary`` subject."""
    subject = f"{subsystem}: {summary}"
    if len(subject) > SUBJECT_LIMIT:
        subject = subject[: SUBJECT_LIMIT - 3].rstrip() + "..."
    parts = [subject]
    if details:
        parts.append(details)
    parts.append(f"Refs: {reference}")
    return "\n\n".join(parts) + "\n"


def pull_request_body(
    record: FlakyTestRecord,
    report: ReliabilityReport,
    before: ReproductionResult | None,
    after: ReproductionResult | None,
) -> str:
    """Describe the fix for reviewers."""
    lines = [
        f"`{record.test_path}` failed {record.failure_count} time(s) in {report.reference}.",
        "",
    ]
    if before is not None:
        lines.append(f"- Before: {before.describe()}")
    if after is not None:
        lines.append(f"- After: {after.describe()}")
    if record.triggering_references:
        lines.append(f"- Seen in: {', '.join(record.triggering_references)}")
    lines.extend(["", f"Refs: {report.reference}"])
    return "\n".join(lines) + "\n"


class ChangeOrchestrator:
    """Runs the git, linter and hosting CLI steps for one candidate.

    Every step raises ExternalToolError (or a subclass) when its command
    exits non-zero.
    """

    def __init__(
        self,
        config: FlakefixConfig,
        workdir: Path,
        log_dir: Path,
        reproducer: Reproducer | None = None,
    ) -> None:
        self.config = config
        self.workdir = workdir
        self.log_dir = log_dir
        self.reproducer = reproducer or Reproducer(config, workdir, log_dir)

    def _run(self, tool: str, argv: list[str], stage: str, *, check: bool = True) -> ToolResult:
        return run_tool(
            tool,
            argv,
            workdir=self.workdir,
            log_path=self.log_dir / f"{stage}.log",
            timeout=self.config.tool_timeout,
            grace_period=self.config.kill_grace_period,
            check=check,
        )

    def branch_name(self, record: FlakyTestRecord) -> str:
        """Name of the working branch for a candidate."""
        return f"{self.config.branch_prefix}{slugify(record.test_path)}"

    def create_branch(self, name: str) -> None:
        """Create an isolated branch off the upstream base branch."""
        config = self.config
        upstream = f"{config.remote}/{config.base_branch}"
        if config.fetch_before_branch:
            _ = self._run("git", ["git", "fetch", config.remote, config.base_branch], "branch")
        _ = self._run("git", ["git", "checkout", "-b", name, upstream], "branch")
        logger.info("Created branch %s from %s", name, upstream)

    def apply_fix(self, record: FlakyTestRecord, report: ReliabilityReport) -> bool:
        """Run the configured fix command.

        Returns False when no fix command is configured, leaving the fix to
        the caller.
        """
        if not self.config.fix_command:
            return False
        test_file = resolve_test_file(
            record.test_path, self.config.test_file_template, self.workdir
        )
        argv = render_command(
            self.config.fix_command,
            test=record.test_path,
            file=test_file,
            report=report.reference,
        )
        _ = self._run("fix command", argv, "fix")
        return True

    def has_changes(self) -> bool:
        """Whether the checkout has uncommitted changes outside the run logs."""
        result = self._run(
            "git", ["git", "status", "--porcelain", "--", *WORKTREE_PATHSPEC], "status"
        )
        return bool(result.output.strip())

    def lint(self) -> ToolResult:
        """Run the linter in fix mode; remaining violations raise LintError."""
        argv = list(self.config.lint_command)
        result = self._run("linter", argv, "lint", check=False)
        if not result.ok:
            raise LintError("linter", argv, result.exit_code, result.output)
        return result

    def verify(self, record: FlakyTestRecord) -> ReproductionResult:
        """Re-run the test at the escalated repeat count."""
        result = self.reproducer.reproduce(record.test_path, self.config.verify_repeat)
        if result.reproduced:
            raise VerificationError(result)
        return result

    def commit(
        self,
        record: FlakyTestRecord,
        report: ReliabilityReport,
        summary: str | None = None,
        before: ReproductionResult | None = None,
        after: ReproductionResult | None = None,
    ) -> str:
        """Stage everything and commit with a structured message."""
        details = None
        if before is not None and after is not None:
            details = (
                f"Before this change {before.describe()}, "
                f"after it {after.describe()}."
            )
        message = commit_message(
            self.config.commit_subsystem,
            summary or f"deflake {record.test_path}",
            report.reference,
            details,
        )
        _ = self._run("git", ["git", "add", "--all", "--", *WORKTREE_PATHSPEC], "commit")
        _ = self._run("git", ["git", "commit", "--message", message], "commit")
        logger.info("Committed fix for %s", record.test_path)
        return message

    def push(self, branch: str) -> None:
        """Push the working branch to the contributor remote."""
        _ = self._run(
            "git",
            ["git", "push", "--set-upstream", self.config.push_remote, branch],
            "push",
        )

    def submit(
        self,
        record: FlakyTestRecord,
        report: ReliabilityReport,
        branch: str,
        before: ReproductionResult | None = None,
        after: ReproductionResult | None = None,
        summary: str | None = None,
    ) -> PullRequest:
        """Open a pull request through ``gh pr create``."""
        title = f"{self.config.commit_subsystem}: {summary or f'deflake {record.test_path}'}"
        body = pull_request_body(record, report, before, after)
        result = self._run(
            "gh",
            [
                "gh",
                "pr",
                "create",
                "--repo",
                self.config.repository,
                "--base",
                self.config.base_branch,
                "--head",
                branch,
                "--title",
                title,
                "--body",
                body,
            ],
            "submit",
        )
        urls = _URL.findall(result.output)
        url = urls[-1] if urls else result.output.strip()
        logger.info("Opened %s", url)
        return PullRequest(url=url, branch=branch, title=title)
