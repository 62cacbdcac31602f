# Copyright (c) Syntropy Systems
"""Tests for flakefix CLI commands."""

import re
from pathlib import Path

import pytest
from typer.testing import CliRunner

from flakefix.cli.main import app
from flakefix.config import load_config

runner = CliRunner()

FAKE_TOOLS = {
    "test_command": ["fake-test", "{test}"],
    "lint_command": ["fake-lint"],
    "repeat": 3,
    "verify_repeat": 5,
}


@pytest.fixture
def configured(write_config, fake_bin: Path, issues_file: Path) -> Path:
    """An initialized checkout whose tools are all fakes."""
    _ = fake_bin, issues_file
    return write_config(**FAKE_TOOLS)


class TestInitCommand:
    """Tests for flakefix init command."""

    def test_init_creates_directory(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch):
        """init creates .flakefix with a loadable default config."""
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Initialized flakefix" in result.stdout
        assert (temp_dir / ".flakefix" / "runs").is_dir()
        assert (temp_dir / ".flakefix" / ".gitignore").read_text() == "*\n"
        config = load_config(temp_dir / ".flakefix")
        assert config.repository == "nodejs/node"
        assert config.fix_command is None

    def test_init_already_initialized(self, flakefix_project: Path):
        """Running init twice leaves the checkout alone."""
        _ = flakefix_project
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Already initialized" in result.stdout


class TestDoctorCommand:
    """Tests for flakefix doctor command."""

    def test_doctor_all_good(self, configured: Path):
        """With every tool present nothing is reported."""
        _ = configured
        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "flakefix directory" in result.stdout
        assert "All checks passed" in result.stdout

    def test_doctor_missing_tools(self, write_config, fake_bin: Path):
        """Tools that cannot be found are warnings."""
        _ = fake_bin
        write_config(test_command=["flakefix-no-such-runner", "{test}"])

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "test runner not found" in result.stdout

    def test_doctor_invalid_config(self, write_config, fake_bin: Path):
        """A broken config is an issue."""
        _ = fake_bin
        write_config(repeat_mode="parallel")

        result = runner.invoke(app, ["doctor"])

        assert "Found 1 issue(s)" in result.stdout

    def test_doctor_no_project(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["doctor"])

        assert "No .flakefix directory found" in result.stdout


class TestFetchCommand:
    """Tests for flakefix fetch command."""

    def test_fetch_lists_records(self, configured: Path):
        """The newest report is fetched and its top records shown."""
        _ = configured
        result = runner.invoke(app, ["fetch", "--limit", "1"])

        assert result.exit_code == 0
        assert "issues/977" in result.stdout
        assert "sequential/test-http-timeout" in result.stdout
        assert "test-fs-watch" not in result.stdout

    def test_fetch_unreachable(
        self, write_config, fake_bin: Path, issues_file: Path, monkeypatch: pytest.MonkeyPatch
    ):
        """Tracker failures exit 1 once the attempts are used up."""
        _ = fake_bin, issues_file
        write_config(**FAKE_TOOLS, fetch_attempts=1)
        monkeypatch.setenv("FAKE_GH_FAIL", "1")

        result = runner.invoke(app, ["fetch"])

        assert result.exit_code == 1
        assert "Error" in result.stdout

    def test_fetch_requires_init(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["fetch"])

        assert result.exit_code == 1


class TestSelectCommand:
    """Tests for flakefix select command."""

    def test_select_shows_candidate(self, configured: Path):
        _ = configured
        result = runner.invoke(app, ["select"])

        assert result.exit_code == 0
        assert "Candidate: sequential/test-http-timeout" in result.stdout

    def test_select_shows_exclusions(self, write_config, fake_bin: Path, issues_file: Path):
        """Excluded records are listed with their reason."""
        _ = fake_bin, issues_file
        write_config(**FAKE_TOOLS, deny_list=["ECONNRESET"], skip_platforms=["arm64"])

        result = runner.invoke(app, ["select"])

        assert result.exit_code == 0
        assert "Excluded 2 record(s)" in result.stdout
        assert "deny-list: ECONNRESET" in result.stdout
        assert "Candidate: parallel/test-fs-watch" in result.stdout

    def test_select_everything_excluded(
        self, write_config, fake_bin: Path, issues_file: Path
    ):
        _ = fake_bin, issues_file
        write_config(**FAKE_TOOLS, deny_list=["re:."])

        result = runner.invoke(app, ["select", "--hide-excluded"])

        assert result.exit_code == 0
        assert "Excluded" not in result.stdout
        assert "No candidate" in result.stdout

    def test_select_invalid_pattern(self, write_config, fake_bin: Path, issues_file: Path):
        """A bad regex in the config is reported, not a traceback."""
        _ = fake_bin, issues_file
        write_config(**FAKE_TOOLS, failure_pattern="(")

        result = runner.invoke(app, ["select"])

        assert result.exit_code == 1
        assert "Invalid failure_pattern" in result.stdout
        assert not isinstance(result.exception, re.error)


class TestReproduceCommand:
    """Tests for flakefix reproduce command."""

    def test_reproduced(self, configured: Path, monkeypatch: pytest.MonkeyPatch):
        _ = configured
        monkeypatch.setenv("FAKE_FAIL_ON", "2")

        result = runner.invoke(app, ["reproduce", "parallel/test-a", "--repeat", "3"])

        assert result.exit_code == 0
        assert "Reproduced" in result.stdout
        assert "1/3 runs failed" in result.stdout

    def test_not_reproduced(self, configured: Path):
        """The configured repeat count is the default."""
        _ = configured
        result = runner.invoke(app, ["reproduce", "parallel/test-a"])

        assert result.exit_code == 0
        assert "Not reproduced" in result.stdout
        assert "0/3 runs failed" in result.stdout

    def test_runner_missing(self, write_config, fake_bin: Path):
        _ = fake_bin
        write_config(test_command=["flakefix-no-such-runner", "{test}"])

        result = runner.invoke(app, ["reproduce", "parallel/test-a", "-r", "2"])

        assert result.exit_code == 1
        assert "exit code" in result.stdout


class TestLintCommand:
    """Tests for flakefix lint command."""

    def test_lint_passes(self, configured: Path):
        _ = configured
        result = runner.invoke(app, ["lint"])

        assert result.exit_code == 0
        assert "Lint passed" in result.stdout

    def test_lint_fails(self, configured: Path, monkeypatch: pytest.MonkeyPatch):
        """Violations are shown with the linter output."""
        _ = configured
        monkeypatch.setenv("FAKE_LINT_FAILURES", "1")

        result = runner.invoke(app, ["lint"])

        assert result.exit_code == 1
        assert "Missing semicolon" in result.stdout


class TestRunCommand:
    """Tests for flakefix run command."""

    def test_triage_only(
        self, configured: Path, monkeypatch: pytest.MonkeyPatch, recorded_calls
    ):
        """--triage-only stops once a candidate reproduces."""
        _ = configured
        monkeypatch.setenv("FAKE_FAIL_ON", "2")

        result = runner.invoke(app, ["run", "--triage-only"])

        assert result.exit_code == 0
        assert "Candidate: sequential/test-http-timeout" in result.stdout
        assert "1/3 runs failed" in result.stdout
        assert not [call for call in recorded_calls() if call[0] == "git"]

    def test_no_candidate_is_not_an_error(self, configured: Path):
        """A report with nothing reproducible exits cleanly."""
        _ = configured
        result = runner.invoke(app, ["run", "--yes"])

        assert result.exit_code == 0
        assert "skip sequential/test-http-timeout" in result.stdout
        assert "No reproducible candidate" in result.stdout

    def test_full_run_with_fix_command(
        self, configured: Path, monkeypatch: pytest.MonkeyPatch, temp_dir: Path
    ):
        """An external fix command takes the run to a pull request."""
        _ = configured
        monkeypatch.setenv("FAKE_FAIL_ON", "2")

        result = runner.invoke(
            app, ["run", "--yes", "--fix-command", "fake-fix {test}", "--verify-repeat", "4"]
        )

        assert result.exit_code == 0
        assert "Opened pull request" in result.stdout
        assert "pull/4242" in result.stdout
        assert "0/4 runs failed" in result.stdout
        assert (temp_dir / "fixed.txt").read_text() == "sequential/test-http-timeout\n"

    def test_interactive_fix(self, configured: Path, monkeypatch: pytest.MonkeyPatch):
        """Without a fix command the operator is asked to fix the test."""
        _ = configured
        monkeypatch.setenv("FAKE_FAIL_ON", "1")

        result = runner.invoke(app, ["run"], input="y\n")

        assert result.exit_code == 0
        assert "Fix sequential/test-http-timeout now" in result.stdout
        assert "pull/4242" in result.stdout

    def test_interactive_fix_declined(
        self, configured: Path, monkeypatch: pytest.MonkeyPatch
    ):
        _ = configured
        monkeypatch.setenv("FAKE_FAIL_ON", "1")

        result = runner.invoke(app, ["run"], input="n\n")

        assert result.exit_code == 1
        assert "Stage fix failed" in result.stdout

    def test_non_interactive_without_fix_command(
        self, configured: Path, monkeypatch: pytest.MonkeyPatch, recorded_calls
    ):
        """--yes without a fix command abandons the candidate before branching."""
        _ = configured
        monkeypatch.setenv("FAKE_FAIL_ON", "1")

        result = runner.invoke(app, ["run", "--yes"])

        assert result.exit_code == 1
        assert "Stage fix failed" in result.stdout
        assert not [call for call in recorded_calls() if call[0] == "git"]

    def test_push_failure(self, configured: Path, monkeypatch: pytest.MonkeyPatch):
        """A failing git step reports the stage and the command."""
        _ = configured
        monkeypatch.setenv("FAKE_FAIL_ON", "1")
        monkeypatch.setenv("FAKE_GIT_FAIL", "push")

        result = runner.invoke(app, ["run", "--yes", "--fix-command", "fake-fix"])

        assert result.exit_code == 1
        assert "Stage submit failed" in result.stdout
        assert "git push" in result.stdout

    def test_run_logs_kept(self, configured: Path, monkeypatch: pytest.MonkeyPatch):
        """Each run writes its logs to its own directory."""
        monkeypatch.setenv("FAKE_FAIL_ON", "1")

        result = runner.invoke(app, ["run", "--triage-only"])

        assert result.exit_code == 0
        runs = list((configured.parent / "runs").iterdir())
        assert len(runs) == 1
        assert any(path.name.startswith("reproduce-") for path in runs[0].iterdir())
