# Copyright (c) Syntropy Systems
"""Pytest fixtures for flakefix tests."""

import json
import os
import sys
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import yaml

# Store original cwd at module load time
_original_cwd = Path.cwd()

SAMPLE_REPORT = """\
# Flakes in the last week

## JSTest Failure

| Test | Failures | Platform | PRs | Reason |
| --- | ---: | --- | --- | --- |
| `parallel/test-fs-watch` | 12 | test-ubuntu2204-x64, test-debian12-x64 | #101, #102 | `AssertionError` |
| `sequential/test-http-timeout` | 30 | test-osx-arm64 | #103 | `Timeout` |
| `parallel/test-net-connect` | 30 (3 PRs) | win2022-vs2022 | https://github.com/nodejs/node/pull/104 | `ECONNRESET` |
| broken row with | too few |
| `parallel/test-bad-count` | n/a | linux | | |

## Build Failure

| Reason | Count |
| --- | --- |
| Build timed out | 4 |
"""


def tool_script(body: str) -> str:
    """Source of a fake external tool that logs its argv to $FAKE_CALLS."""
    return (
        f"#!{sys.executable}\n"
        "import json, os, sys\n"
        "calls = os.environ.get('FAKE_CALLS')\n"
        "if calls:\n"
        "    with open(calls, 'a') as f:\n"
        "        f.write(json.dumps([os.path.basename(sys.argv[0])] + sys.argv[1:]) + '\\n')\n"
        f"{body}\n"
    )


FAKE_GIT = """\
cmd = sys.argv[1]
if cmd == os.environ.get("FAKE_GIT_FAIL"):
    print("fatal: simulated failure")
    sys.exit(128)
if cmd == "status":
    print(os.environ.get("FAKE_GIT_STATUS", " M test/parallel/test-a.js"))
if cmd == "log":
    print(os.environ.get("FAKE_GIT_LOG", ""))
"""

FAKE_GH = """\
if sys.argv[1:3] == ["issue", "list"]:
    if os.environ.get("FAKE_GH_FAIL"):
        print("error connecting to api.github.com", file=sys.stderr)
        sys.exit(1)
    with open(os.environ["FAKE_ISSUES"]) as f:
        print(f.read())
elif sys.argv[1:3] == ["pr", "create"]:
    if os.environ.get("FAKE_GIT_FAIL") == "pr":
        sys.exit(1)
    print("Creating pull request for fix-flaky-test")
    print("https://github.com/nodejs/node/pull/4242")
"""

# Fails on the attempts listed in $FAKE_FAIL_ON, counting across calls
FAKE_TEST_RUNNER = """\
counter = os.environ["FAKE_COUNTER"]
attempt = 1
if os.path.exists(counter):
    with open(counter) as f:
        attempt = int(f.read()) + 1
with open(counter, "w") as f:
    f.write(str(attempt))
fail_on = {int(n) for n in os.environ.get("FAKE_FAIL_ON", "").split(",") if n}
print(f"run {attempt} of {sys.argv[-1]}")
sys.exit(1 if attempt in fail_on else 0)
"""

# Fails the first $FAKE_LINT_FAILURES times it is called
FAKE_LINTER = """\
counter = os.environ["FAKE_LINT_COUNTER"]
calls = 1
if os.path.exists(counter):
    with open(counter) as f:
        calls = int(f.read()) + 1
with open(counter, "w") as f:
    f.write(str(calls))
if calls <= int(os.environ.get("FAKE_LINT_FAILURES", "0")):
    print("test/parallel/test-a.js: 3:1 error  Missing semicolon  semi")
    sys.exit(1)
"""

FAKE_FIXER = """\
with open(os.environ["FAKE_FIXED"], "a") as f:
    f.write(" ".join(sys.argv[1:]) + "\\n")
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def flakefix_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary checkout with a .flakefix directory."""
    flakefix_dir = temp_dir / ".flakefix"
    flakefix_dir.mkdir()
    (flakefix_dir / "runs").mkdir()

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def write_config(flakefix_project: Path) -> Callable[..., Path]:
    """Write .flakefix/config.yaml with the given values."""

    def write(**values: object) -> Path:
        path = flakefix_project / ".flakefix" / "config.yaml"
        with path.open("w") as f:
            yaml.dump(values, f)
        return path

    return write


@pytest.fixture
def fake_bin(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Put fake git, gh, test runner, linter and fixer first on PATH."""
    bin_dir = temp_dir / "bin"
    bin_dir.mkdir()
    scripts = {
        "git": FAKE_GIT,
        "gh": FAKE_GH,
        "fake-test": FAKE_TEST_RUNNER,
        "fake-lint": FAKE_LINTER,
        "fake-fix": FAKE_FIXER,
    }
    for name, body in scripts.items():
        path = bin_dir / name
        path.write_text(tool_script(body))
        path.chmod(0o755)

    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("FAKE_CALLS", str(temp_dir / "calls.jsonl"))
    monkeypatch.setenv("FAKE_COUNTER", str(temp_dir / "test-counter"))
    monkeypatch.setenv("FAKE_LINT_COUNTER", str(temp_dir / "lint-counter"))
    monkeypatch.setenv("FAKE_FIXED", str(temp_dir / "fixed.txt"))
    return bin_dir


@pytest.fixture
def issues_file(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A `gh issue list --json` payload holding the sample report."""
    path = temp_dir / "issues.json"
    payload = [
        {
            "number": 977,
            "title": "Flakes in the last week",
            "url": "https://github.com/nodejs/reliability/issues/977",
            "createdAt": "2026-10-18T00:00:00Z",
            "body": SAMPLE_REPORT,
        }
    ]
    path.write_text(json.dumps(payload))
    monkeypatch.setenv("FAKE_ISSUES", str(path))
    return path


def read_calls(temp_dir: Path) -> list[list[str]]:
    """Argv lists recorded by the fake tools, in call order."""
    path = temp_dir / "calls.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line]


@pytest.fixture
def sample_report() -> str:
    """Markdown body of a reliability report."""
    return SAMPLE_REPORT


@pytest.fixture
def recorded_calls(temp_dir: Path) -> Callable[[], list[list[str]]]:
    """Return a function listing the fake tool invocations so far."""
    return lambda: read_calls(temp_dir)


@pytest.fixture
def reliability_report(sample_report: str):
    """The sample report as fetched from nodejs/reliability#977."""
    from datetime import datetime, timezone

    from flakefix.models.report import IssuePayload, ReliabilityReport
    from flakefix.parsing import parse_report

    issue = IssuePayload(
        number=977,
        title="Flakes in the last week",
        url="https://github.com/nodejs/reliability/issues/977",
        created_at=datetime(2026, 10, 18, tzinfo=timezone.utc),
        body=sample_report,
    )
    return ReliabilityReport(
        repository="nodejs/reliability",
        issue=issue,
        records=parse_report(sample_report),
    )
