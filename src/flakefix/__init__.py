"""
flakefix - Flaky test triage automation.

Fetch the reliability report, pick a test, reproduce it, ship the fix.
"""

from flakefix.config import FlakefixConfig, load_config
from flakefix.parsing import parse_report
from flakefix.workflow import FlakeWorkflow, WorkflowState

__version__ = "0.1.0"
__all__ = [
    "FlakeWorkflow",
    "FlakefixConfig",
    "WorkflowState",
    "__version__",
    "load_config",
    "parse_report",
]
