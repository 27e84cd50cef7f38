"""Provisioning engine for Trunk Player installs and teardown."""

from .capabilities import ALL_CAPABILITIES, Capability, probe
from .installation import StepExecutor, execute_plan
from .models import (
    Criticality,
    ExecutionContext,
    ExecutionRecord,
    Goal,
    Outcome,
    Plan,
    RetryPolicy,
    Step,
    project_layout,
)
from .planning import build_plan, render_plan, validate_plan
from .resolution import (
    DatabaseDecision,
    DatabasePath,
    VenvDecision,
    check_prerequisites,
    decide_database,
    decide_venv,
)
from .teardown import TEARDOWN_ORDER, build_teardown

__all__ = [
    "ALL_CAPABILITIES",
    "Capability",
    "probe",
    "Outcome",
    "Criticality",
    "Goal",
    "ExecutionContext",
    "ExecutionRecord",
    "RetryPolicy",
    "Step",
    "Plan",
    "project_layout",
    "DatabaseDecision",
    "DatabasePath",
    "VenvDecision",
    "check_prerequisites",
    "decide_database",
    "decide_venv",
    "build_plan",
    "render_plan",
    "validate_plan",
    "StepExecutor",
    "execute_plan",
    "TEARDOWN_ORDER",
    "build_teardown",
]
