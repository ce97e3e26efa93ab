"""Database models for the flowqueue service."""

from .execution import Execution
from .job import Job
from .logs import ExecutionLog
from .usage import TenantPlan, TenantUsage
from .workflow import Workflow, WorkflowVersion

__all__ = [
    "Execution",
    "ExecutionLog",
    "Job",
    "TenantPlan",
    "TenantUsage",
    "Workflow",
    "WorkflowVersion",
]
