"""
Staff Clearance Workflow Engine (Clearance Engine)

Dependency-driven approval engine for staff clearance requests: a fixed
catalog of review steps, per-request step instances, availability
propagation and a derived request lifecycle.
"""

__version__ = "1.0.0"
__author__ = "Clearance Engine Team"
__email__ = "team@example.com"

from .engine.instance_store import StepInstanceStore
from .engine.workflow_definition import WorkflowDefinition
from .workflows.clearance import ClearanceWorkflow

__all__ = [
    "ClearanceWorkflow",
    "StepInstanceStore",
    "WorkflowDefinition",
]
