"""
Engine Package for the Clearance Engine.

Workflow definition, instance store and the evaluation, propagation,
aggregation and lifecycle components built on them.
"""

from .dependency_evaluator import DependencyEvaluator
from .instance_store import RequestUnitOfWork, StepInstanceStore
from .lifecycle import ALLOWED_TRANSITIONS, LifecycleController
from .propagator import AvailabilityPropagator
from .status_aggregator import StatusAggregator, completion_percentage
from .workflow_definition import WorkflowDefinition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AvailabilityPropagator",
    "DependencyEvaluator",
    "LifecycleController",
    "RequestUnitOfWork",
    "StatusAggregator",
    "StepInstanceStore",
    "WorkflowDefinition",
    "completion_percentage",
]
