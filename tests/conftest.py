"""
Shared fixtures for the Clearance Engine tests.
"""

from typing import Dict, List, Optional

import pytest

from clearance_engine.audit import AuditLogger
from clearance_engine.engine.instance_store import StepInstanceStore
from clearance_engine.engine.workflow_definition import WorkflowDefinition
from clearance_engine.models import StepInstance, StepStatus
from clearance_engine.notifications import InMemoryNotificationSink, NotificationDispatcher
from clearance_engine.workflows import ClearanceWorkflow


def chain_catalog(length: int) -> Dict:
    """Catalog of ``length`` steps where each depends on the previous one."""
    return {
        "stages": [{"key": "review", "name": "Review", "status": "department_review"}],
        "steps": [
            {
                "order": order,
                "stage": "review",
                "name": f"Step {order}",
                "roles": [f"Role{order}"],
                "depends_on": [order - 1] if order > 1 else [],
            }
            for order in range(1, length + 1)
        ],
    }


def store_catalog() -> Dict:
    """Catalog with an interdependent pair of store officers feeding a director."""
    return {
        "archive_role": "Archivist",
        "stages": [
            {"key": "departmental_review", "name": "Departmental Review", "status": "department_review"},
            {"key": "property_clearance", "name": "Property Clearance", "status": "property_clearance"},
        ],
        "steps": [
            {"order": 1, "stage": "departmental_review", "name": "Head", "roles": ["DepartmentHead"]},
            {
                "order": 2,
                "stage": "property_clearance",
                "name": "Store 1",
                "roles": ["Store1Officer"],
                "depends_on": [1],
                "interdependent_with": ["Store2Officer"],
            },
            {
                "order": 3,
                "stage": "property_clearance",
                "name": "Store 2",
                "roles": ["Store2Officer"],
                "depends_on": [1],
                "interdependent_with": ["Store1Officer"],
            },
            {
                "order": 4,
                "stage": "property_clearance",
                "name": "Property Director",
                "roles": ["PropertyExecutiveDirector"],
                "depends_on": [2],
            },
        ],
    }


@pytest.fixture
def definition():
    """The bundled 13-step catalog."""
    return WorkflowDefinition.from_yaml()


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def make_engine(tmp_path, sink):
    """Factory for engines over a given catalog with in-memory state."""

    def _make(definition: Optional[WorkflowDefinition] = None, store: Optional[StepInstanceStore] = None):
        return ClearanceWorkflow(
            config={"state_file": None, "audit_dir": str(tmp_path / "audit")},
            definition=definition,
            store=store,
            dispatcher=NotificationDispatcher([sink]),
            audit_logger=AuditLogger(str(tmp_path / "audit")),
        )

    return _make


@pytest.fixture
def engine(make_engine, definition):
    """Engine running the bundled catalog."""
    return make_engine(definition)


@pytest.fixture
def act():
    """Resolve the step with ``order`` on a request, acting in the step's own role."""

    def _act(engine, request_id, order, outcome="cleared", role=None, user_id=None, **kwargs):
        step = step_by_order(engine.get_steps(request_id), order)
        return engine.resolve_step(
            step.id,
            role or step.allowed_roles[0],
            user_id or f"user-{order}",
            outcome,
            **kwargs,
        )

    return _act


@pytest.fixture
def make_instances():
    """Build an instance set for a definition with the given statuses by order."""

    def _make(definition: WorkflowDefinition, statuses: Optional[Dict[int, StepStatus]] = None) -> List[StepInstance]:
        statuses = statuses or {}
        return [
            StepInstance(
                id=f"step-{t.order}",
                request_id="req-1",
                template_order=t.order,
                stage=t.stage,
                name=t.name,
                allowed_roles=list(t.allowed_roles),
                signature_tag=t.signature_tag,
                status=statuses.get(t.order, StepStatus.PENDING),
                can_process=statuses.get(t.order) == StepStatus.AVAILABLE,
            )
            for t in definition.templates
        ]

    return _make


def step_by_order(steps: List[StepInstance], order: int) -> StepInstance:
    for step in steps:
        if step.template_order == order:
            return step
    raise AssertionError(f"No step with order {order}")


def statuses(steps: List[StepInstance]) -> Dict[int, StepStatus]:
    return {s.template_order: s.status for s in steps}
