"""
Workflow Status Aggregator for the Clearance Engine.

Folds the step instances of a request into a read-only progress summary.
"""

import logging
from typing import List, Optional

from ..errors import RequestNotFound
from ..models import (
    ClearanceRequest,
    OverallProgress,
    RequestStatus,
    StageSummary,
    StepInstance,
    StepStatus,
    StepSummary,
    WorkflowStatus,
)
from .instance_store import StepInstanceStore
from .workflow_definition import WorkflowDefinition

logger = logging.getLogger(__name__)

# Coarse progress indicator only; eligibility always comes from the instances.
CURRENT_STAGE_BY_STATUS = {
    RequestStatus.INITIATED: 1,
    RequestStatus.VP_INITIAL_APPROVAL: 1,
    RequestStatus.DEPARTMENT_REVIEW: 2,
    RequestStatus.PROPERTY_CLEARANCE: 3,
    RequestStatus.FINANCE_CLEARANCE: 4,
    RequestStatus.HR_CLEARANCE: 5,
    RequestStatus.VP_FINAL_APPROVAL: 5,
    RequestStatus.COMPLETED: 5,
    RequestStatus.ARCHIVED: 5,
}


def completion_percentage(cleared: int, total: int) -> int:
    """cleared/total as a percentage, rounded half up."""
    if total <= 0:
        return 0
    return (200 * cleared + total) // (2 * total)


def _step_summary(instance: StepInstance) -> StepSummary:
    return StepSummary(
        id=instance.id,
        order=instance.template_order,
        name=instance.name,
        allowed_roles=list(instance.allowed_roles),
        status=instance.status,
        can_process=instance.can_process,
        acted_by=instance.acted_by,
        last_updated_at=instance.last_updated_at,
        signature_tag=instance.signature_tag,
    )


class StatusAggregator:
    """Produces WorkflowStatus summaries; never mutates anything."""

    def __init__(self, definition: WorkflowDefinition, store: Optional[StepInstanceStore] = None):
        self.definition = definition
        self.store = store

    def summarize(self, request_id: str) -> WorkflowStatus:
        """
        Summarize a stored request.

        Raises:
            RequestNotFound: if the request or its instance set is missing
        """
        if self.store is None:
            raise RuntimeError("StatusAggregator has no store to read from")

        request = self.store.get_request(request_id)
        instances = self.store.load_instances(request_id)
        if request is None or not instances:
            raise RequestNotFound(request_id)

        return self.summarize_instances(request, instances)

    def summarize_instances(self, request: ClearanceRequest, instances: List[StepInstance]) -> WorkflowStatus:
        """Pure fold over a request and its instances."""
        ordered = sorted(instances, key=lambda i: i.template_order)
        # Failed and archived requests have nothing left to act on.
        actionable = not request.status.is_terminal

        stages_summary = []
        for stage in self.definition.stages:
            stage_steps = [i for i in ordered if i.stage == stage.key]
            counts = self._count(stage_steps)
            stages_summary.append(
                StageSummary(
                    stage=stage.key,
                    name=stage.name,
                    description=stage.description,
                    total_steps=len(stage_steps),
                    completed_steps=counts[StepStatus.CLEARED],
                    pending_steps=counts[StepStatus.PENDING],
                    available_steps=counts[StepStatus.AVAILABLE],
                    rejected_steps=counts[StepStatus.REJECTED],
                    is_completed=counts[StepStatus.CLEARED] == len(stage_steps),
                    can_progress=actionable and counts[StepStatus.AVAILABLE] > 0,
                    steps=[_step_summary(i) for i in stage_steps],
                )
            )

        counts = self._count(ordered)
        overall = OverallProgress(
            total_steps=len(ordered),
            completed_steps=counts[StepStatus.CLEARED],
            pending_steps=counts[StepStatus.PENDING],
            available_steps=counts[StepStatus.AVAILABLE],
            rejected_steps=counts[StepStatus.REJECTED],
            completion_percentage=completion_percentage(counts[StepStatus.CLEARED], len(ordered)),
        )

        return WorkflowStatus(
            request_id=request.id,
            reference_code=request.reference_code,
            status=request.status,
            current_stage=self._current_stage(request, ordered),
            vp_initial_signed=request.vp_initial_signed_at is not None,
            vp_final_signed=request.vp_final_signed_at is not None,
            is_archived=request.is_archived,
            is_blocked=counts[StepStatus.REJECTED] > 0,
            overall_progress=overall,
            stages_summary=stages_summary,
            next_available_steps=[
                _step_summary(i) for i in ordered
                if actionable and i.status == StepStatus.AVAILABLE and i.can_process
            ],
        )

    def _current_stage(self, request: ClearanceRequest, instances: List[StepInstance]) -> int:
        """Stage number for the macro status; a failed request reports where it stopped."""
        if request.status != RequestStatus.FAILED:
            return CURRENT_STAGE_BY_STATUS.get(request.status, 1)

        for instance in instances:
            if instance.status == StepStatus.REJECTED:
                return self.definition.stage_position(instance.stage)
        return 1

    @staticmethod
    def _count(instances: List[StepInstance]):
        counts = {status: 0 for status in StepStatus}
        for instance in instances:
            counts[instance.status] += 1
        return counts
