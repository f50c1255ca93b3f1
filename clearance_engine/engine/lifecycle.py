"""
Request Lifecycle Controller for the Clearance Engine.

Drives the macro status of a clearance request from aggregate step
completion, records bookend signatures and guards the archiving action.
"""

import logging
from typing import Dict, List, Optional, Set

from ..errors import InvalidTransition, RoleMismatch
from ..models import (
    ClearanceRequest,
    RequestStatus,
    SignatureTag,
    StatusChange,
    StepInstance,
    StepStatus,
)
from .workflow_definition import WorkflowDefinition

logger = logging.getLogger(__name__)

PROGRESSION: List[RequestStatus] = [
    RequestStatus.INITIATED,
    RequestStatus.VP_INITIAL_APPROVAL,
    RequestStatus.DEPARTMENT_REVIEW,
    RequestStatus.PROPERTY_CLEARANCE,
    RequestStatus.FINANCE_CLEARANCE,
    RequestStatus.HR_CLEARANCE,
    RequestStatus.VP_FINAL_APPROVAL,
    RequestStatus.COMPLETED,
]


def _build_transitions() -> Dict[RequestStatus, Set[RequestStatus]]:
    transitions: Dict[RequestStatus, Set[RequestStatus]] = {}
    for index, status in enumerate(PROGRESSION):
        allowed = set(PROGRESSION[index + 1:])
        if status != RequestStatus.COMPLETED:
            allowed.add(RequestStatus.FAILED)
        transitions[status] = allowed
    transitions[RequestStatus.COMPLETED] = {RequestStatus.ARCHIVED}
    transitions[RequestStatus.ARCHIVED] = set()
    transitions[RequestStatus.FAILED] = set()
    return transitions


ALLOWED_TRANSITIONS: Dict[RequestStatus, Set[RequestStatus]] = _build_transitions()


def transition(request: ClearanceRequest, to: RequestStatus, reason: Optional[str] = None) -> StatusChange:
    """
    Move a request to a new macro status.

    Raises:
        InvalidTransition: if ``to`` is not reachable from the current status
    """
    current = request.status
    if to not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(request.id, current.value, to.value, reason)

    change = StatusChange(from_status=current, to_status=to, reason=reason)
    request.status = to
    request.status_history.append(change)

    now = change.changed_at
    if to == RequestStatus.COMPLETED:
        request.completed_at = now
    elif to == RequestStatus.FAILED:
        request.rejected_at = now

    logger.info(f"Request {request.reference_code}: {current.value} -> {to.value}")
    return change


class LifecycleController:
    """
    State machine over a request's macro status.

    The macro status is a coarse progress indicator derived from the step
    instances; it never decides eligibility.
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._initial = definition.bookend(SignatureTag.INITIAL)
        self._final = definition.bookend(SignatureTag.FINAL)

    def derive_status(self, request: ClearanceRequest, instances: List[StepInstance]) -> RequestStatus:
        """Macro status implied by the current instance states."""
        if request.status.is_terminal:
            return request.status

        if any(i.status == StepStatus.REJECTED for i in instances):
            return RequestStatus.FAILED

        uncleared = {i.template_order for i in instances if i.status != StepStatus.CLEARED}
        if not uncleared:
            return RequestStatus.COMPLETED

        if self._initial is not None:
            if self._initial.order in uncleared:
                return RequestStatus.INITIATED
            cleared = {i.template_order for i in instances} - uncleared
            if cleared == {self._initial.order}:
                return RequestStatus.VP_INITIAL_APPROVAL

        if self._final is not None and uncleared == {self._final.order}:
            return RequestStatus.VP_FINAL_APPROVAL

        for stage in self.definition.stages:
            stage_orders = {i.template_order for i in instances if i.stage == stage.key}
            if stage_orders & uncleared:
                return stage.status

        return RequestStatus.COMPLETED

    def advance(self, request: ClearanceRequest, instances: List[StepInstance]) -> List[StatusChange]:
        """
        Bring the request's macro status in line with its instances.

        Returns:
            The transitions applied (empty when nothing changed)
        """
        target = self.derive_status(request, instances)
        if target == request.status:
            return []

        if target == RequestStatus.FAILED:
            rejected = next(i for i in instances if i.status == StepStatus.REJECTED)
            request.rejection_reason = rejected.comment
            return [transition(request, target, f"Step {rejected.template_order} ({rejected.name}) rejected")]

        if PROGRESSION.index(target) < PROGRESSION.index(request.status):
            # Monotonic: a coarser reading never moves the request backwards.
            return []

        return [transition(request, target, "Step completion")]

    def record_signature(self, request: ClearanceRequest, instance: StepInstance):
        """Copy a cleared bookend signature onto the request."""
        if instance.status != StepStatus.CLEARED or instance.signature_tag is None:
            return

        if instance.signature_tag == SignatureTag.INITIAL:
            request.vp_initial_signature = instance.signature_payload
            request.vp_initial_signed_at = instance.last_updated_at
        elif instance.signature_tag == SignatureTag.FINAL:
            request.vp_final_signature = instance.signature_payload
            request.vp_final_signed_at = instance.last_updated_at

    def archive(
        self,
        request: ClearanceRequest,
        acting_role: str,
        acting_user_id: str,
        signature: Optional[str] = None,
    ) -> StatusChange:
        """
        Archive a completed request.

        Raises:
            RoleMismatch: if ``acting_role`` is not the archive role
            InvalidTransition: if the request is not completed
        """
        if acting_role != self.definition.archive_role:
            raise RoleMismatch(None, acting_role, [self.definition.archive_role])

        if request.status != RequestStatus.COMPLETED:
            reason = "the final sign-off has not been recorded"
            if request.status.is_terminal:
                reason = f"the request is {request.status.value}"
            raise InvalidTransition(request.id, request.status.value, RequestStatus.ARCHIVED.value, reason)

        change = transition(request, RequestStatus.ARCHIVED, f"Archived by {acting_user_id}")
        request.is_archived = True
        request.archived_at = change.changed_at
        request.archived_by = acting_user_id
        request.archive_signature = signature
        return change

    def ensure_open(self, request: ClearanceRequest):
        """Refuse step actions on failed or archived requests."""
        if request.status.is_terminal:
            raise InvalidTransition(
                request.id,
                request.status.value,
                request.status.value,
                f"request is {request.status.value}; no further steps can be resolved",
            )
