"""
Availability Propagator for the Clearance Engine.

Applies a resolution (cleared/rejected) to one step and recomputes which
pending steps of the same request have become available.
"""

import logging
from typing import List, Optional

from ..errors import AlreadyResolved, RoleMismatch
from ..models import SignatureTag, StepAnnotations, StepInstance, StepStatus, utcnow
from .dependency_evaluator import DependencyEvaluator
from .workflow_definition import WorkflowDefinition

logger = logging.getLogger(__name__)

RESOLUTION_OUTCOMES = (StepStatus.CLEARED, StepStatus.REJECTED)


class AvailabilityPropagator:
    """
    Drives step status changes and downstream availability.

    Dependencies always point at a smaller order, so one ascending sweep over
    the request's instances after each resolution reaches a stable state.
    """

    def __init__(self, definition: WorkflowDefinition, evaluator: Optional[DependencyEvaluator] = None):
        self.definition = definition
        self.evaluator = evaluator or DependencyEvaluator(definition)

    def initialize(self, instances: List[StepInstance]) -> List[StepInstance]:
        """
        Set initial availability for a freshly created instance set.

        Returns:
            Instances that start out available
        """
        return self._sweep(instances)

    def authorize(
        self,
        instance: StepInstance,
        acting_role: str,
        signature_type: Optional[SignatureTag] = None,
    ):
        """
        Check that ``acting_role`` may act on the step.

        For bookend steps a requested signature type must match the tag the
        template carries, since the role alone does not tell them apart.
        """
        template = self.definition.template(instance.template_order)
        expected_tag = template.signature_tag.value if template.signature_tag else None
        given_tag = signature_type.value if signature_type else None

        if not template.permits(acting_role):
            raise RoleMismatch(instance.id, acting_role, template.allowed_roles, expected_tag, None)
        if given_tag is not None and given_tag != expected_tag:
            raise RoleMismatch(instance.id, acting_role, template.allowed_roles, expected_tag, given_tag)

    def ensure_unresolved(
        self,
        instance: StepInstance,
        acting_role: str,
        signature_type: Optional[SignatureTag] = None,
    ):
        """Authorize the caller, then refuse a step that already has an outcome."""
        self.authorize(instance, acting_role, signature_type)
        if instance.status.is_terminal:
            raise AlreadyResolved(instance.id, instance.status.value)

    def resolve(
        self,
        instance: StepInstance,
        new_status: StepStatus,
        acting_role: str,
        acting_user_id: str,
        instances: List[StepInstance],
        annotations: Optional[StepAnnotations] = None,
        signature_type: Optional[SignatureTag] = None,
    ) -> List[StepInstance]:
        """
        Resolve a step and propagate availability.

        Args:
            instance: The step being resolved (a member of ``instances``)
            new_status: CLEARED or REJECTED
            acting_role: Role of the caller
            acting_user_id: Identity of the caller
            instances: All instances of the request, mutated in place
            annotations: Comment, signature and notes to record
            signature_type: Bookend tag the caller claims to be signing

        Returns:
            Instances that moved from pending to available

        Raises:
            RoleMismatch, AlreadyResolved, DependencyNotMet, InterdependencyIncomplete
        """
        if new_status not in RESOLUTION_OUTCOMES:
            raise ValueError(f"Outcome must be cleared or rejected, got {new_status}")

        self.ensure_unresolved(instance, acting_role, signature_type)

        if instance.status != StepStatus.AVAILABLE:
            check = self.evaluator.check(instance, instances)
            raise self.evaluator.to_error(check)

        annotations = annotations or StepAnnotations()
        instance.status = new_status
        instance.acted_by = acting_user_id
        instance.acted_by_role = acting_role
        instance.comment = annotations.comment
        instance.signature_payload = annotations.signature
        instance.notes = annotations.notes
        instance.last_updated_at = utcnow()

        logger.info(
            f"Step {instance.template_order} ({instance.name}) of request {instance.request_id} "
            f"{new_status.value} by {acting_user_id} as {acting_role}"
        )

        if new_status == StepStatus.REJECTED:
            return []

        return self._sweep(instances)

    def _sweep(self, instances: List[StepInstance]) -> List[StepInstance]:
        changed = []
        for candidate in sorted(instances, key=lambda i: i.template_order):
            if candidate.status != StepStatus.PENDING:
                continue
            if self.evaluator.is_satisfied(candidate, instances):
                candidate.status = StepStatus.AVAILABLE
                candidate.can_process = True
                candidate.last_updated_at = utcnow()
                changed.append(candidate)

        if changed:
            logger.debug(f"Steps now available: {[c.template_order for c in changed]}")
        return changed
