"""
Dependency Evaluator for the Clearance Engine.

Decides whether a step's preconditions hold, given a snapshot of all step
instances of its request. Pure: nothing here mutates an instance.
"""

import logging
from typing import Dict, Iterable, List

from ..errors import DependencyNotMet, InterdependencyIncomplete
from ..models import DependencyCheck, StepInstance, StepStatus, UnmetDependency
from .workflow_definition import WorkflowDefinition

logger = logging.getLogger(__name__)


class DependencyEvaluator:
    """
    Evaluates step preconditions against a request snapshot.

    A dependency on an interdependent step fans out to its whole cluster:
    the dependency counts as met only when every cluster member is cleared.
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition

    def is_satisfied(self, instance: StepInstance, instances: Iterable[StepInstance]) -> bool:
        return self.check(instance, instances).satisfied

    def check(self, instance: StepInstance, instances: Iterable[StepInstance]) -> DependencyCheck:
        """
        Evaluate the preconditions of a step.

        Args:
            instance: The step to evaluate
            instances: All instances of the same request

        Returns:
            DependencyCheck listing unmet predecessors, cluster gaps and
            whether a rejection blocks the step for good
        """
        template = self.definition.template(instance.template_order)
        by_order: Dict[int, StepInstance] = {i.template_order: i for i in instances}

        unmet: List[UnmetDependency] = []
        incomplete_clusters: Dict[int, List[int]] = {}
        blocked = False
        seen = set()

        for dependency in template.depends_on:
            cluster = self.definition.cluster_for(dependency)
            pending_members = []

            for member in cluster:
                predecessor = by_order.get(member)
                status = predecessor.status if predecessor else StepStatus.PENDING

                if status == StepStatus.CLEARED:
                    continue
                if status == StepStatus.REJECTED:
                    blocked = True

                pending_members.append(member)
                if member not in seen:
                    seen.add(member)
                    member_template = self.definition.template(member)
                    unmet.append(
                        UnmetDependency(
                            order=member,
                            name=member_template.name,
                            roles=list(member_template.allowed_roles),
                            status=status,
                        )
                    )

            if len(cluster) > 1 and pending_members:
                incomplete_clusters[dependency] = pending_members

        return DependencyCheck(
            step_id=instance.id,
            order=instance.template_order,
            satisfied=not unmet,
            blocked=blocked,
            unmet=unmet,
            incomplete_clusters=incomplete_clusters,
        )

    def to_error(self, check: DependencyCheck) -> DependencyNotMet:
        """
        Convert an unsatisfied check into the matching error.

        A cluster gap without any rejection is reported as
        InterdependencyIncomplete; everything else as DependencyNotMet.
        """
        unmet = [dep.model_dump(mode="json") for dep in check.unmet]

        if check.incomplete_clusters and not check.blocked:
            pending_orders = sorted({o for members in check.incomplete_clusters.values() for o in members})
            pending_roles = [
                role
                for order in pending_orders
                for role in self.definition.template(order).allowed_roles
            ]
            return InterdependencyIncomplete(
                check.step_id, check.order, unmet, check.incomplete_clusters, pending_roles
            )

        return DependencyNotMet(check.step_id, check.order, unmet, blocked=check.blocked)
