"""
Clearance Workflow for the Clearance Engine.

Entry point for every inbound operation: opening a request, resolving steps,
bookend signatures, status queries and archiving. Each write runs inside the
store's per-request transaction; events and activity records are emitted only
after the transaction has committed.
"""

import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Union

from ..audit.audit_logger import AuditLogger
from ..engine.dependency_evaluator import DependencyEvaluator
from ..engine.instance_store import StepInstanceStore
from ..engine.lifecycle import LifecycleController
from ..engine.propagator import AvailabilityPropagator
from ..engine.status_aggregator import StatusAggregator
from ..engine.workflow_definition import WorkflowDefinition
from ..errors import (
    ActiveRequestExists,
    ClearanceError,
    InvalidTransition,
    RequestNotFound,
    StepNotFound,
)
from ..models import (
    ActivityRecord,
    ArchiveRecord,
    AvailableStep,
    ClearancePurpose,
    ClearanceRequest,
    DependencyCheck,
    InterdependencyStatus,
    ProcessingEligibility,
    RequestStatus,
    ResolutionResult,
    SignatureTag,
    StepAnnotations,
    StepInstance,
    StepStatus,
    WorkflowSequenceEntry,
    WorkflowStatus,
)
from ..notifications.dispatcher import (
    EngineEvent,
    EventType,
    LoggingNotificationSink,
    NotificationDispatcher,
)
from .helpers import build_signature_map, generate_reference_code, validate_request_input

logger = logging.getLogger(__name__)


class ClearanceWorkflow:
    """
    Clearance engine facade.

    Wires the workflow definition, instance store, evaluator, propagator,
    aggregator and lifecycle controller together and exposes the inbound
    operations used by the HTTP layer and the CLI.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        definition: Optional[WorkflowDefinition] = None,
        store: Optional[StepInstanceStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Initialize the workflow.

        Args:
            config: Configuration dictionary (state_file, audit_dir, workflow_file)
            definition: Step catalog; loaded from ``workflow_file`` when omitted
            store: Instance store; built from ``state_file`` when omitted
            dispatcher: Event dispatcher; a logging one is created when omitted
            audit_logger: Activity logger; built from ``audit_dir`` when omitted
        """
        self.config = config or {}

        self.definition = definition or WorkflowDefinition.from_yaml(self.config.get("workflow_file"))
        self.store = store or StepInstanceStore(self.config.get("state_file"))
        self.audit_logger = audit_logger or AuditLogger(self.config.get("audit_dir", "audit"))

        if dispatcher is None:
            dispatcher = NotificationDispatcher()
            if self.config.get("log_notifications", True):
                dispatcher.add_sink(LoggingNotificationSink())
        self.dispatcher = dispatcher

        self.evaluator = DependencyEvaluator(self.definition)
        self.propagator = AvailabilityPropagator(self.definition, self.evaluator)
        self.aggregator = StatusAggregator(self.definition, self.store)
        self.lifecycle = LifecycleController(self.definition)

        # Serializes the one-active-request check with the insert
        self._create_lock = threading.Lock()

        logger.info(f"Initialized ClearanceWorkflow with {len(self.definition)} steps")

    # Requests

    def create_request(
        self,
        staff_id: str,
        purpose: Union[ClearancePurpose, str],
        initiator_meta: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Open a clearance request with one step instance per template.

        Args:
            staff_id: Identifier of the departing staff member
            purpose: Reason for the clearance
            initiator_meta: Opaque details about the initiator

        Returns:
            ID of the new request

        Raises:
            ValueError: on invalid input
            ActiveRequestExists: if the staff member has a request in progress
        """
        errors = validate_request_input(staff_id, purpose)
        if errors:
            raise ValueError("; ".join(errors))

        staff_id = staff_id.strip()
        purpose = ClearancePurpose(purpose)

        with self._create_lock:
            active = self.store.find_active_request(staff_id)
            if active is not None:
                logger.warning(f"Refused new request for {staff_id}: {active.reference_code} is still active")
                raise ActiveRequestExists(staff_id, active.reference_code)

            request = ClearanceRequest(
                id=str(uuid.uuid4()),
                reference_code=generate_reference_code(self.store.reference_exists),
                staff_id=staff_id,
                purpose=purpose,
                initiator_meta=dict(initiator_meta or {}),
            )

            instances = [
                StepInstance(
                    id=str(uuid.uuid4()),
                    request_id=request.id,
                    template_order=template.order,
                    stage=template.stage,
                    name=template.name,
                    allowed_roles=list(template.allowed_roles),
                    signature_tag=template.signature_tag,
                )
                for template in self.definition.templates
            ]
            available = self.propagator.initialize(instances)

            self.store.create(request, instances)

        logger.info(f"Created clearance request {request.reference_code} for staff {staff_id} ({purpose.value})")

        self._record_activity(
            request,
            "REQUEST_CREATED",
            f"Clearance request {request.reference_code} created for {purpose.value}",
            user_id=request.initiator_meta.get("user_id"),
            metadata={"purpose": purpose.value, "steps": len(instances)},
        )
        self._publish([self._step_event(request, instance) for instance in available])

        return request.id

    def get_request(self, request_id: str) -> ClearanceRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def get_steps(self, request_id: str) -> List[StepInstance]:
        """All step instances of a request in template order."""
        self.get_request(request_id)
        return self.store.load_instances(request_id)

    def list_requests(
        self,
        status: Optional[Union[RequestStatus, str]] = None,
        staff_id: Optional[str] = None,
    ) -> List[ClearanceRequest]:
        return self.store.list_requests(
            status=RequestStatus(status) if status is not None else None,
            staff_id=staff_id,
        )

    def get_requests_summary(self) -> Dict[str, Any]:
        return self.store.get_requests_summary()

    # Steps

    def resolve_step(
        self,
        step_id: str,
        acting_role: str,
        acting_user_id: str,
        outcome: Union[StepStatus, str],
        annotations: Optional[StepAnnotations] = None,
        signature_type: Optional[Union[SignatureTag, str]] = None,
    ) -> ResolutionResult:
        """
        Clear or reject a step and propagate availability.

        Args:
            step_id: Step to resolve
            acting_role: Role the caller acts in
            acting_user_id: Identity of the caller
            outcome: ``cleared`` or ``rejected``
            annotations: Comment, signature and notes
            signature_type: Bookend tag when signing a bookend step

        Returns:
            ResolutionResult with the updated step, newly available steps and
            the request's macro status

        Raises:
            StepNotFound, InvalidTransition, RoleMismatch, AlreadyResolved,
            DependencyNotMet, InterdependencyIncomplete, PersistenceError
        """
        outcome = StepStatus(outcome)
        tag = SignatureTag(signature_type) if signature_type is not None else None

        request_id = self.store.request_id_for_step(step_id)
        if request_id is None:
            raise StepNotFound(step_id)

        try:
            with self.store.transaction(request_id) as unit:
                instance = unit.by_id(step_id)
                if instance is None:
                    raise StepNotFound(step_id, request_id)

                # A repeated resolution reports AlreadyResolved even once the
                # first one has failed the request.
                self.propagator.ensure_unresolved(instance, acting_role, tag)
                self.lifecycle.ensure_open(unit.request)
                changed = self.propagator.resolve(
                    instance,
                    outcome,
                    acting_role,
                    acting_user_id,
                    unit.instances,
                    annotations=annotations,
                    signature_type=tag,
                )
                self.lifecycle.record_signature(unit.request, instance)
                transitions = self.lifecycle.advance(unit.request, unit.instances)

                request = unit.request.model_copy(deep=True)
                result = ResolutionResult(
                    updated_instance=instance.model_copy(deep=True),
                    changed_instances=[c.model_copy(deep=True) for c in changed],
                    request_status=unit.request.status,
                    transitions=transitions,
                )
        except ClearanceError as e:
            logger.warning(f"Refused {outcome.value} of step {step_id} by {acting_user_id} ({acting_role}): {e}")
            raise

        resolved = result.updated_instance
        self._record_activity(
            request,
            self._resolution_action(resolved),
            f"Step {resolved.template_order} ({resolved.name}) {outcome.value}",
            user_id=acting_user_id,
            role=acting_role,
            step_order=resolved.template_order,
            metadata={
                "comment": resolved.comment,
                "newly_available": [c.template_order for c in result.changed_instances],
                "request_status": result.request_status.value,
            },
        )

        events = [self._step_event(request, c) for c in result.changed_instances]
        reached = {t.to_status for t in result.transitions}
        if RequestStatus.COMPLETED in reached:
            events.append(self._request_event(request, EventType.REQUEST_COMPLETED))
        if RequestStatus.FAILED in reached:
            events.append(self._request_event(request, EventType.REQUEST_TERMINAL))
        self._publish(events)

        return result

    def sign_bookend(
        self,
        request_id: str,
        signature_type: Union[SignatureTag, str],
        acting_role: str,
        acting_user_id: str,
        outcome: Union[StepStatus, str] = StepStatus.CLEARED,
        annotations: Optional[StepAnnotations] = None,
    ) -> ResolutionResult:
        """
        Resolve the bookend step carrying ``signature_type`` on a request.

        Raises:
            ValueError: if the catalog has no bookend with that tag
        """
        tag = SignatureTag(signature_type)
        template = self.definition.bookend(tag)
        if template is None:
            raise ValueError(f"Workflow has no '{tag.value}' signature step")

        for instance in self.get_steps(request_id):
            if instance.template_order == template.order:
                return self.resolve_step(
                    instance.id,
                    acting_role,
                    acting_user_id,
                    outcome,
                    annotations=annotations,
                    signature_type=tag,
                )

        raise RequestNotFound(request_id)

    def can_user_process_step(self, step_id: str, user_id: str, role: str) -> ProcessingEligibility:
        """
        Check whether a user acting in ``role`` may resolve a step now.

        Never raises for a refused action; the reason is returned instead.
        """
        step = self.store.get_step(step_id)
        if step is None:
            return ProcessingEligibility(can_process=False, reason="Step not found")

        request = self.store.get_request(step.request_id)
        if request is None:
            return ProcessingEligibility(can_process=False, reason="Clearance request not found", step=step)

        if role not in step.allowed_roles:
            return ProcessingEligibility(
                can_process=False,
                reason=f"Role {role} is not authorized for this step; requires {', '.join(step.allowed_roles)}",
                step=step,
            )

        if step.status.is_terminal:
            return ProcessingEligibility(can_process=False, reason=f"Step is already {step.status.value}", step=step)

        if request.status.is_terminal:
            return ProcessingEligibility(
                can_process=False, reason=f"Clearance request is {request.status.value}", step=step
            )

        if step.status != StepStatus.AVAILABLE or not step.can_process:
            check = self.evaluator.check(step, self.store.load_instances(step.request_id))
            return ProcessingEligibility(
                can_process=False, reason=self.evaluator.to_error(check).message, step=step
            )

        logger.debug(f"User {user_id} ({role}) may process step {step.template_order} of {request.reference_code}")
        return ProcessingEligibility(can_process=True, step=step)

    def validate_step_dependencies(self, step_id: str) -> DependencyCheck:
        step = self.store.get_step(step_id)
        if step is None:
            raise StepNotFound(step_id)
        return self.evaluator.check(step, self.store.load_instances(step.request_id))

    def check_interdependent_steps(self, request_id: str, order: int) -> InterdependencyStatus:
        """
        Completion status of the interdependent cluster containing ``order``.

        A non-interdependent step forms a cluster of one.
        """
        instances = {i.template_order: i for i in self.get_steps(request_id)}
        cluster = self.definition.cluster_for(order)

        completed_roles: List[str] = []
        pending_roles: List[str] = []
        for member in cluster:
            roles = list(self.definition.template(member).allowed_roles)
            instance = instances.get(member)
            if instance is not None and instance.status == StepStatus.CLEARED:
                completed_roles.extend(roles)
            else:
                pending_roles.extend(roles)

        completed = sum(
            1 for m in cluster if m in instances and instances[m].status == StepStatus.CLEARED
        )
        return InterdependencyStatus(
            total_required=len(cluster),
            completed=completed,
            all_completed=completed == len(cluster),
            completed_roles=completed_roles,
            pending_roles=pending_roles,
        )

    def get_available_steps_for_role(self, role: str) -> List[AvailableStep]:
        """Inbox of steps ``role`` can act on right now, across open requests."""
        inbox = []
        requests: Dict[str, Optional[ClearanceRequest]] = {}

        for step in self.store.available_steps_for_role(role):
            if step.request_id not in requests:
                requests[step.request_id] = self.store.get_request(step.request_id)
            request = requests[step.request_id]
            if request is None or request.status.is_terminal:
                continue

            inbox.append(
                AvailableStep(
                    id=step.id,
                    request_id=request.id,
                    reference_code=request.reference_code,
                    staff_id=request.staff_id,
                    purpose=request.purpose,
                    stage=step.stage,
                    order=step.template_order,
                    name=step.name,
                    signature_tag=step.signature_tag,
                    last_updated_at=step.last_updated_at,
                )
            )

        return inbox

    # Status, signatures and archive

    def get_status(self, request_id: str) -> WorkflowStatus:
        return self.aggregator.summarize(request_id)

    def get_signatures(self, request_id: str) -> Dict[str, str]:
        """
        Signatures recorded on a request, keyed by normalized role name.

        The two bookend signatures are always keyed ``vpinitialsignature``
        and ``vpfinalsignature``.
        """
        request = self.get_request(request_id)
        entries = [
            {"role": i.acted_by_role or i.allowed_roles[0], "signature": i.signature_payload}
            for i in self.store.load_instances(request_id)
            if i.status == StepStatus.CLEARED and i.signature_tag is None
        ]
        return build_signature_map(entries, request.vp_initial_signature, request.vp_final_signature)

    def archive_request(
        self,
        request_id: str,
        acting_role: str,
        acting_user_id: str,
        signature: Optional[str] = None,
    ) -> ClearanceRequest:
        """
        Archive a completed request.

        Raises:
            RequestNotFound, RoleMismatch, InvalidTransition, PersistenceError
        """
        try:
            with self.store.transaction(request_id) as unit:
                self.lifecycle.archive(unit.request, acting_role, acting_user_id, signature)
                request = unit.request.model_copy(deep=True)
        except ClearanceError as e:
            logger.warning(f"Refused archive of request {request_id} by {acting_user_id} ({acting_role}): {e}")
            raise

        self._record_activity(
            request,
            "REQUEST_ARCHIVED",
            f"Clearance request {request.reference_code} archived",
            user_id=acting_user_id,
            role=acting_role,
        )
        self._publish([self._request_event(request, EventType.REQUEST_TERMINAL)])
        return request

    def get_archive_record(self, request_id: str) -> ArchiveRecord:
        """
        Snapshot of an archived request with its full workflow sequence.

        Raises:
            InvalidTransition: if the request has not been archived
        """
        request = self.get_request(request_id)
        if not request.is_archived:
            raise InvalidTransition(
                request.id, request.status.value, RequestStatus.ARCHIVED.value, "request has not been archived"
            )

        sequence = [
            WorkflowSequenceEntry(
                step_number=i.template_order,
                name=i.name,
                roles=list(i.allowed_roles),
                status=i.status,
                acted_by=i.acted_by,
                acted_at=i.last_updated_at if i.acted_by else None,
                comment=i.comment,
                notes=i.notes,
            )
            for i in self.store.load_instances(request_id)
        ]

        return ArchiveRecord(
            request_id=request.id,
            reference_code=request.reference_code,
            staff_id=request.staff_id,
            purpose=request.purpose,
            initiated_at=request.initiated_at,
            completed_at=request.completed_at,
            archived_at=request.archived_at,
            archived_by=request.archived_by,
            workflow_sequence=sequence,
            vp_initial_signature=request.vp_initial_signature,
            vp_final_signature=request.vp_final_signature,
            archive_signature=request.archive_signature,
        )

    def purge_request(self, request_id: str, acting_user_id: Optional[str] = None) -> bool:
        """
        Remove a request and its steps (administrative).

        Returns:
            True if removed, False if the request did not exist
        """
        request = self.store.get_request(request_id)
        if request is None:
            return False

        removed = self.store.purge(request_id)
        if removed:
            self._record_activity(
                request,
                "REQUEST_PURGED",
                f"Clearance request {request.reference_code} purged",
                user_id=acting_user_id,
            )
        return removed

    def get_activity_trail(self, request_id: str) -> List[ActivityRecord]:
        self.get_request(request_id)
        return self.audit_logger.get_request_trail(request_id)

    # Internals

    @staticmethod
    def _resolution_action(instance: StepInstance) -> str:
        if instance.status == StepStatus.REJECTED:
            return "STEP_REJECTED"
        if instance.signature_tag == SignatureTag.INITIAL:
            return "VP_INITIAL_SIGNED"
        if instance.signature_tag == SignatureTag.FINAL:
            return "VP_FINAL_SIGNED"
        return "STEP_CLEARED"

    @staticmethod
    def _step_event(request: ClearanceRequest, instance: StepInstance) -> EngineEvent:
        return EngineEvent(
            event_type=EventType.STEP_AVAILABLE,
            request_id=request.id,
            reference_code=request.reference_code,
            step_id=instance.id,
            order=instance.template_order,
            step_name=instance.name,
            roles=list(instance.allowed_roles),
            status=instance.status.value,
        )

    @staticmethod
    def _request_event(request: ClearanceRequest, event_type: EventType) -> EngineEvent:
        return EngineEvent(
            event_type=event_type,
            request_id=request.id,
            reference_code=request.reference_code,
            status=request.status.value,
        )

    def _publish(self, events: List[EngineEvent]):
        if not events:
            return
        failures = self.dispatcher.publish(events)
        if failures:
            logger.warning(f"{failures} notification deliveries failed")

    def _record_activity(
        self,
        request: ClearanceRequest,
        action: str,
        description: str,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        step_order: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        record = ActivityRecord(
            id=str(uuid.uuid4()),
            request_id=request.id,
            reference_code=request.reference_code,
            action=action,
            user_id=user_id,
            role=role,
            step_order=step_order,
            description=description,
            metadata=metadata or {},
        )
        try:
            self.audit_logger.log_event(record)
        except Exception as e:
            # The action is already committed; the trail gap is reported, not undone.
            logger.error(f"Activity record {action} for {request.reference_code} was not written: {e}")
