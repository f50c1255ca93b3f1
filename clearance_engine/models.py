"""
Core data models for the Clearance Engine.

This module defines the Pydantic models used throughout the system
for step templates, step instances, clearance requests, status summaries
and activity records.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp in the engine."""
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Status of a single step instance."""
    PENDING = "pending"
    AVAILABLE = "available"
    CLEARED = "cleared"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.CLEARED, StepStatus.REJECTED)


class RequestStatus(str, Enum):
    """Macro status of a clearance request."""
    INITIATED = "initiated"
    VP_INITIAL_APPROVAL = "vp_initial_approval"
    DEPARTMENT_REVIEW = "department_review"
    PROPERTY_CLEARANCE = "property_clearance"
    FINANCE_CLEARANCE = "finance_clearance"
    HR_CLEARANCE = "hr_clearance"
    VP_FINAL_APPROVAL = "vp_final_approval"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.ARCHIVED, RequestStatus.FAILED)


class ClearancePurpose(str, Enum):
    """Reason a staff member is leaving or moving."""
    RESIGNATION = "Resignation"
    RETIREMENT = "Retirement"
    TRANSFER = "Transfer"
    LEAVE = "Leave"
    END_OF_CONTRACT = "End of Contract"


class SignatureTag(str, Enum):
    """Distinguishes the two top-authority bookend signatures."""
    INITIAL = "initial"
    FINAL = "final"


class StageDefinition(BaseModel):
    """A macro-stage grouping templates for progress reporting."""
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Stable identifier used by templates")
    name: str
    description: Optional[str] = None
    status: RequestStatus = Field(..., description="Macro status while this stage is current")


class StepTemplate(BaseModel):
    """Immutable definition of one review checkpoint."""
    model_config = ConfigDict(frozen=True)

    order: int = Field(..., gt=0, description="Unique position in the workflow")
    stage: str = Field(..., description="Key of the owning macro-stage")
    name: str
    description: Optional[str] = None
    allowed_roles: Tuple[str, ...] = Field(..., description="Roles permitted to act on the step")
    is_sequential: bool = True
    depends_on: Tuple[int, ...] = Field(default_factory=tuple)
    is_interdependent: bool = False
    interdependent_with: Tuple[str, ...] = Field(default_factory=tuple)
    signature_tag: Optional[SignatureTag] = None

    @field_validator('allowed_roles')
    @classmethod
    def validate_allowed_roles(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v or any(not role.strip() for role in v):
            raise ValueError('allowed_roles must contain at least one non-empty role')
        return v

    @model_validator(mode="before")
    @classmethod
    def infer_interdependency(cls, data: Any) -> Any:
        """Steps naming interdependent peers are interdependent unless told otherwise."""
        if isinstance(data, dict) and data.get("interdependent_with") and "is_interdependent" not in data:
            data = {**data, "is_interdependent": True}
        return data

    def permits(self, role: str) -> bool:
        return role in self.allowed_roles


class StepAnnotations(BaseModel):
    """Opaque annotations attached when a step is acted on."""
    comment: Optional[str] = None
    signature: Optional[str] = Field(None, description="Signature payload (e.g. a data URL)")
    notes: Optional[str] = None


class StepInstance(BaseModel):
    """A per-request, mutable realization of a StepTemplate."""
    id: str = Field(..., description="Unique step identifier")
    request_id: str
    template_order: int
    stage: str
    name: str
    allowed_roles: List[str] = Field(default_factory=list)
    signature_tag: Optional[SignatureTag] = None
    status: StepStatus = StepStatus.PENDING
    can_process: bool = False
    acted_by: Optional[str] = None
    acted_by_role: Optional[str] = None
    comment: Optional[str] = None
    signature_payload: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)


class StatusChange(BaseModel):
    """One entry of a request's macro status history."""
    from_status: RequestStatus
    to_status: RequestStatus
    changed_at: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None


class ClearanceRequest(BaseModel):
    """A staff member's clearance request."""
    id: str
    reference_code: str
    staff_id: str
    purpose: ClearancePurpose
    status: RequestStatus = RequestStatus.INITIATED
    initiator_meta: Dict[str, Any] = Field(default_factory=dict)
    initiated_at: datetime = Field(default_factory=utcnow)
    vp_initial_signature: Optional[str] = None
    vp_initial_signed_at: Optional[datetime] = None
    vp_final_signature: Optional[str] = None
    vp_final_signed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    is_archived: bool = False
    archived_at: Optional[datetime] = None
    archived_by: Optional[str] = None
    archive_signature: Optional[str] = None
    status_history: List[StatusChange] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('staff_id')
    @classmethod
    def validate_staff_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('Staff ID is required')
        return v.strip()


class UnmetDependency(BaseModel):
    """A predecessor step that is not yet cleared."""
    order: int
    name: str
    roles: List[str]
    status: StepStatus


class DependencyCheck(BaseModel):
    """Outcome of evaluating a step's preconditions."""
    step_id: str
    order: int
    satisfied: bool
    blocked: bool = False
    unmet: List[UnmetDependency] = Field(default_factory=list)
    incomplete_clusters: Dict[int, List[int]] = Field(
        default_factory=dict, description="Anchor order -> cluster members not yet cleared"
    )


class StepSummary(BaseModel):
    """Step view used inside status summaries."""
    id: str
    order: int
    name: str
    allowed_roles: List[str]
    status: StepStatus
    can_process: bool
    acted_by: Optional[str] = None
    last_updated_at: datetime
    signature_tag: Optional[SignatureTag] = None


class StageSummary(BaseModel):
    """Per-stage counts for a request."""
    stage: str
    name: str
    description: Optional[str] = None
    total_steps: int
    completed_steps: int
    pending_steps: int
    available_steps: int
    rejected_steps: int
    is_completed: bool
    can_progress: bool
    steps: List[StepSummary] = Field(default_factory=list)


class OverallProgress(BaseModel):
    """Request-wide counts."""
    total_steps: int
    completed_steps: int
    pending_steps: int
    available_steps: int
    rejected_steps: int
    completion_percentage: int


class WorkflowStatus(BaseModel):
    """Read-only summary of a request's workflow."""
    request_id: str
    reference_code: str
    status: RequestStatus
    current_stage: int
    vp_initial_signed: bool
    vp_final_signed: bool
    is_archived: bool
    is_blocked: bool
    overall_progress: OverallProgress
    stages_summary: List[StageSummary]
    next_available_steps: List[StepSummary]


class ResolutionResult(BaseModel):
    """Result of resolving a step."""
    updated_instance: StepInstance
    changed_instances: List[StepInstance] = Field(default_factory=list)
    request_status: RequestStatus
    transitions: List[StatusChange] = Field(default_factory=list)


class ProcessingEligibility(BaseModel):
    """Whether a given user may act on a step right now."""
    can_process: bool
    reason: Optional[str] = None
    step: Optional[StepInstance] = None


class InterdependencyStatus(BaseModel):
    """Completion status of an interdependent cluster."""
    total_required: int
    completed: int
    all_completed: bool
    completed_roles: List[str]
    pending_roles: List[str]


class AvailableStep(BaseModel):
    """A reviewer inbox entry."""
    id: str
    request_id: str
    reference_code: str
    staff_id: str
    purpose: ClearancePurpose
    stage: str
    order: int
    name: str
    signature_tag: Optional[SignatureTag] = None
    last_updated_at: datetime


class WorkflowSequenceEntry(BaseModel):
    """One step as recorded in an archive record."""
    step_number: int
    name: str
    roles: List[str]
    status: StepStatus
    acted_by: Optional[str] = None
    acted_at: Optional[datetime] = None
    comment: Optional[str] = None
    notes: Optional[str] = None


class ArchiveRecord(BaseModel):
    """Snapshot of an archived request."""
    request_id: str
    reference_code: str
    staff_id: str
    purpose: ClearancePurpose
    initiated_at: datetime
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    archived_by: Optional[str] = None
    workflow_sequence: List[WorkflowSequenceEntry] = Field(default_factory=list)
    vp_initial_signature: Optional[str] = None
    vp_final_signature: Optional[str] = None
    archive_signature: Optional[str] = None


class ActivityRecord(BaseModel):
    """Audit record of one committed action."""
    id: str = Field(..., description="Unique activity record ID")
    timestamp: datetime = Field(default_factory=utcnow)
    request_id: str
    reference_code: Optional[str] = None
    action: str = Field(..., description="REQUEST_CREATED, STEP_CLEARED, ...")
    user_id: Optional[str] = None
    role: Optional[str] = None
    step_order: Optional[int] = None
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Type aliases for convenience
StepInstances = List[StepInstance]
ActivityRecords = List[ActivityRecord]
