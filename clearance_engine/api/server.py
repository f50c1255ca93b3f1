"""
FastAPI Server for the Clearance Engine.

Provides REST API endpoints for opening clearance requests, resolving steps,
bookend signatures, status summaries, reviewer inboxes and archiving.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import CONFIG_ENV_VAR, load_config
from ..errors import (
    ActiveRequestExists,
    AlreadyResolved,
    ClearanceError,
    DependencyNotMet,
    InvalidTransition,
    PersistenceError,
    RequestNotFound,
    RoleMismatch,
    StepNotFound,
)
from ..models import (
    ActivityRecord,
    ArchiveRecord,
    AvailableStep,
    ClearancePurpose,
    ClearanceRequest,
    ResolutionResult,
    SignatureTag,
    StepAnnotations,
    StepInstance,
    StepStatus,
    WorkflowStatus,
)
from ..workflows import ClearanceWorkflow

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = [
    (RequestNotFound, 404),
    (StepNotFound, 404),
    (RoleMismatch, 403),
    (DependencyNotMet, 409),
    (AlreadyResolved, 409),
    (InvalidTransition, 409),
    (ActiveRequestExists, 409),
    (PersistenceError, 503),
]


# Pydantic models for API requests
class CreateRequestBody(BaseModel):
    """Clearance request submission."""
    staff_id: str = Field(..., description="Identifier of the departing staff member")
    purpose: ClearancePurpose = Field(..., description="Resignation, Retirement, Transfer, Leave or End of Contract")
    initiator_meta: Dict[str, Any] = Field(default_factory=dict, description="Opaque initiator details")


class ActorBody(BaseModel):
    """Identity of the caller."""
    acting_role: str = Field(..., description="Role the caller acts in")
    acting_user_id: str = Field(..., description="Identity of the caller")


class ResolveStepBody(ActorBody):
    """Step resolution submission."""
    outcome: StepStatus = Field(..., description="cleared or rejected")
    comment: Optional[str] = None
    signature: Optional[str] = None
    notes: Optional[str] = None
    signature_type: Optional[SignatureTag] = None

    def annotations(self) -> StepAnnotations:
        return StepAnnotations(comment=self.comment, signature=self.signature, notes=self.notes)


class SignBookendBody(ActorBody):
    """Bookend signature submission."""
    outcome: StepStatus = StepStatus.CLEARED
    comment: Optional[str] = None
    signature: Optional[str] = None
    notes: Optional[str] = None


class ArchiveBody(ActorBody):
    """Archive submission."""
    signature: Optional[str] = None


# Global engine (initialized on startup)
workflow: Optional[ClearanceWorkflow] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global workflow

    logger.info("Initializing Clearance Engine API server components")

    config = load_config(os.environ.get(CONFIG_ENV_VAR))
    workflow = ClearanceWorkflow(config)

    logger.info("Clearance Engine API server components initialized")

    yield

    logger.info("Shutting down Clearance Engine API server")
    workflow = None


app = FastAPI(
    title="Clearance Engine API",
    description="Staff clearance workflow engine - REST API for requests, steps and archiving",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def status_code_for(error: ClearanceError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 400


@app.exception_handler(ClearanceError)
async def clearance_error_handler(request: Request, exc: ClearanceError):
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=400, content={"error": "INVALID_INPUT", "message": str(exc), "details": {}}
    )


def get_workflow() -> ClearanceWorkflow:
    if workflow is None:
        raise HTTPException(status_code=503, detail="Clearance engine not available")
    return workflow


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Clearance Engine API", "version": __version__, "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy" if workflow is not None else "starting",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "workflow": workflow is not None,
            "store": workflow is not None and workflow.store is not None,
            "audit_logger": workflow is not None and workflow.audit_logger is not None,
        },
    }


@app.get("/workflow")
async def get_workflow_definition():
    """The step catalog the engine runs."""
    return get_workflow().definition.to_dict()


@app.post("/requests", response_model=ClearanceRequest, status_code=201)
async def create_request(body: CreateRequestBody):
    """Open a clearance request for a staff member."""
    engine = get_workflow()
    request_id = engine.create_request(body.staff_id, body.purpose, body.initiator_meta)
    return engine.get_request(request_id)


@app.get("/requests", response_model=List[ClearanceRequest])
async def list_requests(
    status: Optional[str] = Query(None, description="Filter by macro status"),
    staff_id: Optional[str] = Query(None, description="Filter by staff member"),
    limit: int = Query(100, description="Maximum number of results"),
):
    """List clearance requests, newest first."""
    return get_workflow().list_requests(status=status, staff_id=staff_id)[:limit]


@app.get("/requests/summary")
async def get_requests_summary():
    """Counts of requests and steps by status."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "requests": get_workflow().get_requests_summary(),
    }


@app.get("/requests/{request_id}", response_model=ClearanceRequest)
async def get_request(request_id: str):
    return get_workflow().get_request(request_id)


@app.get("/requests/{request_id}/steps", response_model=List[StepInstance])
async def get_steps(request_id: str):
    return get_workflow().get_steps(request_id)


@app.get("/requests/{request_id}/status", response_model=WorkflowStatus)
async def get_status(request_id: str):
    """Progress summary of a request."""
    return get_workflow().get_status(request_id)


@app.post("/steps/{step_id}/resolve", response_model=ResolutionResult)
async def resolve_step(step_id: str, body: ResolveStepBody):
    """Clear or reject a step."""
    return get_workflow().resolve_step(
        step_id,
        body.acting_role,
        body.acting_user_id,
        body.outcome,
        annotations=body.annotations(),
        signature_type=body.signature_type,
    )


@app.get("/steps/{step_id}/eligibility")
async def get_step_eligibility(
    step_id: str,
    role: str = Query(..., description="Role the caller acts in"),
    user_id: str = Query(..., description="Identity of the caller"),
):
    """Whether the caller may act on a step now, and why not."""
    return get_workflow().can_user_process_step(step_id, user_id, role)


@app.get("/steps/{step_id}/dependencies")
async def get_step_dependencies(step_id: str):
    return get_workflow().validate_step_dependencies(step_id)


@app.get("/requests/{request_id}/interdependency/{order}")
async def get_interdependency(request_id: str, order: int):
    """Completion status of the interdependent cluster containing a step."""
    engine = get_workflow()
    try:
        return engine.check_interdependent_steps(request_id, order)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Step order {order} not found") from e


@app.post("/requests/{request_id}/signatures/{signature_type}", response_model=ResolutionResult)
async def sign_bookend(request_id: str, signature_type: SignatureTag, body: SignBookendBody):
    """Record the initial or final top-authority signature."""
    return get_workflow().sign_bookend(
        request_id,
        signature_type,
        body.acting_role,
        body.acting_user_id,
        outcome=body.outcome,
        annotations=StepAnnotations(comment=body.comment, signature=body.signature, notes=body.notes),
    )


@app.get("/requests/{request_id}/signatures")
async def get_signatures(request_id: str):
    return get_workflow().get_signatures(request_id)


@app.post("/requests/{request_id}/archive", response_model=ClearanceRequest)
async def archive_request(request_id: str, body: ArchiveBody):
    """Archive a completed request."""
    return get_workflow().archive_request(
        request_id, body.acting_role, body.acting_user_id, body.signature
    )


@app.get("/requests/{request_id}/archive-record", response_model=ArchiveRecord)
async def get_archive_record(request_id: str):
    return get_workflow().get_archive_record(request_id)


@app.delete("/requests/{request_id}")
async def purge_request(
    request_id: str,
    acting_user_id: Optional[str] = Query(None, description="Administrator performing the purge"),
):
    """Remove a request and its steps (administrative)."""
    if not get_workflow().purge_request(request_id, acting_user_id):
        raise HTTPException(status_code=404, detail=f"Clearance request {request_id} not found")
    return {"request_id": request_id, "purged": True}


@app.get("/roles/{role}/steps", response_model=List[AvailableStep])
async def get_role_inbox(role: str):
    """Steps the role can act on right now."""
    return get_workflow().get_available_steps_for_role(role)


@app.get("/activity", response_model=List[ActivityRecord])
async def get_activity(
    request_id: Optional[str] = Query(None, description="Filter by clearance request"),
    action: Optional[str] = Query(None, description="Filter by action"),
    days_back: int = Query(30, description="Number of days to look back"),
    limit: int = Query(100, description="Maximum number of results"),
):
    """Activity trail, most recent first."""
    start_date = datetime.now(timezone.utc) - timedelta(days=days_back)
    return get_workflow().audit_logger.get_events(
        request_id=request_id, action=action, start_date=start_date, limit=limit
    )


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "clearance_engine.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    start_server()
