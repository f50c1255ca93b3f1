"""
Error taxonomy for the Clearance Engine.

Every refused action raises one of these with structured ``details`` so that
callers (HTTP layer, CLI, seed tools) can explain *why* without parsing
messages. None of them is fatal to the process.
"""

from typing import Any, Dict, Iterable, List, Optional


class ClearanceError(Exception):
    """Base class for caller-correctable engine conditions."""

    code = "CLEARANCE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for transport."""
        return {"error": self.code, "message": self.message, "details": self.details}


class RoleMismatch(ClearanceError):
    """Acting role is not permitted on the step, or a bookend tag does not match.

    Args:
        step_id: Step the action targeted (None for request-level actions).
        acting_role: Role presented by the caller.
        allowed_roles: Roles the template accepts.
        expected_tag: Signature tag carried by the template, for bookend steps.
        given_tag: Signature tag the caller asked for.
    """

    code = "ROLE_MISMATCH"

    def __init__(
        self,
        step_id: Optional[str],
        acting_role: str,
        allowed_roles: Iterable[str],
        expected_tag: Optional[str] = None,
        given_tag: Optional[str] = None,
    ):
        allowed = sorted(allowed_roles)
        if given_tag is not None and given_tag != expected_tag:
            message = (
                f"Signature type '{given_tag}' does not match step signature "
                f"'{expected_tag or 'none'}'"
            )
        else:
            message = f"Role '{acting_role}' may not act here; allowed: {', '.join(allowed)}"
        super().__init__(
            message,
            {
                "step_id": step_id,
                "acting_role": acting_role,
                "allowed_roles": allowed,
                "expected_tag": expected_tag,
                "given_tag": given_tag,
            },
        )


class DependencyNotMet(ClearanceError):
    """Preconditions of a step are not satisfied.

    ``blocked`` distinguishes "not yet" from "never will be": it is True when a
    predecessor was rejected.
    """

    code = "DEPENDENCY_NOT_MET"

    def __init__(
        self,
        step_id: str,
        order: int,
        unmet: List[Dict[str, Any]],
        blocked: bool = False,
        message: Optional[str] = None,
    ):
        if message is None:
            orders = ", ".join(str(dep["order"]) for dep in unmet)
            state = "blocked by a rejection" if blocked else "waiting on"
            message = f"Step {order} is {state} predecessor step(s): {orders}"
        super().__init__(
            message,
            {"step_id": step_id, "order": order, "blocked": blocked, "unmet": unmet},
        )
        self.blocked = blocked
        self.unmet = unmet


class InterdependencyIncomplete(DependencyNotMet):
    """A dependency points at an interdependent cluster that is not fully cleared."""

    code = "INTERDEPENDENCY_INCOMPLETE"

    def __init__(
        self,
        step_id: str,
        order: int,
        unmet: List[Dict[str, Any]],
        pending_members: Dict[int, List[int]],
        pending_roles: List[str],
    ):
        message = (
            f"Step {order} waits on interdependent clearances still pending: "
            f"{', '.join(pending_roles)}"
        )
        super().__init__(step_id, order, unmet, blocked=False, message=message)
        self.details["pending_members"] = {str(k): v for k, v in pending_members.items()}
        self.details["pending_roles"] = pending_roles
        self.pending_members = pending_members
        self.pending_roles = pending_roles


class AlreadyResolved(ClearanceError):
    """The step has already reached a terminal status."""

    code = "ALREADY_RESOLVED"

    def __init__(self, step_id: str, status: str):
        super().__init__(
            f"Step {step_id} is already {status}", {"step_id": step_id, "status": status}
        )


class RequestNotFound(ClearanceError):
    """No request (or instance set) exists for the identifier."""

    code = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        super().__init__(f"Clearance request {request_id} not found", {"request_id": request_id})


class StepNotFound(ClearanceError):
    """No step instance exists for the identifier."""

    code = "STEP_NOT_FOUND"

    def __init__(self, step_id: str, request_id: Optional[str] = None):
        super().__init__(
            f"Clearance step {step_id} not found", {"step_id": step_id, "request_id": request_id}
        )


class InvalidTransition(ClearanceError):
    """The requested macro-status change is not reachable from the current state."""

    code = "INVALID_TRANSITION"

    def __init__(self, request_id: str, current: str, target: str, reason: Optional[str] = None):
        message = f"Request {request_id} cannot move from '{current}' to '{target}'"
        if reason:
            message += f": {reason}"
        super().__init__(
            message,
            {"request_id": request_id, "current": current, "target": target, "reason": reason},
        )


class ActiveRequestExists(ClearanceError):
    """The staff member already has a clearance request in progress."""

    code = "ACTIVE_REQUEST_EXISTS"

    def __init__(self, staff_id: str, reference_code: str):
        super().__init__(
            f"Staff {staff_id} already has an active clearance request ({reference_code})",
            {"staff_id": staff_id, "reference_code": reference_code},
        )


class PersistenceError(ClearanceError):
    """Writing the request state failed; the whole resolution was rolled back."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, request_id: Optional[str], cause: Exception):
        super().__init__(
            f"Failed to persist request {request_id}: {cause}",
            {"request_id": request_id, "cause": str(cause)},
        )


class WorkflowDefinitionError(ValueError):
    """The step catalog violates a structural invariant."""
