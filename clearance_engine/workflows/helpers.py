"""
Workflow Helper Functions for the Clearance Engine.

Utility functions for request intake validation, reference codes and
signature bookkeeping.
"""

import logging
import random
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..models import ClearancePurpose

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "TCS"
MAX_REFERENCE_ATTEMPTS = 20

BOOKEND_SIGNATURE_KEYS = {
    "initial": "vpinitialsignature",
    "final": "vpfinalsignature",
}


def validate_request_input(staff_id: Optional[str], purpose: Any) -> List[str]:
    """
    Validate the input of a new clearance request.

    Args:
        staff_id: Identifier of the departing staff member
        purpose: A ClearancePurpose or its string value

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not staff_id or not str(staff_id).strip():
        errors.append("Staff ID is required")

    if purpose is None or (isinstance(purpose, str) and not purpose.strip()):
        errors.append("Purpose is required")
    else:
        try:
            ClearancePurpose(purpose)
        except ValueError:
            allowed = ", ".join(p.value for p in ClearancePurpose)
            errors.append(f"Invalid purpose '{purpose}'; expected one of: {allowed}")

    return errors


def generate_reference_code(
    exists: Optional[Callable[[str], bool]] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Generate a human-readable reference code such as ``TCS-2026-04817``.

    Args:
        exists: Predicate telling whether a code is already taken
        now: Clock override for the year component

    Returns:
        A code not rejected by ``exists``
    """
    year = (now or datetime.now(timezone.utc)).year

    for _ in range(MAX_REFERENCE_ATTEMPTS):
        code = f"{REFERENCE_PREFIX}-{year}-{random.randint(0, 99999):05d}"
        if exists is None or not exists(code):
            return code
        logger.debug(f"Reference code collision on {code}")

    raise RuntimeError(f"Could not generate a unique reference code after {MAX_REFERENCE_ATTEMPTS} attempts")


def signature_key(label: str) -> str:
    """Normalize a role or department label to a signature key."""
    return re.sub(r"[^a-z0-9]", "", label.lower())


def build_signature_map(
    entries: List[Dict[str, Optional[str]]],
    vp_initial: Optional[str] = None,
    vp_final: Optional[str] = None,
) -> Dict[str, str]:
    """
    Collect signatures under normalized keys.

    Args:
        entries: Dicts with ``role`` and ``signature`` for each signed step
        vp_initial: Initial bookend signature
        vp_final: Final bookend signature

    Returns:
        Mapping of signature key to signature payload
    """
    signatures: Dict[str, str] = {}

    for entry in entries:
        if entry.get("signature") and entry.get("role"):
            signatures.setdefault(signature_key(entry["role"]), entry["signature"])

    if vp_initial:
        signatures[BOOKEND_SIGNATURE_KEYS["initial"]] = vp_initial
    if vp_final:
        signatures[BOOKEND_SIGNATURE_KEYS["final"]] = vp_final

    return signatures
