"""
Workflows Package for the Clearance Engine.

This package provides the ClearanceWorkflow facade that drives clearance
requests through the step catalog.
"""

from .clearance import ClearanceWorkflow
from .helpers import (
    build_signature_map,
    generate_reference_code,
    signature_key,
    validate_request_input,
)

__all__ = [
    "ClearanceWorkflow",
    "build_signature_map",
    "generate_reference_code",
    "signature_key",
    "validate_request_input",
]
