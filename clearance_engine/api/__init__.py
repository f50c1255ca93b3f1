"""REST API for the Clearance Engine."""
