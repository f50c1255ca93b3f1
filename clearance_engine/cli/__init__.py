"""Command-line interface for the Clearance Engine."""
