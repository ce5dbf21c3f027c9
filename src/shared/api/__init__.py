"""Request middleware and exception handlers for the operational API."""
