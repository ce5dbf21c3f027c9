"""
Case Interfaces Layer
=====================

Interface adapters (controllers) for the case engine.

Contains:
- Controllers: FastAPI route handlers for job control

This is the outermost layer - handles HTTP requests/responses and
delegates to the engine.
"""

from cases.interfaces.controllers import router as jobs_router

__all__ = ["jobs_router"]
