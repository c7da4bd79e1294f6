"""
Pipeline Interfaces Layer
=========================

Interface adapters (controllers) for the triage pipeline.

Contains:
- Controllers: FastAPI route handlers
"""

from feedback_triage.pipeline.interfaces.controllers import admin_router, pipeline_router

__all__ = ["admin_router", "pipeline_router"]
