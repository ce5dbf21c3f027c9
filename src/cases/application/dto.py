"""
Case Application DTOs
=====================

Data Transfer Objects for the case lifecycle service and the operational API.

These Pydantic models handle validation of lifecycle inputs and
serialization of the job-control responses.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional, Literal
from datetime import datetime

from config import VALID_SEVERITIES, VALID_CATEGORIES


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["P1", "P2", "P3"]


# ========== Request DTOs ==========

class CaseCreateDTO(BaseModel):
    """DTO for opening a new case."""
    title: str = Field(..., min_length=1, max_length=500, description="Case title")
    description: str = Field(..., min_length=1, description="Case description")
    priority: PriorityStr = Field(default="P3", description="Case priority")
    severity: Optional[str] = Field(None, description="Case severity")
    category: Optional[str] = Field(None, description="Case category")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    assigned_to: Optional[str] = Field(None, description="Initial assignee user id")

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in VALID_SEVERITIES:
            raise ValueError(f"Invalid severity. Must be one of: {VALID_SEVERITIES}")
        return v

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in VALID_CATEGORIES:
            raise ValueError(f"Invalid category. Must be one of: {VALID_CATEGORIES}")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        """Strip tags and drop empty ones."""
        return [tag.strip() for tag in v if tag and tag.strip()]


# ========== Response DTOs ==========

class SweepReportResponse(BaseModel):
    """Outcome of a single sweep run."""
    sweep: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    selected: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    timed_out: bool = False
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class JobStatusResponse(BaseModel):
    """Scheduler view of one registered job."""
    name: str
    description: str
    trigger: str
    paused: bool
    next_run_time: Optional[datetime] = None
    runs: int = 0
    last_error: Optional[str] = None
    last_report: Optional[SweepReportResponse] = None


class HealthResponse(BaseModel):
    """Response model for the health endpoint."""
    status: str = Field(..., description="healthy or degraded")
    version: str
    environment: str
    store_backend: str
    scheduler_running: bool
    pending_notifications: int = 0
    snapshot: Optional[Dict[str, Any]] = Field(
        None,
        description="Last liveness snapshot, absent before the first liveness run"
    )
