"""
Case Application Layer
======================

Application layer for the case lifecycle module.

Contains:
- Services: Lifecycle transitions and escalation target resolution
- Sweeps: Background reconciliation jobs
- Notifications: Fire-and-forget dispatch to the notifier
- DTOs: Input validation and operational API responses

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from cases.application.dto import (
    CaseCreateDTO,
    SweepReportResponse,
    JobStatusResponse,
    HealthResponse,
)
from cases.application.notifications import (
    INotifier,
    NotificationDispatcher,
    case_payload,
)
from cases.application.services import (
    CaseLifecycleService,
    EscalationResolver,
    ICaseRepository,
    IUserDirectory,
    ISLAConfigProvider,
    StaticConfigProvider,
    IClock,
    SystemClock,
    UserCounter,
    USER_COUNTER_FIELDS,
    CASE_PATCH_FIELDS,
    escalation_patch,
)
from cases.application.sweeps import (
    SweepReport,
    Sweep,
    SLABreachSweep,
    EscalationSweep,
    WorkloadReconciliationSweep,
    DigestSweep,
    LivenessSweep,
)

__all__ = [
    # DTOs
    "CaseCreateDTO",
    "SweepReportResponse",
    "JobStatusResponse",
    "HealthResponse",
    # Notifications
    "INotifier",
    "NotificationDispatcher",
    "case_payload",
    # Services
    "CaseLifecycleService",
    "EscalationResolver",
    "escalation_patch",
    # Sweeps
    "SweepReport",
    "Sweep",
    "SLABreachSweep",
    "EscalationSweep",
    "WorkloadReconciliationSweep",
    "DigestSweep",
    "LivenessSweep",
    # Repository Interfaces
    "ICaseRepository",
    "IUserDirectory",
    "ISLAConfigProvider",
    "StaticConfigProvider",
    "IClock",
    "SystemClock",
    "UserCounter",
    "USER_COUNTER_FIELDS",
    "CASE_PATCH_FIELDS",
]
