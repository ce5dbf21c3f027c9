"""
Configuration Module
====================

Application settings and configuration management using Pydantic.

Settings cover storage, sweep scheduling, notifications and metrics.
SLA deadline hours live in a separate YAML file (see ``sla_config_path``)
so they can be hot-reloaded without a restart.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="case-sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Storage ==========
    store_backend: str = Field(
        default="sql",
        description="Case store / user directory backend: 'sql' or 'memory'"
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/cases",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA configuration YAML file"
    )
    escalation_grace_minutes: int = Field(
        default=60,
        description="Minutes past the due date before an overdue case is escalated",
        ge=0
    )
    breach_warning_minutes: int = Field(
        default=60,
        description="Window before the due date in which cases are reported as approaching breach",
        ge=0
    )

    # ========== Scheduler ==========
    scheduler_enabled: bool = Field(default=True, description="Start the sweep scheduler on startup")
    scheduler_timezone: str = Field(default="UTC", description="Timezone for cron-style jobs")
    sla_breach_interval_seconds: int = Field(default=300, description="SLA breach sweep interval", ge=1)
    escalation_interval_seconds: int = Field(default=900, description="Escalation sweep interval", ge=1)
    reconciliation_interval_seconds: int = Field(
        default=3600,
        description="Workload reconciliation sweep interval",
        ge=1
    )
    liveness_interval_seconds: int = Field(default=60, description="Liveness sweep interval", ge=1)
    digest_hour: int = Field(default=8, description="Hour of the daily digest", ge=0, le=23)
    digest_minute: int = Field(default=0, description="Minute of the daily digest", ge=0, le=59)
    sweep_timeout_seconds: float = Field(
        default=120.0,
        description="Soft timeout for a single sweep run",
        gt=0
    )
    sweep_page_size: int = Field(default=500, description="Max records selected per sweep run", ge=1)
    misfire_grace_seconds: int = Field(default=60, description="APScheduler misfire grace time", ge=1)

    # ========== Notifications ==========
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Upper bound on a single notification delivery",
        gt=0
    )
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for notifications"
    )
    slack_channel: str = Field(
        default="#soc-case-alerts",
        description="Slack channel for case notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    case_link_base_url: str = Field(
        default="https://soc.example.com/cases",
        description="Base URL used to link cases in notifications"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Ensure the storage backend is supported."""
        allowed = {"sql", "memory"}
        if v not in allowed:
            raise ValueError(f"store_backend must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class CaseStatus(str):
    """Case workflow statuses."""
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


class Priority(str):
    """Case priority levels."""
    P1 = "P1"   # critical
    P2 = "P2"   # high
    P3 = "P3"   # medium


class Severity(str):
    """Case severity levels."""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class CaseCategory(str):
    """Case categories."""
    MALWARE = "Malware"
    INTRUSION = "Intrusion"
    POLICY_VIOLATION = "Policy Violation"
    VULNERABILITY = "Vulnerability"
    OTHER = "Other"


class UserRole(str):
    """User roles."""
    ADMIN = "admin"
    SENIOR_ANALYST = "senior_analyst"
    ANALYST = "analyst"
    VIEWER = "viewer"


class TimelineAction(str):
    """Timeline event actions."""
    CREATED = "Created"
    ASSIGNED = "Assigned"
    STATUS_CHANGED = "Status Changed"
    PRIORITY_CHANGED = "Priority Changed"
    COMMENT_ADDED = "Comment Added"
    ESCALATED = "Escalated"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    SLA_BREACH = "SLA Breach"


class NotificationKind(str):
    """Kinds of notifications sent through the notifier."""
    ESCALATION = "escalation"
    DAILY_DIGEST = "daily_digest"
    ASSIGNMENT = "assignment"


# ========== Lists for validation ==========

VALID_STATUSES = [
    CaseStatus.OPEN, CaseStatus.IN_PROGRESS,
    CaseStatus.RESOLVED, CaseStatus.CLOSED
]
ACTIVE_STATUSES = [CaseStatus.OPEN, CaseStatus.IN_PROGRESS]
CLOSED_OUT_STATUSES = [CaseStatus.RESOLVED, CaseStatus.CLOSED]
VALID_PRIORITIES = [Priority.P1, Priority.P2, Priority.P3]
VALID_SEVERITIES = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW]
VALID_CATEGORIES = [
    CaseCategory.MALWARE, CaseCategory.INTRUSION,
    CaseCategory.POLICY_VIOLATION, CaseCategory.VULNERABILITY,
    CaseCategory.OTHER
]
VALID_ROLES = [UserRole.ADMIN, UserRole.SENIOR_ANALYST, UserRole.ANALYST, UserRole.VIEWER]
ESCALATION_ROLES = [UserRole.SENIOR_ANALYST, UserRole.ADMIN]
WORKLOAD_ROLES = [UserRole.ANALYST, UserRole.SENIOR_ANALYST]
VALID_TIMELINE_ACTIONS = [
    TimelineAction.CREATED, TimelineAction.ASSIGNED,
    TimelineAction.STATUS_CHANGED, TimelineAction.PRIORITY_CHANGED,
    TimelineAction.COMMENT_ADDED, TimelineAction.ESCALATED,
    TimelineAction.RESOLVED, TimelineAction.CLOSED,
    TimelineAction.SLA_BREACH
]
VALID_NOTIFICATION_KINDS = [
    NotificationKind.ESCALATION, NotificationKind.DAILY_DIGEST,
    NotificationKind.ASSIGNMENT
]
