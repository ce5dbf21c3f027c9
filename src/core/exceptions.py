"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. Lifecycle operations raise them
to their caller; sweep jobs catch them per record.
"""

from typing import Optional, Any


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class NotFoundError(ApplicationException):
    """A referenced case, user or job does not exist. Never retried."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class InvalidTransitionInput(ValidationException):
    """Malformed status, priority, assignee or event value."""

    def __init__(self, field: str, value: Any, details: Optional[dict] = None):
        self.field = field
        self.value = value
        super().__init__(
            f"Invalid value for {field}: {value!r}",
            details or {"field": field, "value": repr(value)}
        )


class InvalidAssignee(DomainException):
    """Target user of an assignment is missing or inactive."""

    def __init__(self, user_id: str, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(
            f"Cannot assign to user '{user_id}': {reason}",
            {"user_id": user_id, "reason": reason}
        )


class TransientStoreError(RepositoryException):
    """Store read/write failure. Sweeps log it per record and move on."""

    def __init__(self, operation: str, message: str, details: Optional[dict] = None):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}", details)


class CaseIdConflict(RepositoryException):
    """A human-readable case id is already taken."""

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case id '{case_id}' already exists", {"case_id": case_id})


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class NotificationError(ExternalServiceException):
    """Notifier failure. Logged, never rolls back the state change it accompanied."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notifier", message, details)
