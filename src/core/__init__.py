"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ConfigurationException,
    NotFoundError,
    InvalidTransitionInput,
    InvalidAssignee,
    TransientStoreError,
    CaseIdConflict,
    ExternalServiceException,
    NotificationError,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ConfigurationException",
    "NotFoundError",
    "InvalidTransitionInput",
    "InvalidAssignee",
    "TransientStoreError",
    "CaseIdConflict",
    "ExternalServiceException",
    "NotificationError",
]
