"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. Only definition and
infrastructure errors are raised out of the automation engine; evaluation
and action failures are reported as values.
"""

from typing import List, Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class RuleDefinitionException(ValidationException):
    """
    Raised when a rule definition violates the rule invariants.

    Carries every problem found so the caller can fix them in one round trip.
    """

    def __init__(self, errors: List[str], details: Optional[dict] = None):
        self.errors = list(errors)
        super().__init__(
            "Invalid automation rule: " + "; ".join(self.errors),
            details or {"errors": self.errors}
        )


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

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


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        self.reason = message
        super().__init__(f"{service_name}: {message}", details)


class TicketServiceException(ExternalServiceException):
    """Exception for ticket service failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Ticket Service", message, details)


class NotificationServiceException(ExternalServiceException):
    """Exception for notification service failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Service", message, details)
