"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


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
        super().__init__(f"{service_name}: {message}", details)


class BrokerUnavailableException(ExternalServiceException):
    """Raised when the automation queue broker cannot be reached."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Queue Broker", message, details)


class MutationConflictException(ExternalServiceException):
    """
    Raised when the ticket store reports a write conflict.

    Retryable: the dispatcher lets the queue retry the whole unit of work.
    """

    def __init__(
        self,
        ticket_id: str,
        rule_ids: Optional[list] = None,
        details: Optional[dict] = None
    ):
        self.ticket_id = ticket_id
        self.rule_ids = list(rule_ids or [])
        super().__init__(
            "Ticket Store",
            f"write conflict on ticket {ticket_id}",
            details or {"ticket_id": ticket_id, "rule_ids": self.rule_ids}
        )
