"""Custom exception classes for the question logic engine."""

from typing import Optional, Dict, Any


class QuestionLogicError(Exception):
    """Base exception for question logic errors."""

    ERROR_CODE = "QUESTION_LOGIC_001"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Initialize exception with message, code, and optional details.

        Args:
            message: Error message
            error_code: Optional error code override
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.error_code = error_code or self.ERROR_CODE
        self.details = details or {}


class ValidationError(QuestionLogicError):
    """Raised when caller input is missing or malformed."""

    ERROR_CODE = "VALIDATION_001"


class ConfigurationError(QuestionLogicError):
    """Raised for unknown window kinds, strategies, or resolution methods."""

    ERROR_CODE = "CONFIG_001"


class PolicyViolation(QuestionLogicError):
    """Raised when an operation is attempted against a rule that forbids it."""

    ERROR_CODE = "POLICY_001"


class NotFoundError(QuestionLogicError):
    """Raised when a referenced entity does not exist."""

    ERROR_CODE = "NOT_FOUND_001"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
    ):
        """Initialize with the missing entity kind and identifier."""
        super().__init__(message, error_code)
        self.entity = entity
        self.entity_id = entity_id
        if entity:
            self.details["entity"] = entity
        if entity_id:
            self.details["entity_id"] = entity_id


class StorageError(QuestionLogicError):
    """Raised during storage operations."""

    ERROR_CODE = "STORAGE_001"
