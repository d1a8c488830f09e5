"""Unit tests for custom exception classes."""

import pytest

from src.lib.exceptions import (
    QuestionLogicError,
    ValidationError,
    ConfigurationError,
    PolicyViolation,
    NotFoundError,
    StorageError,
)


class TestQuestionLogicError:
    """Test cases for QuestionLogicError base class."""

    def test_create_with_message_only(self):
        """Test creating exception with just message."""
        error = QuestionLogicError("Test error message")
        assert str(error) == "Test error message"
        assert error.error_code == "QUESTION_LOGIC_001"
        assert error.details == {}

    def test_create_with_custom_error_code(self):
        """Test creating exception with custom error code."""
        error = QuestionLogicError("Test error", error_code="CUSTOM_001")
        assert error.error_code == "CUSTOM_001"

    def test_create_with_details(self):
        """Test creating exception with additional details."""
        details = {"question_id": "q-1", "target": 10}
        error = QuestionLogicError("Test error", details=details)
        assert error.details == details


class TestErrorCodes:
    """Each subclass carries its own default code."""

    @pytest.mark.parametrize("exc_class,code", [
        (ValidationError, "VALIDATION_001"),
        (ConfigurationError, "CONFIG_001"),
        (PolicyViolation, "POLICY_001"),
        (NotFoundError, "NOT_FOUND_001"),
        (StorageError, "STORAGE_001"),
    ])
    def test_default_code(self, exc_class, code):
        """Test default error code and inheritance from the base class."""
        error = exc_class("failure")
        assert error.error_code == code
        assert isinstance(error, QuestionLogicError)

    def test_can_override_error_code(self):
        """Test that error code can be overridden."""
        error = PolicyViolation("Budget exhausted", error_code="POLICY_999")
        assert error.error_code == "POLICY_999"


class TestNotFoundError:
    """Test cases for NotFoundError."""

    def test_entity_fields_are_copied_to_details(self):
        """Entity kind and id are exposed as attributes and details."""
        error = NotFoundError("Question q-1 not found", entity="question", entity_id="q-1")
        assert error.entity == "question"
        assert error.entity_id == "q-1"
        assert error.details == {"entity": "question", "entity_id": "q-1"}

    def test_without_entity(self):
        """Details stay empty when no entity is given."""
        error = NotFoundError("missing")
        assert error.entity is None
        assert error.details == {}

    def test_can_be_caught_as_base(self):
        """Test catching a subclass through the base exception."""
        with pytest.raises(QuestionLogicError):
            raise NotFoundError("missing", entity="trigger", entity_id="t-1")
