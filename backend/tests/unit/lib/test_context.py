"""Unit tests for src.lib.context module.

Tests for request-scoped context variables attached to log records.
"""
from src.lib.context import (
    set_current_business_id,
    get_current_business_id,
    set_current_session_id,
    get_current_session_id,
    clear_context,
    context_snapshot,
    get_current_request_id,
    set_current_request_id,
)


class TestContextVariables:
    """Tests for context variable get/set functions."""

    def setup_method(self):
        """Clear context before each test."""
        clear_context()

    def teardown_method(self):
        """Clear context after each test."""
        clear_context()

    def test_business_id_default_is_none(self):
        """business_id should be None by default."""
        assert get_current_business_id() is None

    def test_business_id_can_be_set_and_retrieved(self):
        """business_id can be set and retrieved."""
        set_current_business_id("biz-42")
        assert get_current_business_id() == "biz-42"

    def test_session_id_can_be_set_and_retrieved(self):
        """session_id can be set and retrieved."""
        set_current_session_id("session-uuid-1234")
        assert get_current_session_id() == "session-uuid-1234"

    def test_clear_context_resets_all_values(self):
        """clear_context resets all context variables to None."""
        set_current_business_id("biz-1")
        set_current_session_id("session-456")

        clear_context()

        assert get_current_business_id() is None
        assert get_current_session_id() is None

    def test_overwriting_context_value(self):
        """Setting a context value twice overwrites the previous value."""
        set_current_business_id("first")
        set_current_business_id("second")
        assert get_current_business_id() == "second"

    def test_request_id_in_snapshot(self):
        """context_snapshot reports every value attached to log records."""
        set_current_request_id("req-1")
        set_current_business_id("biz-1")

        assert context_snapshot() == {"request_id": "req-1", "business_id": "biz-1", "session_id": None}

        clear_context()
        assert get_current_request_id() is None
