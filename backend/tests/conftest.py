"""
Pytest configuration and fixtures for backend tests.
"""
import pytest

from src.lib.context import clear_context
from src.lib.question_logic.settings import reset_settings


@pytest.fixture(autouse=True)
def isolate_process_state():
    """Reset cached settings and request context around every test."""
    reset_settings()
    clear_context()
    yield
    reset_settings()
    clear_context()
