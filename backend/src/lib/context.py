"""Context variables for request-scoped data.

The call-orchestration layer sets these at the start of each request so that
every log line emitted by the question logic engine carries the request,
business and session it was produced for.

Usage:
    set_current_business_id(business_id)
    set_current_session_id(session_id)
    set_current_request_id(request_id)

    # In logging filters or services:
    business_id = get_current_business_id()

Note: These use contextvars which are properly isolated per async task.
"""

from contextvars import ContextVar
from typing import Dict, Optional

_current_business_id: ContextVar[Optional[str]] = ContextVar('business_id', default=None)
_current_session_id: ContextVar[Optional[str]] = ContextVar('session_id', default=None)
_current_request_id: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


def set_current_business_id(business_id: str) -> None:
    """Set the business the current request is acting for."""
    _current_business_id.set(business_id)


def get_current_business_id() -> Optional[str]:
    """Get the current business ID.

    Returns:
        The business ID if set, None otherwise
    """
    return _current_business_id.get()


def set_current_session_id(session_id: str) -> None:
    """Set the current customer session ID.

    Args:
        session_id: Session identifier of the customer interaction
    """
    _current_session_id.set(session_id)


def get_current_session_id() -> Optional[str]:
    """Get the current customer session ID."""
    return _current_session_id.get()


def set_current_request_id(request_id: str) -> None:
    """Set the identifier the calling layer assigned to this request."""
    _current_request_id.set(request_id)


def get_current_request_id() -> Optional[str]:
    return _current_request_id.get()


def context_snapshot() -> Dict[str, Optional[str]]:
    """Return the request-scoped values attached to log records."""
    return {
        "request_id": _current_request_id.get(),
        "business_id": _current_business_id.get(),
        "session_id": _current_session_id.get(),
    }


def clear_context() -> None:
    """Reset all request-scoped context variables."""
    _current_business_id.set(None)
    _current_session_id.set(None)
    _current_request_id.set(None)
