"""
Schema package - Re-exports the question logic request and result models.

These Pydantic models describe what callers pass into the selection engine
and what each stage returns.
"""

# Re-export everything from question_logic for convenience
from .question_logic import *  # noqa: F401, F403
