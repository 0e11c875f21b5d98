"""
CLI helper functions and utilities.
"""

from .errors import handle_errors, run_async

__all__ = [
    'handle_errors',
    'run_async',
]
