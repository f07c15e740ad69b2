"""
Google Workspace integration package.

Every upstream call goes through RetryExecutor, which normalises failures
with errors.normalize and retries the transient ones. See retry.py.
"""

from .errors import NormalizedError, normalize
from .retry import RetryContext, RetryExecutor, execute_with_retry

__all__ = [
    "NormalizedError",
    "normalize",
    "RetryContext",
    "RetryExecutor",
    "execute_with_retry",
]
