"""
Error taxonomy for the realtime table client.

Backends raise these; TableCollection turns them into state or into a
MutationResult so callers never have to catch them.
"""
import asyncio
from typing import Optional

from pydantic import ValidationError as PydanticValidationError


class RealtimeTableError(Exception):
    """Base class for every error surfaced by the client"""

    retryable = False

    def __init__(self, message: str = "", *, table: Optional[str] = None, row_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.table = table
        self.row_id = row_id

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return f"{self.error_type}: {self.message}"


class NetworkError(RealtimeTableError):
    """Transport failure; the same call may succeed if re-invoked"""

    retryable = True


class NotFoundError(RealtimeTableError):
    """The table or row id does not exist remotely"""


class ValidationError(RealtimeTableError):
    """The payload was rejected by the remote constraints or by local validation"""


class AuthError(RealtimeTableError):
    """The caller lacks permission for the table or row"""


class SubscriptionLostError(RealtimeTableError):
    """The change stream disconnected"""

    retryable = True


def classify_error(exc: BaseException) -> RealtimeTableError:
    """Map an arbitrary exception onto the error taxonomy."""
    if isinstance(exc, RealtimeTableError):
        return exc
    if isinstance(exc, PermissionError):
        return AuthError(str(exc) or "permission denied")
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return NetworkError(str(exc) or "request timed out")
    if isinstance(exc, (ConnectionError, OSError)):
        return NetworkError(str(exc) or "connection failed")
    if isinstance(exc, PydanticValidationError):
        return ValidationError(_summarize_pydantic(exc))
    return RealtimeTableError(str(exc) or type(exc).__name__)


def _summarize_pydantic(exc) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts)
