"""
Error taxonomy shared by the transport, the service adapters and the orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorClass(Enum):
    TRANSPORT = "Transport"
    AUTHENTICATION = "Authentication"
    RATE_LIMITED = "RateLimited"
    NOT_FOUND = "NotFound"
    MALFORMED = "Malformed"
    SERVICE_REJECTED = "ServiceRejected"


# Only these classes are ever retried by the dispatcher.
RETRIABLE_CLASSES = frozenset({ErrorClass.TRANSPORT, ErrorClass.RATE_LIMITED})


@dataclass(frozen=True)
class ErrorInfo:
    """
    A classified failure. `raw` keeps the backend's own message or body
    excerpt for diagnostics.
    """
    error_class: ErrorClass
    message: str
    retriable: bool = False
    status_code: Optional[int] = None
    retry_after: Optional[float] = None
    raw: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def of(cls, error_class: ErrorClass, message: str, **kwargs) -> "ErrorInfo":
        """Builds an ErrorInfo whose retriable flag follows its class."""
        return cls(error_class, message, error_class in RETRIABLE_CLASSES, **kwargs)

    def __str__(self) -> str:
        code = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{self.error_class.value}{code}: {self.message}"


class SyncError(Exception):
    """Base class for all exceptions raised by the sync layer."""


class RequestBuildError(SyncError):
    """A request is missing parameters its type requires. Caller bug, not a runtime failure."""


class TransportError(SyncError):
    """The HTTP exchange itself failed (connection, DNS, TLS, timeout)."""

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout


class DocumentError(SyncError):
    """A response body could not be parsed into a document."""


class UnknownServiceError(SyncError):
    """No service adapter is registered under the requested name."""
