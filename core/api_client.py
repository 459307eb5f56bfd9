"""
Reusable HTTP client with connection retries, timeout handling, and session management.
Executes fully-formed requests built by the service adapters.
"""

import logging
import requests
from dataclasses import dataclass, field
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from typing import Optional, Dict, Any, Callable

from PyQt6.QtCore import QObject, pyqtSignal

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass(frozen=True)
class HttpRequest:
    """A transport-ready request descriptor."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HttpResponse:
    """A transport response descriptor. Header names are lower-cased."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


class ApiClient:
    """
    The transport shared by every service adapter: one pooled session,
    connection-level retries and a default timeout.
    """
    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.session = self._create_session()
        self.session.headers.update({"Accept": "application/json"})
        self.timeout = timeout

    def _create_session(self) -> requests.Session:
        """
        Creates a requests session that retries failed connections.
        HTTP status codes are passed through untouched; the adapters classify them.
        """
        session = requests.Session()
        retry = Retry(
            total=2,
            connect=2,
            read=0,
            status=0,
            backoff_factor=0.3,
            allowed_methods=None,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def execute(self, request: HttpRequest, timeout: Optional[int] = None) -> HttpResponse:
        """
        Performs one HTTP exchange.

        Args:
            request: Fully-formed request (method, URL, headers, body)
            timeout: Custom timeout (overrides default)

        Returns:
            HttpResponse for any HTTP status, including 4xx/5xx

        Raises:
            TransportError: On connection, DNS, TLS or timeout failures
        """
        request_timeout = timeout if timeout is not None else self.timeout
        method = request.method.upper()
        logger.debug(f"{method} {request.url} params={request.params}")

        try:
            response = self.session.request(
                method,
                request.url,
                headers=request.headers,
                params=request.params or None,
                data=request.body,
                timeout=request_timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout on {method} {request.url}: {e}")
            raise TransportError(f"Request timed out after {request_timeout}s", timeout=True) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error on {method} {request.url}: {e}")
            raise TransportError(str(e)) from e

        if response.status_code >= 400:
            logger.warning(f"{method} {request.url} -> HTTP {response.status_code}")
            logger.debug(f"Response body: {response.text[:500]}")

        return HttpResponse(
            status=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=response.content or b"",
        )

    def close(self):
        """Releases the pooled connections."""
        if self.session:
            self.session.close()


class ApiWorker(QObject):
    """
    Runs one exchange (or any callable) on the QThread it is moved to.
    The dispatcher gives each exchange its own worker.
    """
    finished = pyqtSignal(object, str)  # (response, crash message)
    progress = pyqtSignal(str)

    def __init__(self, task_callable: Callable, *args, **kwargs):
        super().__init__()
        self.task_callable = task_callable
        self.args = args
        self.kwargs = kwargs
        self.is_running = True

    def stop(self):
        """A stopped worker still finishes its call but drops the result."""
        self.is_running = False

    def run(self):
        name = getattr(self.task_callable, '__qualname__', repr(self.task_callable))
        self.progress.emit(f"Exchange started: {name}")

        try:
            outcome = self.task_callable(*self.args, **self.kwargs)
        except Exception as e:
            logger.error(f"❌ Exchange {name} crashed: {e}", exc_info=True)
            if self.is_running:
                self.finished.emit(None, str(e))
        else:
            if self.is_running:
                self.finished.emit(outcome, "")
        finally:
            self.progress.emit(f"Exchange done: {name}")
