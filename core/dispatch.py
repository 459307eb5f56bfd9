"""
Request dispatch: tickets, the single-exchange task, retry with backoff,
and the dispatchers that run exchanges off the caller's thread.
"""

import itertools
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from PyQt6.QtCore import QObject, QThread, pyqtSlot
from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_exponential

from .api_client import ApiClient, ApiWorker
from .errors import ErrorClass, ErrorInfo, RequestBuildError, TransportError
from .models import Request, Response

logger = logging.getLogger(__name__)

_ticket_ids = itertools.count(1)


class RequestTicket:
    """
    Handle for one submitted request.
    Cancelling a ticket discards its result whenever it arrives.
    """

    def __init__(self, request: Request, service_name: str,
                 callback: Optional[Callable[[Response], None]] = None):
        self.id = next(_ticket_ids)
        self.request = request
        self.service_name = service_name
        self.callback = callback
        self.response: Optional[Response] = None
        self.dispatched: Optional[Request] = None  # the request currently on the wire
        self._cancelled = threading.Event()

    def __repr__(self) -> str:
        return f"<RequestTicket #{self.id} {self.service_name} {self.request.type.value}>"

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def done(self) -> bool:
        return self.response is not None

    def wait_cancelled(self, seconds: float) -> bool:
        """Sleeps up to `seconds`, waking early if the ticket is cancelled."""
        return self._cancelled.wait(seconds)


def perform_exchange(client: ApiClient, auth, request: Request, timeout: Optional[int] = None) -> Response:
    """
    One complete exchange: build with the current credential, execute, handle.
    Never raises for runtime failures.

    Args:
        client: The transport
        auth: The AuthController of the adapter that owns the request
        request: The canonical request
        timeout: Optional per-request timeout
    """
    try:
        http_request = auth.build_request(request)
    except RequestBuildError as e:
        # Deferred requests are built late; validation at submit time already raised for the caller.
        logger.error(f"❌ Could not build {request.type.value}: {e}")
        return Response.failure(request.type, ErrorInfo.of(ErrorClass.SERVICE_REJECTED, str(e)))

    try:
        http_response = client.execute(http_request, timeout)
    except TransportError as e:
        return Response.failure(request.type, ErrorInfo.of(ErrorClass.TRANSPORT, str(e)))

    return auth.service.handle_response(request, http_response)


class RetryPolicy:
    """
    Bounded retries for Transport and RateLimited failures.
    RateLimited waits for the backend's Retry-After (or the cooldown);
    everything else retriable backs off exponentially.
    """

    def __init__(self, max_attempts: int = 4, backoff_base: float = 1.0, backoff_max: float = 60.0,
                 rate_limit_cooldown: float = 60.0, sleep: Optional[Callable[[float], None]] = None):
        """
        Args:
            max_attempts: Total attempts including the first
            backoff_base: Multiplier of the exponential backoff, in seconds
            backoff_max: Upper bound for any single wait, in seconds
            rate_limit_cooldown: Wait after a RateLimited error without Retry-After
            sleep: Replaces the cancellable wait (tests)
        """
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.rate_limit_cooldown = rate_limit_cooldown
        self.sleep = sleep
        self._exponential = wait_exponential(multiplier=backoff_base, max=backoff_max)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.get_global_setting("retry/max_attempts"),
            backoff_base=settings.get_global_setting("retry/backoff_base"),
            backoff_max=settings.get_global_setting("retry/backoff_max"),
            rate_limit_cooldown=settings.get_global_setting("retry/rate_limit_cooldown"),
        )

    def wait_for(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.result().error
        if error is not None and error.error_class is ErrorClass.RATE_LIMITED:
            delay = error.retry_after if error.retry_after is not None else self.rate_limit_cooldown
            return min(delay, self.backoff_max)
        return self._exponential(retry_state)

    def run(self, task: Callable[[], Response], ticket: RequestTicket) -> Response:
        """Runs the task until it succeeds, fails for good, runs out of attempts or is cancelled."""

        def should_retry(response: Response) -> bool:
            return (not ticket.cancelled
                    and response.error is not None
                    and response.error.retriable)

        def attempt() -> Response:
            if ticket.cancelled:
                return Response.failure(ticket.request.type,
                                        ErrorInfo(ErrorClass.TRANSPORT, "Request cancelled"))
            return task()

        def log_retry(retry_state: RetryCallState):
            error = retry_state.outcome.result().error
            logger.warning(
                f"⚠️ {ticket!r} attempt {retry_state.attempt_number}/{self.max_attempts} failed ({error}); "
                f"retrying in {retry_state.next_action.sleep:.1f}s"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait_for,
            retry=retry_if_result(should_retry),
            sleep=self.sleep or ticket.wait_cancelled,
            before_sleep=log_retry,
            retry_error_callback=lambda state: state.outcome.result(),
            reraise=True,
        )
        return retrying(attempt)


Completion = Callable[[RequestTicket, Response], None]


class InlineDispatcher:
    """Runs each exchange synchronously on the caller's thread."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()

    def dispatch(self, ticket: RequestTicket, task: Callable[[], Response], on_done: Completion):
        on_done(ticket, self.retry_policy.run(task, ticket))

    def shutdown(self):
        pass


class ThreadDispatcher(QObject):
    """
    Runs each exchange on its own QThread through an ApiWorker and delivers
    the result back on the thread that owns the dispatcher.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, parent: Optional[QObject] = None):
        super().__init__(parent)
        self.retry_policy = retry_policy or RetryPolicy()
        self._active: Dict[ApiWorker, Tuple[QThread, RequestTicket, Completion]] = {}
        # Threads are referenced until they have fully finished.
        self._threads: List[QThread] = []

    @property
    def active_count(self) -> int:
        return len(self._active)

    def dispatch(self, ticket: RequestTicket, task: Callable[[], Response], on_done: Completion):
        thread = QThread()
        worker = ApiWorker(self.retry_policy.run, task, ticket)
        self._active[worker] = (thread, ticket, on_done)
        self._threads.append(thread)

        worker.moveToThread(thread)

        worker.finished.connect(self._on_worker_finished)
        worker.finished.connect(thread.quit)
        worker.finished.connect(worker.deleteLater)

        thread.finished.connect(self._on_thread_finished)

        worker.progress.connect(logger.debug)
        thread.started.connect(worker.run)
        thread.start()

    @pyqtSlot(object, str)
    def _on_worker_finished(self, result: Optional[Response], error: str):
        worker = self.sender()
        entry = self._active.pop(worker, None)
        if entry is None:
            return
        thread, ticket, on_done = entry
        if result is None:
            # The task raised; treat it like any other unexpected response.
            result = Response.failure(ticket.request.type,
                                      ErrorInfo.of(ErrorClass.MALFORMED, error or "Worker failed"))
        on_done(ticket, result)

    @pyqtSlot()
    def _on_thread_finished(self):
        thread = self.sender()
        if thread in self._threads:
            self._threads.remove(thread)

    def shutdown(self, timeout_ms: int = 5000):
        """Cancels every in-flight exchange and waits for the threads to exit."""
        logger.info(f"Stopping {len(self._active)} running request(s)...")
        for worker, (_, ticket, _) in list(self._active.items()):
            ticket.cancel()
            worker.stop()
        self._active.clear()
        for thread in list(self._threads):
            thread.quit()
            if not thread.wait(timeout_ms):
                logger.warning(f"⚠️ A request thread did not stop within {timeout_ms} ms")
        self._threads.clear()
