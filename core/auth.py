"""
Per-service authentication state machine.

The controller is the only owner of a service's Credential. It decides whether
a request may be dispatched, builds transport requests with the credential
injected, and moves between states as authentication responses arrive:

    Unauthenticated -> Authenticating -> Authenticated -> Expired
           ^                                  |             |
           +------------- logout -------------+-------------+
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

from .api_client import HttpRequest
from .errors import ErrorClass, ErrorInfo
from .logging_handler import register_secret
from .models import Credential, Request, RequestType, Response
from .service_base import ServiceBase
from .utils import utcnow

logger = logging.getLogger(__name__)

# Request parameters that must never reach a log line.
SECRET_PARAMETERS = ("access_token", "password", "refresh_token", "code", "code_verifier")


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class AuthController:
    """
    Tracks credential acquisition, caching and expiry for one adapter instance.
    The credential is swapped as a whole under a lock, so concurrent request
    builds see either the previous or the new credential, never a mix.
    """

    def __init__(self, service: ServiceBase, secure_storage=None, event_bus=None,
                 clock: Callable = utcnow):
        """
        Args:
            service: The adapter whose credential this controller owns
            secure_storage: Optional SecureStorage used to persist the credential
            event_bus: Optional EventBus notified of state changes
            clock: Returns the current aware datetime
        """
        self.service = service
        self.secure_storage = secure_storage
        self.event_bus = event_bus
        self.clock = clock

        self._lock = threading.RLock()
        self._state = AuthState.UNAUTHENTICATED
        self._credential: Optional[Credential] = None
        self._pending: Optional[Credential] = None

    # --- State ---

    @property
    def state(self) -> AuthState:
        with self._lock:
            if (self._state is AuthState.AUTHENTICATED
                    and self._credential is not None
                    and self._credential.is_expired(self.clock())):
                logger.info(f"⚠️ {self.service.get_name()} credential expired")
                self._set_state(AuthState.EXPIRED)
            return self._state

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    def _set_state(self, state: AuthState):
        if state is self._state:
            return
        logger.debug(f"{self.service.get_name()} auth: {self._state.value} -> {state.value}")
        self._state = state
        if self.event_bus is not None:
            self.event_bus.publish("auth_state_changed", self.service.get_name(), state.value)

    # --- Persistence Hooks ---

    def load(self) -> AuthState:
        """Restore a stored credential at startup."""
        if self.secure_storage is None:
            return self.state
        credential = self.secure_storage.load_credential(self.service.get_name())
        if credential is None:
            return self.state
        with self._lock:
            self._commit(credential, persist=False)
        logger.info(f"✅ Restored {self.service.get_name()} credential")
        return self.state

    def _commit(self, credential: Credential, persist: bool = True):
        for secret in credential.secrets():
            register_secret(secret)
        self._credential = credential
        self._pending = None
        self._set_state(AuthState.AUTHENTICATED)
        if persist and self.secure_storage is not None:
            self.secure_storage.save_credential(self.service.get_name(), credential)

    def logout(self):
        """Discard the credential immediately."""
        with self._lock:
            self._credential = None
            self._pending = None
            self._set_state(AuthState.UNAUTHENTICATED)
        if self.secure_storage is not None:
            self.secure_storage.forget_credential(self.service.get_name())
        logger.info(f"Logged out of {self.service.get_name()}")

    # --- Dispatch Gate ---

    def check(self, request: Request) -> Optional[ErrorInfo]:
        """
        Returns an Authentication-class error if the request must not be dispatched
        in the current state, None if it may go out.
        """
        if request.type is RequestType.AUTHENTICATE_USER:
            return None
        if not self.service.request_needs_authentication(request.type):
            return None
        state = self.state
        if state is AuthState.AUTHENTICATED:
            return None
        return ErrorInfo.of(
            ErrorClass.AUTHENTICATION,
            f"{self.service.get_display_name()} requires authentication (state: {state.value})",
        )

    def refresh_request(self) -> Optional[Request]:
        """An AuthenticateUser request that renews the expired credential, if the service can."""
        with self._lock:
            if self.state is not AuthState.EXPIRED or self._credential is None:
                return None
            parameters = self.service.refresh_parameters(self._credential)
        if parameters is None:
            return None
        return Request(RequestType.AUTHENTICATE_USER, parameters)

    def begin(self, request: Request):
        """Called when an AuthenticateUser request is dispatched."""
        for key in SECRET_PARAMETERS:
            if request.get(key):
                register_secret(str(request.get(key)))
        if request.get("step"):
            return  # follow-up of a handshake already in progress
        with self._lock:
            # A refresh keeps the known account metadata; a new login starts clean.
            self._pending = self._credential if request.get("refresh_token") else None
            self._set_state(AuthState.AUTHENTICATING)

    def abort(self):
        """A login was cancelled before its result arrived."""
        with self._lock:
            if self._state is not AuthState.AUTHENTICATING:
                return
            self._pending = None
            self._set_state(AuthState.EXPIRED if self._credential is not None else AuthState.UNAUTHENTICATED)

    def build_request(self, request: Request) -> HttpRequest:
        """Build a transport request with the current credential injected."""
        with self._lock:
            if request.type is RequestType.AUTHENTICATE_USER and self._pending is not None:
                credential = self._pending
            else:
                credential = self._credential
        return self.service.build_request(request, credential)

    # --- Completion ---

    def complete(self, request: Request, response: Response) -> Response:
        """
        Apply a finished exchange to the state machine.
        Strips any credential from the response before it leaves the controller.
        """
        credential, response.credential = response.credential, None

        if request.type is RequestType.AUTHENTICATE_USER:
            with self._lock:
                self._complete_authentication(response, credential)
            return response

        if response.error is not None and response.error.error_class is ErrorClass.AUTHENTICATION:
            with self._lock:
                if self._state is AuthState.AUTHENTICATED:
                    logger.warning(f"⚠️ {self.service.get_name()} rejected the credential: {response.error.message}")
                    self._set_state(AuthState.EXPIRED)
        return response

    def _complete_authentication(self, response: Response, credential: Optional[Credential]):
        if self._state is not AuthState.AUTHENTICATING:
            logger.warning(f"Ignoring {self.service.get_name()} authentication result in state {self._state.value}")
            return

        if not response.ok or credential is None:
            refreshing = self._pending is not None and self._pending is self._credential
            self._pending = None
            error = response.error
            if refreshing and error is not None and error.retriable:
                # The refresh token may still work once the service is reachable.
                self._set_state(AuthState.EXPIRED)
            else:
                self._credential = None
                self._set_state(AuthState.UNAUTHENTICATED)
                if self.secure_storage is not None:
                    self.secure_storage.forget_credential(self.service.get_name())
            logger.error(f"❌ {self.service.get_name()} authentication failed: {error}")
            return

        merged = self._pending.merged(credential) if self._pending is not None else credential
        for secret in merged.secrets():
            register_secret(secret)

        if response.follow_up is not None:
            self._pending = merged
            return

        self._commit(merged)
        logger.info(f"✅ Authenticated with {self.service.get_display_name()}")
