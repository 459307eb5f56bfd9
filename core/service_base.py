"""
Abstract base class for all service adapters.
Defines the adapter contract and the behavior every backend shares:
status-code classification, status vocabulary mapping, and the
never-throws handling of responses.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .api_client import HttpRequest, HttpResponse
from .errors import DocumentError, ErrorClass, ErrorInfo, RequestBuildError
from .models import AiringStatus, Credential, LibraryStatus, Request, RequestType, Response

logger = logging.getLogger(__name__)

# Server-side failures are treated like transport failures: worth another try.
TRANSIENT_STATUS_CODES = (500, 502, 503, 504)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Returns the Retry-After header in seconds, if it is a number."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(status: int, message: str, retry_after: Optional[float] = None, raw=None) -> ErrorInfo:
    """Maps an HTTP (or embedded) status code to one error class."""
    if status in (401, 403):
        error_class = ErrorClass.AUTHENTICATION
    elif status == 404:
        error_class = ErrorClass.NOT_FOUND
    elif status == 429:
        error_class = ErrorClass.RATE_LIMITED
    elif status in TRANSIENT_STATUS_CODES:
        error_class = ErrorClass.TRANSPORT
    else:
        error_class = ErrorClass.SERVICE_REJECTED
    return ErrorInfo.of(error_class, message, status_code=status, retry_after=retry_after, raw=raw)


class ServiceBase(ABC):
    """
    Abstract base class that all service adapters must inherit from.
    An adapter translates canonical Requests into HTTP requests for one
    backend and translates that backend's responses back into Responses.
    """

    # Subclasses fill these in with their native vocabularies.
    default_base_url: str = ""
    library_statuses: Dict[LibraryStatus, str] = {}
    extra_library_statuses: Dict[str, LibraryStatus] = {}  # read-only aliases
    airing_statuses: Dict[str, AiringStatus] = {}

    def __init__(self, base_url: Optional[str] = None):
        """
        Args:
            base_url: API endpoint override; the backend's public endpoint if None
        """
        self.base_url = (base_url or self.default_base_url).rstrip("/")

    # --- Required Methods ---

    @abstractmethod
    def get_name(self) -> str:
        """
        Return the unique service name used in settings and storage keys.

        Returns:
            Service name (e.g., "anilist")
        """
        pass

    @abstractmethod
    def request_needs_authentication(self, request_type: RequestType) -> bool:
        """
        Whether a request of this type must carry a valid credential.
        Pure function of the request type and the backend.
        """
        pass

    @abstractmethod
    def build_request(self, request: Request, credential: Optional[Credential]) -> HttpRequest:
        """
        Translate a canonical request into a transport-ready request.

        Args:
            request: The canonical request
            credential: The adapter's current credential, injected by its auth controller

        Returns:
            HttpRequest; the same Request and Credential always build the same HttpRequest

        Raises:
            RequestBuildError: If parameters required by the request type are missing
        """
        pass

    @abstractmethod
    def parse_response(self, request: Request, http_response: HttpResponse) -> Response:
        """
        Parse a successful response into a canonical Response.
        May raise DocumentError, KeyError, TypeError or ValueError on unexpected shapes;
        handle_response turns those into Malformed errors.
        """
        pass

    # --- Optional Methods ---

    def get_display_name(self) -> str:
        return self.get_name().title()

    def get_version(self) -> str:
        return "1.0.0"

    def refresh_parameters(self, credential: Credential) -> Optional[dict]:
        """
        Parameters for an AuthenticateUser request that renews an expired credential.
        None means the backend has no refresh mechanism and the user must log in again.
        """
        return None

    def classify_error(self, request: Request, http_response: HttpResponse) -> Optional[ErrorInfo]:
        """
        Decide whether the response is a failure. The default looks at the HTTP
        status only; backends that embed errors in 200 responses extend this.
        """
        if 200 <= http_response.status < 300:
            return None
        retry_after = parse_retry_after(http_response.header("retry-after"))
        message = http_response.body[:300].decode("utf-8", errors="replace") or f"HTTP {http_response.status}"
        return error_for_status(http_response.status, message, retry_after, raw=http_response.body)

    # --- Template Method ---

    def handle_response(self, request: Request, http_response: HttpResponse) -> Response:
        """
        Translate a transport response into a canonical Response.
        Never raises: every failure becomes a classified ErrorInfo.
        """
        try:
            error = self.classify_error(request, http_response)
            if error is not None:
                logger.warning(f"{self.get_name()} {request.type.value} failed: {error}")
                return Response.failure(request.type, error)
            response = self.parse_response(request, http_response)
        except (DocumentError, LookupError, TypeError, ValueError, AttributeError) as e:
            excerpt = http_response.body[:200]
            logger.error(f"❌ {self.get_name()} returned an unexpected {request.type.value} response: {e} body={excerpt!r}")
            return Response.failure(
                request.type,
                ErrorInfo.of(ErrorClass.MALFORMED, f"Unexpected response shape: {e}",
                             status_code=http_response.status, raw=http_response.body),
            )

        if response.type is not request.type:
            return Response.failure(
                request.type,
                ErrorInfo.of(ErrorClass.MALFORMED, f"Adapter produced {response.type.value} for {request.type.value}"),
            )
        return response

    # --- Helper Methods ---

    def status_to_service(self, status: LibraryStatus) -> str:
        return self.library_statuses[status]

    def status_from_service(self, value: Optional[str]) -> LibraryStatus:
        """Unknown values default to plan-to-watch rather than failing."""
        for status, native in self.library_statuses.items():
            if native == value:
                return status
        return self.extra_library_statuses.get(value, LibraryStatus.PLAN_TO_WATCH)

    def airing_status_from_service(self, value: Optional[str]) -> Optional[AiringStatus]:
        return self.airing_statuses.get(value)

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def require(request: Request, *keys: str) -> None:
        """Raise RequestBuildError unless every key is present and not None."""
        missing = [k for k in keys if request.parameters.get(k) is None]
        if missing:
            raise RequestBuildError(f"{request.type.value} requires parameter(s): {', '.join(missing)}")

    @staticmethod
    def bearer(credential: Optional[Credential]) -> Dict[str, str]:
        if credential is None or not credential.access_token:
            return {}
        return {"Authorization": f"Bearer {credential.access_token}"}
