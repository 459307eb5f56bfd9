"""
Sync orchestrator: sequences requests against the active service and
reconciles the local library with what the service reports.
"""

import logging
from collections import deque
from functools import partial
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .api_client import ApiClient
from .auth import AuthController, AuthState
from .dispatch import InlineDispatcher, RequestTicket, perform_exchange
from .errors import ErrorClass, ErrorInfo, RequestBuildError, UnknownServiceError
from .library import LocalLibrary, Snapshot
from .models import LibraryEntry, LibraryStatus, MediaEntry, Request, RequestType, Response
from .service_base import ServiceBase
from .utils import clamp_score, utcnow

logger = logging.getLogger(__name__)

# Request parameters that map onto LibraryEntry fields.
ENTRY_FIELDS = (
    "watched_episodes", "status", "score", "start_date", "finish_date",
    "rewatched_times", "notes",
)

Callback = Callable[[Response], None]


def entry_parameters(entry: LibraryEntry) -> Dict[str, Any]:
    """The full set of mutation parameters that reproduces an entry remotely."""
    parameters = {
        "media_id": entry.media_id,
        "watched_episodes": entry.watched_episodes,
        "status": entry.status,
        "score": entry.score,
        "start_date": entry.start_date,
        "finish_date": entry.finish_date,
        "rewatched_times": entry.rewatched_times,
        "notes": entry.notes,
    }
    if entry.library_id is not None:
        parameters["library_id"] = entry.library_id
    return parameters


def apply_fields(entry: LibraryEntry, parameters: Dict[str, Any], **changes) -> LibraryEntry:
    """Returns a copy of entry with the mutation parameters applied."""
    for key in ENTRY_FIELDS:
        if key not in parameters:
            continue
        value = parameters[key]
        if key == "status":
            value = LibraryStatus(value)
        elif key == "score":
            value = clamp_score(value)
        changes[key] = value
    return entry.copy(**changes)


class ServiceSession:
    """One adapter together with its auth controller and local library."""

    def __init__(self, service: ServiceBase, auth: AuthController, library: LocalLibrary):
        self.service = service
        self.auth = auth
        self.library = library
        self.loaded = False

    @property
    def name(self) -> str:
        return self.service.get_name()


class SyncOrchestrator:
    """
    Owns the local libraries and the auth controllers of every registered
    service, and sequences requests against the active one.

    Mutations for the same media id run strictly one after another in
    submission order. Reads run as soon as they are submitted.
    """

    def __init__(self, services: Iterable[ServiceBase], client: ApiClient, dispatcher=None,
                 event_bus=None, secure_storage=None, library_store=None,
                 active_service: Optional[str] = None, timeout: Optional[int] = None,
                 clock: Callable = utcnow):
        """
        Args:
            services: Adapter instances, one per backend
            client: The transport used for every exchange
            dispatcher: ThreadDispatcher or InlineDispatcher; inline if None
            event_bus: Optional EventBus for library and request events
            secure_storage: Optional SecureStorage for credentials
            library_store: Optional JsonLibraryStore for the local libraries
            active_service: Name of the initially active service; the first one if None
            timeout: Per-request timeout passed to the transport
            clock: Returns the current aware datetime
        """
        self.client = client
        self.dispatcher = dispatcher or InlineDispatcher()
        self.event_bus = event_bus
        self.timeout = timeout
        self.clock = clock

        self.sessions: Dict[str, ServiceSession] = {}
        for service in services:
            auth = AuthController(service, secure_storage, event_bus, clock)
            library = LocalLibrary(service.get_name(), library_store)
            self.sessions[service.get_name()] = ServiceSession(service, auth, library)

        if not self.sessions:
            raise UnknownServiceError("No services registered")

        self._open: Dict[int, RequestTicket] = {}
        self._queues: Dict[Tuple[str, int], Deque[RequestTicket]] = {}
        self._pages: Dict[int, List[LibraryEntry]] = {}
        self._intents: Dict[int, Snapshot] = {}
        self._active: Optional[str] = None
        self.set_active_service(active_service or next(iter(self.sessions)))

    # --- Services ---

    @property
    def active_service(self) -> str:
        return self._active

    @property
    def session(self) -> ServiceSession:
        return self.sessions[self._active]

    @property
    def library(self) -> LocalLibrary:
        return self.session.library

    def get_session(self, service_name: Optional[str] = None) -> ServiceSession:
        name = service_name or self._active
        try:
            return self.sessions[name]
        except KeyError:
            raise UnknownServiceError(f"Unknown service: {name}") from None

    def set_active_service(self, service_name: str):
        """Switches the active service. In-flight requests are cancelled."""
        session = self.get_session(service_name)
        if self._active == service_name:
            return
        if self._open:
            logger.info(f"Switching to {service_name}: cancelling {len(self._open)} open request(s)")
            self.cancel_all()
        self._active = service_name
        if not session.loaded:
            session.auth.load()
            session.library.load()
            session.loaded = True
        logger.info(f"Active service: {session.service.get_display_name()}")
        self._publish("active_service_changed", service_name)

    @property
    def open_requests(self) -> int:
        """Submitted requests that have not finished yet."""
        return len(self._open)

    def is_authenticated(self, service_name: Optional[str] = None) -> bool:
        return self.get_session(service_name).auth.is_authenticated

    def auth_state(self, service_name: Optional[str] = None) -> AuthState:
        return self.get_session(service_name).auth.state

    # --- Submission ---

    def submit(self, request: Request, callback: Optional[Callback] = None,
               service_name: Optional[str] = None) -> RequestTicket:
        """
        Submits a request to a service (the active one by default).
        The callback receives the Response on the thread that owns the orchestrator.

        Raises:
            RequestBuildError: If the request is missing parameters its type requires
        """
        session = self.get_session(service_name)
        ticket = RequestTicket(request, session.name, callback)

        if not request.type.is_mutation:
            self._validate(session, request)
            self._open[ticket.id] = ticket
            self._dispatch(ticket, request)
            return ticket

        if request.get("media_id") is None:
            raise RequestBuildError(f"{request.type.value} requires parameter(s): media_id")
        media_id = int(request.get("media_id"))
        key = (session.name, media_id)

        if not self._queues.get(key):
            absent = (request.type is RequestType.DELETE_LIBRARY_ENTRY
                      and session.library.get(media_id) is None
                      and session.library.library_id_for(media_id) is None)
            try:
                self._validate(session, self._prepare(session, request))
            except RequestBuildError:
                if not absent:
                    raise
                # Nothing to address remotely and nothing local: already deleted.
                logger.info(f"{session.name} entry {media_id} is not in the library, nothing to delete")
                self._open[ticket.id] = ticket
                self._finish(ticket, Response.failure(request.type, ErrorInfo.of(
                    ErrorClass.NOT_FOUND, f"Media {media_id} is not in the library")))
                return ticket

        self._apply_intent(session, ticket, media_id)
        self._open[ticket.id] = ticket
        queue = self._queues.setdefault(key, deque())
        queue.append(ticket)
        if len(queue) == 1:
            self._dispatch(ticket, request)
        else:
            logger.debug(f"{ticket!r} queued behind {len(queue) - 1} mutation(s) for media {media_id}")
        return ticket

    def _validate(self, session: ServiceSession, request: Request):
        """Builds the request once so missing parameters fail at submission."""
        if request.type is RequestType.AUTHENTICATE_USER:
            if not request.get("step"):
                session.service.build_request(request, None)
            return
        if session.auth.check(request) is None:
            session.auth.build_request(request)

    def _prepare(self, session: ServiceSession, request: Request) -> Request:
        """Injects the backend's entry id for mutations that address it."""
        if not request.type.is_mutation or request.get("library_id") is not None:
            return request
        if request.get("media_id") is None:
            return request
        library_id = session.library.library_id_for(int(request.get("media_id")))
        if library_id is None:
            return request
        return Request(request.type, {**request.parameters, "library_id": library_id})

    def _apply_intent(self, session: ServiceSession, ticket: RequestTicket, media_id: int):
        """Reflects a mutation in the local library before the service confirms it."""
        library = session.library
        request = ticket.request
        now = self.clock()

        if request.type is RequestType.DELETE_LIBRARY_ENTRY:
            if library.begin_delete(media_id) is not None:
                self._publish("entry_changed", session.name, media_id)
                library.save()
            return

        local = library.get(media_id)
        prior = library.snapshot(media_id)
        if local is not None:
            library.put(apply_fields(local, request.parameters, last_updated=now), pending=True)
        elif request.type is RequestType.ADD_LIBRARY_ENTRY and library.is_known(media_id):
            library.put(apply_fields(LibraryEntry(media_id), request.parameters, last_updated=now), pending=True)
        else:
            # Unknown media only enter the library once the service confirms them.
            return
        self._intents[ticket.id] = prior
        self._publish("entry_changed", session.name, media_id)
        library.save()

    def _dispatch(self, ticket: RequestTicket, request: Request):
        session = self.sessions[ticket.service_name]

        if ticket.cancelled:
            self._finish_cancelled(ticket)
            return

        rejection = session.auth.check(request)
        if rejection is not None:
            logger.warning(f"⚠️ {ticket!r} rejected before dispatch: {rejection.message}")
            response = Response.failure(request.type, rejection)
            self._apply_result(session, ticket, response)
            self._finish(ticket, response)
            self._refresh_if_expired(session)
            return

        request = self._prepare(session, request)
        if request.type is RequestType.AUTHENTICATE_USER:
            session.auth.begin(request)

        ticket.dispatched = request
        task = partial(perform_exchange, self.client, session.auth, request, self.timeout)
        self.dispatcher.dispatch(ticket, task, self._on_exchange_done)

    # --- Completion ---

    def _on_exchange_done(self, ticket: RequestTicket, response: Response):
        session = self.sessions[ticket.service_name]
        request = ticket.dispatched

        if ticket.cancelled:
            if request.type is RequestType.AUTHENTICATE_USER:
                session.auth.abort()
            self._finish_cancelled(ticket)
            return

        response = session.auth.complete(request, response)

        if response.ok and response.follow_up is not None:
            self._dispatch(ticket, response.follow_up)
            return

        if request.type is RequestType.GET_LIBRARY_ENTRIES:
            response = self._collect_library_page(ticket, request, response)
            if response is None:
                return

        self._apply_result(session, ticket, response)
        self._finish(ticket, response)

        if response.error is not None and response.error.error_class is ErrorClass.AUTHENTICATION:
            self._refresh_if_expired(session)

    def _collect_library_page(self, ticket: RequestTicket, request: Request,
                              response: Response) -> Optional[Response]:
        """Accumulates library pages. Returns the combined response once the last page arrived."""
        single_page = "page" in ticket.request.parameters
        if single_page:
            return response
        if not response.ok:
            self._pages.pop(ticket.id, None)
            return response

        pages = self._pages.setdefault(ticket.id, [])
        pages.extend(response.payload or [])
        if response.has_next_page:
            page = int(request.get("page", 1)) + 1
            logger.debug(f"{ticket!r} fetching library page {page}")
            self._dispatch(ticket, Request(request.type, {**ticket.request.parameters, "page": page}))
            return None

        return Response(request.type, payload=self._pages.pop(ticket.id))

    def _apply_result(self, session: ServiceSession, ticket: RequestTicket, response: Response):
        kind = response.type

        if kind is RequestType.GET_LIBRARY_ENTRIES:
            if response.ok:
                complete = "page" not in ticket.request.parameters
                self._reconcile(session, response.payload or [], complete)
            else:
                self._publish("sync_failed", session.name, response.error)
            return

        if kind in (RequestType.GET_METADATA_BY_ID, RequestType.SEARCH_TITLE, RequestType.GET_SEASON):
            if response.ok:
                media = response.payload if isinstance(response.payload, list) else [response.payload]
                session.library.remember_media(m.id for m in media if isinstance(m, MediaEntry))
            return

        if kind.is_mutation:
            self._apply_mutation_result(session, ticket, response)

    def _apply_mutation_result(self, session: ServiceSession, ticket: RequestTicket, response: Response):
        library = session.library
        media_id = int(ticket.request.get("media_id"))
        superseded = self._has_later_mutation(ticket)

        if response.type is RequestType.DELETE_LIBRARY_ENTRY:
            if response.ok or response.error.error_class is ErrorClass.NOT_FOUND:
                library.commit_delete(media_id)
                logger.info(f"✅ Removed {media_id} from the {session.name} library")
            else:
                self._undo_intent(session, ticket)
                self._publish("sync_failed", session.name, response.error)
            library.save()
            return

        if not response.ok:
            if library.get(media_id) is not None:
                library.mark_pending(media_id)
            logger.warning(f"⚠️ {session.name} entry {media_id} kept for resync: {response.error}")
            self._publish("sync_failed", session.name, response.error)
            library.save()
            return

        confirmed = response.payload
        if isinstance(confirmed, LibraryEntry):
            library.remember_library_id(media_id, confirmed.library_id)
        if superseded or library.is_deleting(media_id):
            # A later mutation carries newer intent; only the entry id is kept.
            library.save()
            return

        if isinstance(confirmed, LibraryEntry):
            if confirmed.last_updated is None:
                confirmed = confirmed.copy(last_updated=self.clock())
            library.put(confirmed)
        library.clear_pending(media_id)
        logger.info(f"✅ {session.name} entry {media_id} synced")
        self._publish("entry_changed", session.name, media_id)
        library.save()

    def _finish(self, ticket: RequestTicket, response: Response):
        ticket.response = response
        self._open.pop(ticket.id, None)
        self._intents.pop(ticket.id, None)
        self._publish("request_finished", ticket.service_name, response)
        if ticket.callback is not None:
            ticket.callback(response)
        self._advance_queue(ticket)

    def _finish_cancelled(self, ticket: RequestTicket):
        """A cancelled request never changes the library beyond undoing its own intent."""
        self._open.pop(ticket.id, None)
        self._pages.pop(ticket.id, None)
        session = self.sessions[ticket.service_name]
        if ticket.request.type.is_mutation:
            self._undo_intent(session, ticket)
        logger.info(f"{ticket!r} cancelled")
        self._advance_queue(ticket)

    def _undo_intent(self, session: ServiceSession, ticket: RequestTicket):
        """
        Takes back the local change a failed delete or a cancelled mutation made.
        When a later mutation for the same media is queued, its own change stays
        and it inherits the state to fall back to instead.
        """
        library = session.library
        media_id = int(ticket.request.get("media_id"))
        if ticket.request.type is RequestType.DELETE_LIBRARY_ENTRY:
            baseline = library.take_delete_snapshot(media_id)
        else:
            baseline = self._intents.pop(ticket.id, None)
        if baseline is None:
            return

        following = self._following(ticket)
        if following is not None:
            if following.request.type is RequestType.DELETE_LIBRARY_ENTRY:
                library.rebase_delete(media_id, baseline)
                return
            if following.id in self._intents:
                self._intents[following.id] = baseline
                return

        library.restore(media_id, baseline)
        logger.info(f"Restored {session.name} entry {media_id}")
        self._publish("entry_changed", session.name, media_id)
        library.save()

    def _following(self, ticket: RequestTicket) -> Optional[RequestTicket]:
        """The mutation queued right after this one for the same media, if any."""
        key = (ticket.service_name, int(ticket.request.get("media_id")))
        queue = self._queues.get(key)
        if not queue or ticket not in queue:
            return None
        index = queue.index(ticket)
        return queue[index + 1] if index + 1 < len(queue) else None

    def _advance_queue(self, ticket: RequestTicket):
        if not ticket.request.type.is_mutation:
            return
        key = (ticket.service_name, int(ticket.request.get("media_id")))
        queue = self._queues.get(key)
        if not queue or queue[0] is not ticket:
            return
        queue.popleft()
        if queue:
            following = queue[0]
            self._dispatch(following, following.request)
        else:
            del self._queues[key]

    def _has_later_mutation(self, ticket: RequestTicket) -> bool:
        key = (ticket.service_name, int(ticket.request.get("media_id")))
        queue = self._queues.get(key)
        return bool(queue) and len(queue) > 1

    def _has_queued(self, session: ServiceSession, media_id: int) -> bool:
        return bool(self._queues.get((session.name, media_id)))

    def _refresh_if_expired(self, session: ServiceSession):
        refresh = session.auth.refresh_request()
        if refresh is not None:
            logger.info(f"🔍 Renewing the {session.name} credential")
            self.submit(refresh, service_name=session.name)

    # --- Reconciliation ---

    def _local_wins(self, session: ServiceSession, local: LibraryEntry, remote: LibraryEntry) -> bool:
        if session.library.is_pending(local.media_id) or self._has_queued(session, local.media_id):
            return True
        if local.last_updated is None or remote.last_updated is None:
            return False
        return local.last_updated > remote.last_updated

    def _reconcile(self, session: ServiceSession, remote_entries: List[LibraryEntry], complete: bool):
        """
        Merges a remote library snapshot into the local library.

        Args:
            complete: The snapshot holds the whole remote library, so local entries
                      missing from it were removed remotely
        """
        library = session.library
        remote_ids = set()
        repush: List[Request] = []

        for remote in remote_entries:
            media_id = remote.media_id
            remote_ids.add(media_id)
            library.remember_library_id(media_id, remote.library_id)
            if library.is_deleting(media_id):
                continue

            local = library.get(media_id)
            if local is not None and self._local_wins(session, local, remote):
                if not self._has_queued(session, media_id):
                    library.mark_pending(media_id)
                    repush.append(Request(RequestType.UPDATE_LIBRARY_ENTRY, entry_parameters(local)))
                continue

            library.put(remote)
            library.clear_pending(media_id)

        if complete:
            for local in library:
                if local.media_id in remote_ids:
                    continue
                if library.is_pending(local.media_id):
                    if not self._has_queued(session, local.media_id):
                        parameters = entry_parameters(local)
                        parameters.pop("library_id", None)
                        repush.append(Request(RequestType.ADD_LIBRARY_ENTRY, parameters))
                elif not self._has_queued(session, local.media_id):
                    library.remove(local.media_id)
                    library.library_ids.pop(local.media_id, None)

        library.save()
        logger.info(
            f"✅ Reconciled {len(remote_entries)} remote {session.name} entries "
            f"({len(library)} local, {len(repush)} to push)"
        )
        self._publish("library_changed", session.name)
        if complete:
            self._publish("sync_completed", session.name, len(library))

        for request in repush:
            try:
                self.submit(request, service_name=session.name)
            except RequestBuildError as e:
                logger.error(f"❌ Could not push {session.name} entry {request.get('media_id')}: {e}")

    # --- Cancellation ---

    def cancel(self, ticket: RequestTicket):
        """
        Cancels a request. A queued mutation is dropped right away; an
        in-flight exchange is discarded when its result arrives.
        """
        if ticket.done or ticket.cancelled:
            return
        ticket.cancel()
        if not ticket.request.type.is_mutation:
            return
        key = (ticket.service_name, int(ticket.request.get("media_id")))
        queue = self._queues.get(key)
        if queue and ticket in queue and queue[0] is not ticket:
            self._finish_cancelled(ticket)
            queue.remove(ticket)

    def cancel_all(self, service_name: Optional[str] = None):
        for ticket in list(self._open.values()):
            if service_name is None or ticket.service_name == service_name:
                self.cancel(ticket)

    def shutdown(self):
        self.cancel_all()
        self.dispatcher.shutdown()

    # --- Convenience Operations ---

    def authenticate(self, callback: Optional[Callback] = None, service_name: Optional[str] = None,
                     **parameters) -> RequestTicket:
        session = self.get_session(service_name)
        logger.info(f"🔍 Authenticating with {session.service.get_display_name()}...")
        return self.submit(Request(RequestType.AUTHENTICATE_USER, parameters), callback, session.name)

    def logout(self, service_name: Optional[str] = None):
        session = self.get_session(service_name)
        self.cancel_all(session.name)
        session.auth.logout()

    def refresh_library(self, callback: Optional[Callback] = None, service_name: Optional[str] = None,
                        **parameters) -> RequestTicket:
        return self.submit(Request(RequestType.GET_LIBRARY_ENTRIES, parameters), callback, service_name)

    def add_entry(self, media_id: int, callback: Optional[Callback] = None, **fields) -> RequestTicket:
        fields.setdefault("status", LibraryStatus.PLAN_TO_WATCH)
        return self.submit(Request(RequestType.ADD_LIBRARY_ENTRY, {"media_id": media_id, **fields}), callback)

    def update_entry(self, media_id: int, callback: Optional[Callback] = None, **changes) -> RequestTicket:
        return self.submit(Request(RequestType.UPDATE_LIBRARY_ENTRY, {"media_id": media_id, **changes}), callback)

    def delete_entry(self, media_id: int, callback: Optional[Callback] = None) -> RequestTicket:
        return self.submit(Request(RequestType.DELETE_LIBRARY_ENTRY, {"media_id": media_id}), callback)

    def search_title(self, query: str, callback: Optional[Callback] = None, page: int = 1) -> RequestTicket:
        return self.submit(Request(RequestType.SEARCH_TITLE, {"query": query, "page": page}), callback)

    def get_metadata(self, media_id: int, callback: Optional[Callback] = None) -> RequestTicket:
        return self.submit(Request(RequestType.GET_METADATA_BY_ID, {"media_id": media_id}), callback)

    def get_season(self, season, year: int, callback: Optional[Callback] = None, page: int = 1) -> RequestTicket:
        return self.submit(Request(RequestType.GET_SEASON, {"season": season, "year": year, "page": page}), callback)

    # --- Events ---

    def _publish(self, event_name: str, *args):
        if self.event_bus is not None:
            self.event_bus.publish(event_name, *args)
