"""
Kitsu adapter.
JSON:API resources with flat filter parameters; OAuth password grant for
login, refresh grant for renewal, and a second request to learn the user id.

API documentation:
https://kitsu.docs.apiary.io/
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.api_client import HttpRequest, HttpResponse
from core.document import dig, parse, serialize
from core.errors import DocumentError, ErrorInfo, RequestBuildError
from core.models import (
    AiringStatus, Credential, LibraryEntry, LibraryStatus, MediaEntry,
    Request, RequestType, Response, UserInfo,
)
from core.service_base import ServiceBase, error_for_status, parse_retry_after
from core.utils import (
    format_date, parse_date, parse_timestamp, score_from_scale, score_to_scale,
    to_int, utcnow,
)

logger = logging.getLogger(__name__)

JSON_API = "application/vnd.api+json"
LIBRARY_PAGE_SIZE = 500
SEARCH_PAGE_SIZE = 20
USER_STEP = "user"

SEASONS_BY_MONTH = {1: "Winter", 4: "Spring", 7: "Summer", 10: "Fall"}


class KitsuService(ServiceBase):
    """Kitsu JSON:API (edge)."""

    default_base_url = "https://kitsu.io/api"

    library_statuses = {
        LibraryStatus.WATCHING: "current",
        LibraryStatus.COMPLETED: "completed",
        LibraryStatus.ON_HOLD: "on_hold",
        LibraryStatus.DROPPED: "dropped",
        LibraryStatus.PLAN_TO_WATCH: "planned",
    }

    airing_statuses = {
        "current": AiringStatus.AIRING,
        "finished": AiringStatus.FINISHED,
        "tba": AiringStatus.NOT_YET_AIRED,
        "unreleased": AiringStatus.NOT_YET_AIRED,
        "upcoming": AiringStatus.NOT_YET_AIRED,
    }

    def __init__(self, base_url: Optional[str] = None, client_id: Optional[str] = None,
                 client_secret: Optional[str] = None):
        super().__init__(base_url)
        self.client_id = client_id
        self.client_secret = client_secret

    def get_name(self) -> str:
        return "kitsu"

    def request_needs_authentication(self, request_type: RequestType) -> bool:
        return request_type in (
            RequestType.ADD_LIBRARY_ENTRY,
            RequestType.DELETE_LIBRARY_ENTRY,
            RequestType.GET_LIBRARY_ENTRIES,
            RequestType.UPDATE_LIBRARY_ENTRY,
        )

    def refresh_parameters(self, credential: Credential) -> Optional[dict]:
        if not credential.refresh_token:
            return None
        return {"refresh_token": credential.refresh_token}

    # --- Building ---

    def build_request(self, request: Request, credential: Optional[Credential]) -> HttpRequest:
        kind = request.type
        headers = {"Accept": JSON_API, "Content-Type": JSON_API}
        headers.update(self.bearer(credential))

        if kind is RequestType.AUTHENTICATE_USER:
            if request.get("step") == USER_STEP:
                if credential is None:
                    raise RequestBuildError("The user lookup needs the token from the first login step")
                return HttpRequest("GET", self.url("edge/users"), headers=headers,
                                   params={"filter[self]": "true"})
            return self._build_token_request(request)

        if kind is RequestType.GET_LIBRARY_ENTRIES:
            user_id = request.get("user_id") or (credential.metadata.get("user_id") if credential else None)
            if user_id is None:
                self.require(request, "user_id")
            page = int(request.get("page", 1))
            params = {
                "filter[user_id]": user_id,
                "filter[kind]": "anime",
                "include": "anime",
                "page[limit]": LIBRARY_PAGE_SIZE,
                "page[offset]": (page - 1) * LIBRARY_PAGE_SIZE,
            }
            return HttpRequest("GET", self.url("edge/library-entries"), headers=headers, params=params)

        if kind is RequestType.GET_METADATA_BY_ID:
            self.require(request, "media_id")
            return HttpRequest("GET", self.url(f"edge/anime/{int(request.get('media_id'))}"),
                               headers=headers, params={"include": "categories"})

        if kind is RequestType.SEARCH_TITLE:
            self.require(request, "query")
            params = {"filter[text]": request.get("query")}
            params.update(self._page_params(request))
            return HttpRequest("GET", self.url("edge/anime"), headers=headers, params=params)

        if kind is RequestType.GET_SEASON:
            self.require(request, "season", "year")
            season = request.get("season")
            params = {
                "filter[season]": str(getattr(season, "value", season)).lower(),
                "filter[seasonYear]": int(request.get("year")),
                "sort": "-userCount",
            }
            params.update(self._page_params(request))
            return HttpRequest("GET", self.url("edge/anime"), headers=headers, params=params)

        if kind is RequestType.ADD_LIBRARY_ENTRY:
            self.require(request, "media_id")
            user_id = credential.metadata.get("user_id") if credential else None
            if user_id is None:
                self.require(request, "user_id")
                user_id = request.get("user_id")
            body = {"data": {
                "type": "libraryEntries",
                "attributes": self._build_attributes(request),
                "relationships": {
                    "anime": {"data": {"type": "anime", "id": str(request.get("media_id"))}},
                    "user": {"data": {"type": "users", "id": str(user_id)}},
                },
            }}
            return HttpRequest("POST", self.url("edge/library-entries"), headers=headers, body=serialize(body))

        if kind is RequestType.UPDATE_LIBRARY_ENTRY:
            self.require(request, "media_id", "library_id")
            library_id = str(request.get("library_id"))
            body = {"data": {
                "type": "libraryEntries",
                "id": library_id,
                "attributes": self._build_attributes(request),
            }}
            return HttpRequest("PATCH", self.url(f"edge/library-entries/{library_id}"),
                               headers=headers, body=serialize(body))

        if kind is RequestType.DELETE_LIBRARY_ENTRY:
            self.require(request, "library_id")
            return HttpRequest("DELETE", self.url(f"edge/library-entries/{request.get('library_id')}"),
                               headers=headers)

        raise ValueError(f"Unsupported request type: {kind}")

    def _build_token_request(self, request: Request) -> HttpRequest:
        if request.get("refresh_token"):
            params = {"grant_type": "refresh_token", "refresh_token": request.get("refresh_token")}
        else:
            self.require(request, "username", "password")
            params = {
                "grant_type": "password",
                "username": request.get("username"),
                "password": request.get("password"),
            }
        if self.client_id:
            params["client_id"] = self.client_id
            params["client_secret"] = self.client_secret
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        return HttpRequest("POST", self.url("oauth/token"), headers=headers, body=serialize(params))

    def _build_attributes(self, request: Request) -> Dict[str, Any]:
        params = request.parameters
        attributes: Dict[str, Any] = {}
        if "status" in params:
            attributes["status"] = self.status_to_service(LibraryStatus(params["status"]))
        if "watched_episodes" in params:
            attributes["progress"] = int(params["watched_episodes"])
        if "score" in params:
            rating = score_to_scale(int(params["score"]), 20)
            attributes["ratingTwenty"] = max(2, rating) if rating else None
        if "rewatched_times" in params:
            attributes["reconsumeCount"] = int(params["rewatched_times"])
        if "notes" in params:
            attributes["notes"] = params["notes"] or ""
        if "start_date" in params:
            attributes["startedAt"] = format_date(params["start_date"])
        if "finish_date" in params:
            attributes["finishedAt"] = format_date(params["finish_date"])
        return attributes

    @staticmethod
    def _page_params(request: Request) -> Dict[str, int]:
        page = int(request.get("page", 1))
        return {"page[limit]": SEARCH_PAGE_SIZE, "page[offset]": (page - 1) * SEARCH_PAGE_SIZE}

    # --- Handling ---

    def classify_error(self, request: Request, http_response: HttpResponse) -> Optional[ErrorInfo]:
        if 200 <= http_response.status < 300:
            return None

        try:
            document = parse(http_response.body)
        except DocumentError:
            document = None
        retry_after = parse_retry_after(http_response.header("retry-after"))

        if isinstance(document, dict) and document.get("error"):
            # OAuth errors: invalid_grant, invalid_client, ...
            message = document.get("error_description") or document["error"]
            status = 401 if document["error"] in ("invalid_grant", "invalid_client", "invalid_token") else http_response.status
            return error_for_status(status, message, retry_after, raw=document)

        errors = dig(document, "errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            message = first.get("detail") or first.get("title") or f"HTTP {http_response.status}"
            status = to_int(first.get("status"), http_response.status)
            return error_for_status(status, message, retry_after, raw=errors)

        return super().classify_error(request, http_response)

    def parse_response(self, request: Request, http_response: HttpResponse) -> Response:
        kind = request.type

        if kind is RequestType.DELETE_LIBRARY_ENTRY:
            return Response(kind)

        document = parse(http_response.body)

        if kind is RequestType.AUTHENTICATE_USER:
            if request.get("step") == USER_STEP:
                users = dig(document, "data") or []
                if not users:
                    raise DocumentError("The user lookup returned no account")
                user = users[0]
                info = UserInfo(id=user["id"], name=dig(user, "attributes", "name", default=""))
                credential = Credential(access_token="", metadata={"user_id": info.id, "username": info.name})
                return Response(kind, payload=info, credential=credential)

            expires_in = document.get("expires_in")
            credential = Credential(
                access_token=document["access_token"],
                expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
                refresh_token=document.get("refresh_token"),
            )
            # A refresh keeps the user we already know; a fresh login still has to ask.
            follow_up = None if request.get("refresh_token") else Request(kind, {"step": USER_STEP})
            return Response(kind, credential=credential, follow_up=follow_up)

        if kind is RequestType.GET_LIBRARY_ENTRIES:
            entries = [self._parse_library_entry(node) for node in document["data"]]
            return Response(kind, payload=entries, has_next_page=bool(dig(document, "links", "next")))

        if kind is RequestType.GET_METADATA_BY_ID:
            categories = [
                dig(item, "attributes", "title")
                for item in document.get("included") or []
                if item.get("type") == "categories"
            ]
            return Response(kind, payload=self._parse_media(document["data"], categories))

        if kind in (RequestType.SEARCH_TITLE, RequestType.GET_SEASON):
            media = [self._parse_media(node) for node in document["data"]]
            return Response(kind, payload=media, has_next_page=bool(dig(document, "links", "next")))

        if kind in (RequestType.ADD_LIBRARY_ENTRY, RequestType.UPDATE_LIBRARY_ENTRY):
            entry = self._parse_library_entry(document["data"], request.get("media_id"))
            return Response(kind, payload=entry)

        raise ValueError(f"Unsupported request type: {kind}")

    def _parse_library_entry(self, node: Dict[str, Any], media_id: Any = None) -> LibraryEntry:
        attributes = node.get("attributes") or {}
        anime_id = dig(node, "relationships", "anime", "data", "id", default=media_id)
        if anime_id is None:
            raise KeyError("relationships.anime")
        return LibraryEntry(
            media_id=int(anime_id),
            watched_episodes=attributes.get("progress") or 0,
            status=self.status_from_service(attributes.get("status")),
            score=score_from_scale(attributes.get("ratingTwenty"), 20),
            start_date=parse_date(attributes.get("startedAt")),
            finish_date=parse_date(attributes.get("finishedAt")),
            last_updated=parse_timestamp(attributes.get("progressedAt") or attributes.get("updatedAt")),
            library_id=node.get("id"),
            rewatched_times=attributes.get("reconsumeCount") or 0,
            notes=attributes.get("notes") or "",
        )

    def _parse_media(self, node: Dict[str, Any], genres: Optional[List[str]] = None) -> MediaEntry:
        attributes = node.get("attributes") or {}
        titles = attributes.get("titles") or {}
        title = attributes.get("canonicalTitle") or titles.get("en_jp") or titles.get("en") or ""
        synonyms = [t for t in titles.values() if t and t != title]
        synonyms += [t for t in attributes.get("abbreviatedTitles") or [] if t and t not in synonyms]

        start_date = parse_date(attributes.get("startDate"))
        season = None
        if start_date:
            season_month = ((start_date.month - 1) // 3) * 3 + 1
            season = f"{SEASONS_BY_MONTH[season_month]} {start_date.year}"

        rating = attributes.get("averageRating")
        return MediaEntry(
            id=int(node["id"]),
            title=title,
            synonyms=synonyms,
            episode_count=attributes.get("episodeCount") or 0,
            synopsis=attributes.get("synopsis") or "",
            genres=[g for g in genres or [] if g],
            season=season,
            aggregate_score=float(rating) if rating else None,
            status=self.airing_status_from_service(attributes.get("status")),
            media_type=attributes.get("subtype"),
            start_date=start_date,
            image_url=dig(attributes, "posterImage", "large"),
        )
