"""
AniList adapter.
Every operation is a GraphQL document POSTed to a single endpoint; the
media fields are expanded into each query from one shared selection.

API documentation:
https://anilist.github.io/ApiV2-GraphQL-Docs/
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.api_client import HttpRequest, HttpResponse
from core.document import dig, parse, serialize
from core.errors import DocumentError, ErrorInfo
from core.models import (
    AiringStatus, Credential, LibraryEntry, LibraryStatus, MediaEntry,
    Request, RequestType, Response, UserInfo,
)
from core.service_base import ServiceBase, error_for_status, parse_retry_after
from core.utils import (
    clamp_score, parse_fuzzy_date, parse_timestamp, to_fuzzy_date, utcnow,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 50

MEDIA_FIELDS = """
    id
    title { romaji english native userPreferred }
    synonyms
    episodes
    description(asHtml: false)
    genres
    season
    seasonYear
    averageScore
    status
    format
    startDate { year month day }
    coverImage { large }
"""

LIBRARY_FIELDS = """
    id
    mediaId
    status
    score(format: POINT_100)
    progress
    repeat
    notes
    updatedAt
    startedAt { year month day }
    completedAt { year month day }
"""

QUERIES = {
    RequestType.AUTHENTICATE_USER: """
        { Viewer { id name mediaListOptions { scoreFormat } } }
    """,
    RequestType.GET_LIBRARY_ENTRIES: """
        query ($userName: String) {
          MediaListCollection (userName: $userName, type: ANIME) {
            lists { entries { {library_fields} media { {media_fields} } } }
          }
        }
    """,
    RequestType.GET_METADATA_BY_ID: """
        query ($id: Int) { Media (id: $id, type: ANIME) { {media_fields} } }
    """,
    RequestType.SEARCH_TITLE: """
        query ($query: String, $page: Int, $perPage: Int) {
          Page (page: $page, perPage: $perPage) {
            pageInfo { hasNextPage }
            media (search: $query, type: ANIME) { {media_fields} }
          }
        }
    """,
    RequestType.GET_SEASON: """
        query ($season: MediaSeason, $seasonYear: Int, $page: Int, $perPage: Int) {
          Page (page: $page, perPage: $perPage) {
            pageInfo { hasNextPage }
            media (season: $season, seasonYear: $seasonYear, type: ANIME, sort: POPULARITY_DESC) {
              {media_fields}
            }
          }
        }
    """,
    RequestType.ADD_LIBRARY_ENTRY: """
        mutation ($mediaId: Int, $status: MediaListStatus, $scoreRaw: Int, $progress: Int,
                  $repeat: Int, $notes: String, $startedAt: FuzzyDateInput, $completedAt: FuzzyDateInput) {
          SaveMediaListEntry (mediaId: $mediaId, status: $status, scoreRaw: $scoreRaw, progress: $progress,
                              repeat: $repeat, notes: $notes, startedAt: $startedAt, completedAt: $completedAt) {
            {library_fields}
          }
        }
    """,
    RequestType.DELETE_LIBRARY_ENTRY: """
        mutation ($id: Int) { DeleteMediaListEntry (id: $id) { deleted } }
    """,
}
# Adding and updating both go through SaveMediaListEntry.
QUERIES[RequestType.UPDATE_LIBRARY_ENTRY] = QUERIES[RequestType.ADD_LIBRARY_ENTRY]


def expand_query(query: str) -> str:
    """Expands the shared field selections and collapses whitespace."""
    query = query.replace("{media_fields}", MEDIA_FIELDS).replace("{library_fields}", LIBRARY_FIELDS)
    return " ".join(query.split())


class AniListService(ServiceBase):
    """AniList GraphQL API v2."""

    default_base_url = "https://graphql.anilist.co"

    library_statuses = {
        LibraryStatus.WATCHING: "CURRENT",
        LibraryStatus.COMPLETED: "COMPLETED",
        LibraryStatus.ON_HOLD: "PAUSED",
        LibraryStatus.DROPPED: "DROPPED",
        LibraryStatus.PLAN_TO_WATCH: "PLANNING",
    }
    extra_library_statuses = {"REPEATING": LibraryStatus.WATCHING}

    airing_statuses = {
        "RELEASING": AiringStatus.AIRING,
        "FINISHED": AiringStatus.FINISHED,
        "NOT_YET_RELEASED": AiringStatus.NOT_YET_AIRED,
        "CANCELLED": AiringStatus.FINISHED,
        "HIATUS": AiringStatus.AIRING,
    }

    def get_name(self) -> str:
        return "anilist"

    def get_display_name(self) -> str:
        return "AniList"

    def request_needs_authentication(self, request_type: RequestType) -> bool:
        # Metadata, search and season queries are public.
        return request_type in (
            RequestType.ADD_LIBRARY_ENTRY,
            RequestType.DELETE_LIBRARY_ENTRY,
            RequestType.GET_LIBRARY_ENTRIES,
            RequestType.UPDATE_LIBRARY_ENTRY,
        )

    # --- Building ---

    def build_request(self, request: Request, credential: Optional[Credential]) -> HttpRequest:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}

        if request.type is RequestType.AUTHENTICATE_USER:
            self.require(request, "access_token")
            headers["Authorization"] = f"Bearer {request.get('access_token')}"
        else:
            headers.update(self.bearer(credential))

        body = {
            "query": expand_query(QUERIES[request.type]),
            "variables": self._build_variables(request, credential),
        }
        return HttpRequest("POST", self.base_url, headers=headers, body=serialize(body))

    def _build_variables(self, request: Request, credential: Optional[Credential]) -> Dict[str, Any]:
        kind = request.type

        if kind is RequestType.GET_LIBRARY_ENTRIES:
            user_name = request.get("username") or (credential.metadata.get("username") if credential else None)
            if not user_name:
                self.require(request, "username")
            return {"userName": user_name}

        if kind is RequestType.GET_METADATA_BY_ID:
            self.require(request, "media_id")
            return {"id": int(request.get("media_id"))}

        if kind is RequestType.SEARCH_TITLE:
            self.require(request, "query")
            return {"query": request.get("query"), "page": request.get("page", 1), "perPage": PAGE_SIZE}

        if kind is RequestType.GET_SEASON:
            self.require(request, "season", "year")
            season = request.get("season")
            season_name = getattr(season, "value", season)
            return {
                "season": str(season_name).upper(),
                "seasonYear": int(request.get("year")),
                "page": request.get("page", 1),
                "perPage": PAGE_SIZE,
            }

        if kind in (RequestType.ADD_LIBRARY_ENTRY, RequestType.UPDATE_LIBRARY_ENTRY):
            self.require(request, "media_id")
            return self._build_library_object(request)

        if kind is RequestType.DELETE_LIBRARY_ENTRY:
            self.require(request, "library_id")
            return {"id": int(request.get("library_id"))}

        return {}

    def _build_library_object(self, request: Request) -> Dict[str, Any]:
        """Only the fields present in the request are sent, so partial updates stay partial."""
        variables: Dict[str, Any] = {"mediaId": int(request.get("media_id"))}
        params = request.parameters

        if "status" in params:
            variables["status"] = self.status_to_service(LibraryStatus(params["status"]))
        if "watched_episodes" in params:
            variables["progress"] = int(params["watched_episodes"])
        if "score" in params:
            variables["scoreRaw"] = clamp_score(params["score"])
        if "rewatched_times" in params:
            variables["repeat"] = int(params["rewatched_times"])
        if "notes" in params:
            variables["notes"] = params["notes"] or ""
        if "start_date" in params:
            variables["startedAt"] = to_fuzzy_date(params["start_date"])
        if "finish_date" in params:
            variables["completedAt"] = to_fuzzy_date(params["finish_date"])
        return variables

    # --- Handling ---

    def classify_error(self, request: Request, http_response: HttpResponse) -> Optional[ErrorInfo]:
        """
        AniList reports errors in an `errors` array, sometimes alongside HTTP 200.
        The embedded status wins over the HTTP status.
        """
        try:
            document = parse(http_response.body)
        except DocumentError:
            document = None

        errors = document.get("errors") if isinstance(document, dict) else None
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            message = first.get("message") or "Unknown AniList error"
            status = first.get("status") or http_response.status
            if status < 400:
                status = 400
            if "invalid token" in message.lower() or "unauthorized" in message.lower():
                status = 401
            retry_after = parse_retry_after(http_response.header("retry-after"))
            return error_for_status(status, message, retry_after, raw=errors)

        return super().classify_error(request, http_response)

    def parse_response(self, request: Request, http_response: HttpResponse) -> Response:
        data = parse(http_response.body)["data"]
        kind = request.type

        if kind is RequestType.AUTHENTICATE_USER:
            viewer = data["Viewer"]
            user = UserInfo(id=viewer["id"], name=viewer.get("name") or "")
            expires_in = request.get("expires_in")
            credential = Credential(
                access_token=request.get("access_token"),
                expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
                metadata={
                    "user_id": user.id,
                    "username": user.name,
                    "score_format": dig(viewer, "mediaListOptions", "scoreFormat"),
                },
            )
            return Response(kind, payload=user, credential=credential)

        if kind is RequestType.GET_LIBRARY_ENTRIES:
            entries = []
            for media_list in dig(data, "MediaListCollection", "lists", default=[]):
                for node in media_list.get("entries") or []:
                    entries.append(self._parse_library_entry(node))
            return Response(kind, payload=entries)

        if kind is RequestType.GET_METADATA_BY_ID:
            return Response(kind, payload=self._parse_media(data["Media"]))

        if kind in (RequestType.SEARCH_TITLE, RequestType.GET_SEASON):
            page = data["Page"]
            media = [self._parse_media(node) for node in page.get("media") or []]
            return Response(kind, payload=media, has_next_page=bool(dig(page, "pageInfo", "hasNextPage")))

        if kind in (RequestType.ADD_LIBRARY_ENTRY, RequestType.UPDATE_LIBRARY_ENTRY):
            return Response(kind, payload=self._parse_library_entry(data["SaveMediaListEntry"]))

        if kind is RequestType.DELETE_LIBRARY_ENTRY:
            if not dig(data, "DeleteMediaListEntry", "deleted", default=False):
                return Response.failure(kind, error_for_status(404, "Library entry was not deleted"))
            return Response(kind)

        raise ValueError(f"Unsupported request type: {kind}")

    def _parse_library_entry(self, node: Dict[str, Any]) -> LibraryEntry:
        return LibraryEntry(
            media_id=int(node["mediaId"]),
            watched_episodes=node.get("progress") or 0,
            status=self.status_from_service(node.get("status")),
            score=clamp_score(node.get("score")),
            start_date=parse_fuzzy_date(node.get("startedAt")),
            finish_date=parse_fuzzy_date(node.get("completedAt")),
            last_updated=parse_timestamp(node.get("updatedAt")),
            library_id=node.get("id"),
            rewatched_times=node.get("repeat") or 0,
            notes=node.get("notes") or "",
        )

    def _parse_media(self, node: Dict[str, Any]) -> MediaEntry:
        titles = node.get("title") or {}
        title = titles.get("userPreferred") or titles.get("romaji") or titles.get("english") or ""
        synonyms: List[str] = [t for t in (titles.get("english"), titles.get("native")) if t and t != title]
        synonyms += [s for s in node.get("synonyms") or [] if s not in synonyms]

        season = None
        if node.get("season") and node.get("seasonYear"):
            season = f"{node['season'].title()} {node['seasonYear']}"

        return MediaEntry(
            id=int(node["id"]),
            title=title,
            synonyms=synonyms,
            episode_count=node.get("episodes") or 0,
            synopsis=node.get("description") or "",
            genres=list(node.get("genres") or []),
            season=season,
            aggregate_score=node.get("averageScore"),
            status=self.airing_status_from_service(node.get("status")),
            media_type=node.get("format"),
            start_date=parse_fuzzy_date(node.get("startDate")),
            image_url=dig(node, "coverImage", "large"),
        )
