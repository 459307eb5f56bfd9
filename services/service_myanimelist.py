"""
MyAnimeList adapter.
Flat REST resources with form-encoded list updates; OAuth 2 authorization
code (PKCE) login, refresh grant for renewal, then a lookup of the user.

API documentation:
https://myanimelist.net/apiconfig/references/api/v2
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from core.api_client import HttpRequest, HttpResponse
from core.document import dig, parse, serialize_form
from core.errors import DocumentError, ErrorInfo, RequestBuildError
from core.models import (
    AiringStatus, Credential, LibraryEntry, LibraryStatus, MediaEntry,
    Request, RequestType, Response, UserInfo,
)
from core.service_base import ServiceBase, error_for_status, parse_retry_after
from core.utils import (
    format_date, parse_date, parse_timestamp, score_from_scale, score_to_scale, utcnow,
)

logger = logging.getLogger(__name__)

FORM = "application/x-www-form-urlencoded"
LIBRARY_PAGE_SIZE = 1000
SEARCH_PAGE_SIZE = 50
USER_STEP = "user"

MEDIA_FIELDS = ",".join([
    "id", "title", "alternative_titles", "num_episodes", "synopsis", "genres",
    "start_season", "mean", "status", "media_type", "start_date", "main_picture",
])
LIST_STATUS_FIELDS = "list_status{status,score,num_episodes_watched,num_times_rewatched,comments,start_date,finish_date,updated_at}"


class MyAnimeListService(ServiceBase):
    """MyAnimeList API v2."""

    default_base_url = "https://api.myanimelist.net/v2"
    default_oauth_url = "https://myanimelist.net/v1/oauth2"

    library_statuses = {
        LibraryStatus.WATCHING: "watching",
        LibraryStatus.COMPLETED: "completed",
        LibraryStatus.ON_HOLD: "on_hold",
        LibraryStatus.DROPPED: "dropped",
        LibraryStatus.PLAN_TO_WATCH: "plan_to_watch",
    }

    airing_statuses = {
        "currently_airing": AiringStatus.AIRING,
        "finished_airing": AiringStatus.FINISHED,
        "not_yet_aired": AiringStatus.NOT_YET_AIRED,
    }

    def __init__(self, base_url: Optional[str] = None, client_id: Optional[str] = None,
                 oauth_url: Optional[str] = None):
        super().__init__(base_url)
        self.client_id = client_id
        self.oauth_url = (oauth_url or self.default_oauth_url).rstrip("/")

    def get_name(self) -> str:
        return "myanimelist"

    def get_display_name(self) -> str:
        return "MyAnimeList"

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

    def _headers(self, credential: Optional[Credential]) -> Dict[str, str]:
        headers = self.bearer(credential)
        if not headers and self.client_id:
            # Public endpoints accept the client id instead of a user token.
            headers["X-MAL-CLIENT-ID"] = self.client_id
        return headers

    def build_request(self, request: Request, credential: Optional[Credential]) -> HttpRequest:
        kind = request.type
        headers = self._headers(credential)

        if kind is RequestType.AUTHENTICATE_USER:
            if request.get("step") == USER_STEP:
                if credential is None:
                    raise RequestBuildError("The user lookup needs the token from the first login step")
                return HttpRequest("GET", self.url("users/@me"), headers=headers)
            return self._build_token_request(request)

        if kind is RequestType.GET_LIBRARY_ENTRIES:
            page = int(request.get("page", 1))
            params = {
                "fields": LIST_STATUS_FIELDS,
                "limit": LIBRARY_PAGE_SIZE,
                "offset": (page - 1) * LIBRARY_PAGE_SIZE,
                "nsfw": "true",
            }
            return HttpRequest("GET", self.url("users/@me/animelist"), headers=headers, params=params)

        if kind is RequestType.GET_METADATA_BY_ID:
            self.require(request, "media_id")
            return HttpRequest("GET", self.url(f"anime/{int(request.get('media_id'))}"),
                               headers=headers, params={"fields": MEDIA_FIELDS})

        if kind is RequestType.SEARCH_TITLE:
            self.require(request, "query")
            params = {"q": request.get("query"), "fields": MEDIA_FIELDS}
            params.update(self._page_params(request))
            return HttpRequest("GET", self.url("anime"), headers=headers, params=params)

        if kind is RequestType.GET_SEASON:
            self.require(request, "season", "year")
            season = request.get("season")
            season_name = str(getattr(season, "value", season)).lower()
            params = {"sort": "anime_num_list_users", "fields": MEDIA_FIELDS}
            params.update(self._page_params(request))
            return HttpRequest("GET", self.url(f"anime/season/{int(request.get('year'))}/{season_name}"),
                               headers=headers, params=params)

        if kind in (RequestType.ADD_LIBRARY_ENTRY, RequestType.UPDATE_LIBRARY_ENTRY):
            self.require(request, "media_id")
            headers["Content-Type"] = FORM
            return HttpRequest("PATCH", self.url(f"anime/{int(request.get('media_id'))}/my_list_status"),
                               headers=headers, body=serialize_form(self._build_list_status(request)))

        if kind is RequestType.DELETE_LIBRARY_ENTRY:
            self.require(request, "media_id")
            return HttpRequest("DELETE", self.url(f"anime/{int(request.get('media_id'))}/my_list_status"),
                               headers=headers)

        raise ValueError(f"Unsupported request type: {kind}")

    def _build_token_request(self, request: Request) -> HttpRequest:
        if request.get("refresh_token"):
            params = {"grant_type": "refresh_token", "refresh_token": request.get("refresh_token")}
        else:
            self.require(request, "code", "code_verifier")
            params = {
                "grant_type": "authorization_code",
                "code": request.get("code"),
                "code_verifier": request.get("code_verifier"),
                "redirect_uri": request.get("redirect_uri"),
            }
        params["client_id"] = request.get("client_id") or self.client_id
        if not params["client_id"]:
            raise RequestBuildError("MyAnimeList login requires a client_id")
        return HttpRequest("POST", f"{self.oauth_url}/token", headers={"Content-Type": FORM},
                           body=serialize_form(params))

    def _build_list_status(self, request: Request) -> Dict[str, Any]:
        params = request.parameters
        form: Dict[str, Any] = {}
        if "status" in params:
            form["status"] = self.status_to_service(LibraryStatus(params["status"]))
        if "watched_episodes" in params:
            form["num_watched_episodes"] = int(params["watched_episodes"])
        if "score" in params:
            form["score"] = score_to_scale(int(params["score"]), 10)
        if "rewatched_times" in params:
            form["num_times_rewatched"] = int(params["rewatched_times"])
        if "notes" in params:
            form["comments"] = params["notes"] or ""
        if "start_date" in params:
            form["start_date"] = format_date(params["start_date"]) or ""
        if "finish_date" in params:
            form["finish_date"] = format_date(params["finish_date"]) or ""
        return form

    @staticmethod
    def _page_params(request: Request) -> Dict[str, int]:
        page = int(request.get("page", 1))
        return {"limit": SEARCH_PAGE_SIZE, "offset": (page - 1) * SEARCH_PAGE_SIZE}

    # --- Handling ---

    def classify_error(self, request: Request, http_response: HttpResponse) -> Optional[ErrorInfo]:
        if 200 <= http_response.status < 300:
            return None

        try:
            document = parse(http_response.body)
        except DocumentError:
            return super().classify_error(request, http_response)

        if not isinstance(document, dict) or not document.get("error"):
            return super().classify_error(request, http_response)

        code = document["error"]
        message = document.get("message") or document.get("hint") or code
        status = http_response.status
        if code in ("invalid_token", "invalid_grant", "invalid_client"):
            status = 401
        elif code == "not_found":
            status = 404
        retry_after = parse_retry_after(http_response.header("retry-after"))
        return error_for_status(status, message, retry_after, raw=document)

    def parse_response(self, request: Request, http_response: HttpResponse) -> Response:
        kind = request.type

        if kind is RequestType.DELETE_LIBRARY_ENTRY:
            return Response(kind)

        document = parse(http_response.body)

        if kind is RequestType.AUTHENTICATE_USER:
            if request.get("step") == USER_STEP:
                info = UserInfo(id=document["id"], name=document.get("name") or "")
                credential = Credential(access_token="", metadata={"user_id": info.id, "username": info.name})
                return Response(kind, payload=info, credential=credential)

            expires_in = document.get("expires_in")
            credential = Credential(
                access_token=document["access_token"],
                expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
                refresh_token=document.get("refresh_token"),
            )
            follow_up = None if request.get("refresh_token") else Request(kind, {"step": USER_STEP})
            return Response(kind, credential=credential, follow_up=follow_up)

        if kind is RequestType.GET_LIBRARY_ENTRIES:
            entries = [
                self._parse_list_status(item["list_status"], item["node"]["id"])
                for item in document["data"]
            ]
            return Response(kind, payload=entries, has_next_page=bool(dig(document, "paging", "next")))

        if kind is RequestType.GET_METADATA_BY_ID:
            return Response(kind, payload=self._parse_media(document))

        if kind in (RequestType.SEARCH_TITLE, RequestType.GET_SEASON):
            media = [self._parse_media(item["node"]) for item in document["data"]]
            return Response(kind, payload=media, has_next_page=bool(dig(document, "paging", "next")))

        if kind in (RequestType.ADD_LIBRARY_ENTRY, RequestType.UPDATE_LIBRARY_ENTRY):
            return Response(kind, payload=self._parse_list_status(document, request.get("media_id")))

        raise ValueError(f"Unsupported request type: {kind}")

    def _parse_list_status(self, node: Dict[str, Any], media_id: Any) -> LibraryEntry:
        return LibraryEntry(
            media_id=int(media_id),
            watched_episodes=node.get("num_episodes_watched") or 0,
            status=self.status_from_service(node.get("status")),
            score=score_from_scale(node.get("score"), 10),
            start_date=parse_date(node.get("start_date")),
            finish_date=parse_date(node.get("finish_date")),
            last_updated=parse_timestamp(node.get("updated_at")),
            library_id=int(media_id),
            rewatched_times=node.get("num_times_rewatched") or 0,
            notes=node.get("comments") or "",
        )

    def _parse_media(self, node: Dict[str, Any]) -> MediaEntry:
        alternative = node.get("alternative_titles") or {}
        title = node.get("title") or ""
        synonyms = [t for t in (alternative.get("en"), alternative.get("ja")) if t and t != title]
        synonyms += [t for t in alternative.get("synonyms") or [] if t and t not in synonyms]

        season = None
        start_season = node.get("start_season") or {}
        if start_season.get("season") and start_season.get("year"):
            season = f"{start_season['season'].title()} {start_season['year']}"

        mean = node.get("mean")
        return MediaEntry(
            id=int(node["id"]),
            title=title,
            synonyms=synonyms,
            episode_count=node.get("num_episodes") or 0,
            synopsis=node.get("synopsis") or "",
            genres=[g.get("name") for g in node.get("genres") or [] if g.get("name")],
            season=season,
            aggregate_score=round(float(mean) * 10, 2) if mean else None,
            status=self.airing_status_from_service(node.get("status")),
            media_type=node.get("media_type"),
            start_date=parse_date(node.get("start_date")),
            image_url=dig(node, "main_picture", "large"),
        )
