"""
Tests for the service adapters: request building, response handling and
status vocabularies, run against every backend.
"""

import json
from datetime import date
from urllib.parse import parse_qs

import pytest

from core.errors import ErrorClass, RequestBuildError
from core.models import LibraryEntry, LibraryStatus, MediaEntry, Request, RequestType, UserInfo

from samples import CREDENTIALS, SUCCESS_CASES, http

SERVICES = ["anilist", "kitsu", "myanimelist"]


@pytest.mark.parametrize("service_name", SERVICES)
@pytest.mark.parametrize("request_type", list(RequestType))
def test_response_type_mirrors_request_type(adapters, service_name, request_type):
    """A successful round trip yields a Response of the request's own type."""
    service = adapters[service_name]
    parameters, http_response = SUCCESS_CASES[service_name][request_type]
    request = Request(request_type, parameters)

    service.build_request(request, CREDENTIALS[service_name])
    response = service.handle_response(request, http_response)

    assert response.error is None
    assert response.type is request_type


@pytest.mark.parametrize("service_name", SERVICES)
@pytest.mark.parametrize("status", list(LibraryStatus))
def test_status_round_trip(adapters, service_name, status):
    service = adapters[service_name]
    assert service.status_from_service(service.status_to_service(status)) is status


@pytest.mark.parametrize("service_name", SERVICES)
def test_status_mapping_is_total(adapters, service_name):
    service = adapters[service_name]
    native = [service.status_to_service(s) for s in LibraryStatus]
    assert len(set(native)) == len(LibraryStatus)


@pytest.mark.parametrize("service_name", SERVICES)
def test_build_is_deterministic(adapters, service_name):
    service = adapters[service_name]
    parameters, _ = SUCCESS_CASES[service_name][RequestType.UPDATE_LIBRARY_ENTRY]
    request = Request(RequestType.UPDATE_LIBRARY_ENTRY, parameters)
    credential = CREDENTIALS[service_name]
    assert service.build_request(request, credential) == service.build_request(request, credential)


@pytest.mark.parametrize("service_name", SERVICES)
def test_metadata_requires_media_id(adapters, service_name):
    with pytest.raises(RequestBuildError):
        adapters[service_name].build_request(Request(RequestType.GET_METADATA_BY_ID), None)


@pytest.mark.parametrize("service_name", SERVICES)
def test_malformed_body_becomes_malformed_error(adapters, service_name):
    service = adapters[service_name]
    request = Request(RequestType.GET_METADATA_BY_ID, {"media_id": 1})
    response = service.handle_response(request, http(200, b"<html>maintenance</html>"))
    assert response.type is RequestType.GET_METADATA_BY_ID
    assert response.error.error_class is ErrorClass.MALFORMED
    assert not response.error.retriable


@pytest.mark.parametrize("service_name", SERVICES)
@pytest.mark.parametrize("status,error_class", [
    (401, ErrorClass.AUTHENTICATION),
    (404, ErrorClass.NOT_FOUND),
    (429, ErrorClass.RATE_LIMITED),
    (503, ErrorClass.TRANSPORT),
    (422, ErrorClass.SERVICE_REJECTED),
])
def test_http_status_classification(adapters, service_name, status, error_class):
    service = adapters[service_name]
    request = Request(RequestType.SEARCH_TITLE, {"query": "x"})
    response = service.handle_response(request, http(status, b"nope"))
    assert response.error.error_class is error_class
    assert response.error.retriable == (error_class in (ErrorClass.TRANSPORT, ErrorClass.RATE_LIMITED))


def test_search_keeps_backend_order(adapters):
    service = adapters["myanimelist"]
    body = {"data": [{"node": {"id": i, "title": f"Title {i}"}} for i in (30, 10, 20)], "paging": {}}
    response = service.handle_response(Request(RequestType.SEARCH_TITLE, {"query": "t"}), http(200, body))
    assert [m.id for m in response.payload] == [30, 10, 20]


class TestAniList:
    """AniList: GraphQL documents POSTed to a single endpoint."""

    def test_library_query_uses_username_from_credential(self, adapters):
        service = adapters["anilist"]
        http_request = service.build_request(Request(RequestType.GET_LIBRARY_ENTRIES), CREDENTIALS["anilist"])
        body = json.loads(http_request.body)

        assert http_request.method == "POST"
        assert http_request.url == "https://graphql.anilist.co"
        assert http_request.headers["Authorization"] == "Bearer anilist-token"
        assert body["variables"] == {"userName": "yuki"}
        assert "MediaListCollection" in body["query"]
        assert "{media_fields}" not in body["query"]

    def test_library_query_without_user_fails_to_build(self, adapters):
        with pytest.raises(RequestBuildError):
            adapters["anilist"].build_request(Request(RequestType.GET_LIBRARY_ENTRIES), None)

    def test_update_sends_only_given_fields(self, adapters):
        request = Request(RequestType.UPDATE_LIBRARY_ENTRY, {"media_id": 5114, "score": 85})
        body = json.loads(adapters["anilist"].build_request(request, CREDENTIALS["anilist"]).body)
        assert body["variables"] == {"mediaId": 5114, "scoreRaw": 85}

    def test_update_converts_dates_and_status(self, adapters):
        request = Request(RequestType.UPDATE_LIBRARY_ENTRY, {
            "media_id": 5114, "status": LibraryStatus.ON_HOLD, "start_date": date(2024, 2, 3),
        })
        variables = json.loads(adapters["anilist"].build_request(request, CREDENTIALS["anilist"]).body)["variables"]
        assert variables["status"] == "PAUSED"
        assert variables["startedAt"] == {"year": 2024, "month": 2, "day": 3}

    def test_delete_requires_library_id(self, adapters):
        with pytest.raises(RequestBuildError):
            adapters["anilist"].build_request(Request(RequestType.DELETE_LIBRARY_ENTRY, {"media_id": 1}), None)

    def test_embedded_error_on_http_200(self, adapters):
        body = {"data": None, "errors": [{"message": "validation", "status": 400}]}
        response = adapters["anilist"].handle_response(
            Request(RequestType.UPDATE_LIBRARY_ENTRY, {"media_id": 1}), http(200, body))
        assert response.error.error_class is ErrorClass.SERVICE_REJECTED
        assert response.error.raw == body["errors"]

    def test_invalid_token_is_authentication_error(self, adapters):
        body = {"errors": [{"message": "Invalid token", "status": 400}]}
        response = adapters["anilist"].handle_response(Request(RequestType.GET_LIBRARY_ENTRIES), http(400, body))
        assert response.error.error_class is ErrorClass.AUTHENTICATION

    def test_delete_not_deleted_is_not_found(self, adapters):
        body = {"data": {"DeleteMediaListEntry": {"deleted": False}}}
        response = adapters["anilist"].handle_response(
            Request(RequestType.DELETE_LIBRARY_ENTRY, {"library_id": 77}), http(200, body))
        assert response.error.error_class is ErrorClass.NOT_FOUND

    def test_parses_media(self, adapters):
        _, http_response = SUCCESS_CASES["anilist"][RequestType.GET_METADATA_BY_ID]
        media = adapters["anilist"].handle_response(
            Request(RequestType.GET_METADATA_BY_ID, {"media_id": 5114}), http_response).payload

        assert isinstance(media, MediaEntry)
        assert media.id == 5114
        assert media.episode_count == 64
        assert media.season == "Spring 2009"
        assert "Fullmetal Alchemist: Brotherhood" in media.synonyms
        assert media.start_date == date(2009, 4, 5)

    def test_parses_library_entry(self, adapters):
        _, http_response = SUCCESS_CASES["anilist"][RequestType.GET_LIBRARY_ENTRIES]
        entries = adapters["anilist"].handle_response(Request(RequestType.GET_LIBRARY_ENTRIES), http_response).payload

        entry = entries[0]
        assert entry.media_id == 5114
        assert entry.status is LibraryStatus.WATCHING
        assert entry.library_id == 77
        assert entry.start_date == date(2024, 1, 1)
        assert entry.finish_date is None
        assert entry.last_updated is not None

    def test_authentication_returns_user_and_credential(self, adapters):
        parameters, http_response = SUCCESS_CASES["anilist"][RequestType.AUTHENTICATE_USER]
        response = adapters["anilist"].handle_response(
            Request(RequestType.AUTHENTICATE_USER, parameters), http_response)
        assert response.payload == UserInfo(id=1, name="yuki")
        assert response.credential.access_token == "anilist-token"
        assert response.credential.metadata["username"] == "yuki"
        assert response.follow_up is None

    def test_authentication_requires_token(self, adapters):
        with pytest.raises(RequestBuildError):
            adapters["anilist"].build_request(Request(RequestType.AUTHENTICATE_USER), None)


class TestKitsu:
    """Kitsu: JSON:API resources and an OAuth login handshake."""

    def test_login_is_password_grant_with_user_lookup_follow_up(self, adapters):
        parameters, http_response = SUCCESS_CASES["kitsu"][RequestType.AUTHENTICATE_USER]
        request = Request(RequestType.AUTHENTICATE_USER, parameters)

        http_request = adapters["kitsu"].build_request(request, None)
        assert http_request.url == "https://kitsu.io/api/oauth/token"
        assert json.loads(http_request.body)["grant_type"] == "password"

        response = adapters["kitsu"].handle_response(request, http_response)
        assert response.credential.refresh_token == "kitsu-refresh"
        assert response.credential.expires_at is not None
        assert response.follow_up.get("step") == "user"

    def test_user_lookup_needs_token(self, adapters):
        with pytest.raises(RequestBuildError):
            adapters["kitsu"].build_request(Request(RequestType.AUTHENTICATE_USER, {"step": "user"}), None)

    def test_empty_user_lookup_is_malformed(self, adapters):
        request = Request(RequestType.AUTHENTICATE_USER, {"step": "user"})

        response = adapters["kitsu"].handle_response(request, http(200, {"data": []}))

        assert response.type is RequestType.AUTHENTICATE_USER
        assert response.error.error_class is ErrorClass.MALFORMED
        assert response.credential is None

    def test_refresh_has_no_follow_up(self, adapters):
        request = Request(RequestType.AUTHENTICATE_USER, {"refresh_token": "kitsu-refresh"})
        assert json.loads(adapters["kitsu"].build_request(request, None).body)["grant_type"] == "refresh_token"
        response = adapters["kitsu"].handle_response(request, SUCCESS_CASES["kitsu"][RequestType.AUTHENTICATE_USER][1])
        assert response.follow_up is None

    def test_refresh_parameters(self, adapters):
        assert adapters["kitsu"].refresh_parameters(CREDENTIALS["kitsu"]) == {"refresh_token": "kitsu-refresh"}

    def test_library_request_filters_by_user_and_pages(self, adapters):
        http_request = adapters["kitsu"].build_request(
            Request(RequestType.GET_LIBRARY_ENTRIES, {"page": 3}), CREDENTIALS["kitsu"])
        assert http_request.params["filter[user_id]"] == "42"
        assert http_request.params["page[offset]"] == 1000
        assert http_request.headers["Accept"] == "application/vnd.api+json"

    def test_next_link_sets_has_next_page(self, adapters):
        body = {"data": [], "links": {"next": "https://kitsu.io/api/edge/library-entries?page[offset]=500"}}
        response = adapters["kitsu"].handle_response(Request(RequestType.GET_LIBRARY_ENTRIES), http(200, body))
        assert response.has_next_page

    def test_add_relates_anime_and_user(self, adapters):
        request = Request(RequestType.ADD_LIBRARY_ENTRY, {"media_id": 3936, "score": 85})
        data = json.loads(adapters["kitsu"].build_request(request, CREDENTIALS["kitsu"]).body)["data"]
        assert data["relationships"]["anime"]["data"]["id"] == "3936"
        assert data["relationships"]["user"]["data"]["id"] == "42"
        assert data["attributes"] == {"ratingTwenty": 17}

    def test_update_requires_library_id(self, adapters):
        with pytest.raises(RequestBuildError):
            adapters["kitsu"].build_request(
                Request(RequestType.UPDATE_LIBRARY_ENTRY, {"media_id": 3936}), CREDENTIALS["kitsu"])

    def test_low_scores_keep_minimum_rating(self, adapters):
        request = Request(RequestType.UPDATE_LIBRARY_ENTRY, {"media_id": 1, "library_id": "9", "score": 3})
        data = json.loads(adapters["kitsu"].build_request(request, CREDENTIALS["kitsu"]).body)["data"]
        assert data["attributes"]["ratingTwenty"] == 2

    def test_invalid_grant_is_authentication_error(self, adapters):
        body = {"error": "invalid_grant", "error_description": "The provided authorization grant is invalid"}
        response = adapters["kitsu"].handle_response(
            Request(RequestType.AUTHENTICATE_USER, {"username": "a", "password": "b"}), http(400, body))
        assert response.error.error_class is ErrorClass.AUTHENTICATION
        assert "authorization grant" in response.error.message

    def test_json_api_error_status_wins(self, adapters):
        body = {"errors": [{"status": "404", "title": "Record not found"}]}
        response = adapters["kitsu"].handle_response(
            Request(RequestType.DELETE_LIBRARY_ENTRY, {"library_id": "1"}), http(404, body))
        assert response.error.error_class is ErrorClass.NOT_FOUND
        assert response.error.message == "Record not found"

    def test_parses_media_with_categories_and_season(self, adapters):
        parameters, http_response = SUCCESS_CASES["kitsu"][RequestType.GET_METADATA_BY_ID]
        media = adapters["kitsu"].handle_response(
            Request(RequestType.GET_METADATA_BY_ID, parameters), http_response).payload
        assert media.id == 3936
        assert media.genres == ["Action"]
        assert media.season == "Spring 2009"
        assert media.aggregate_score == 88.5

    def test_parses_library_entry_score(self, adapters):
        _, http_response = SUCCESS_CASES["kitsu"][RequestType.GET_LIBRARY_ENTRIES]
        entry = adapters["kitsu"].handle_response(
            Request(RequestType.GET_LIBRARY_ENTRIES), http_response).payload[0]
        assert isinstance(entry, LibraryEntry)
        assert entry.media_id == 3936
        assert entry.score == 85
        assert entry.library_id == "900"


class TestMyAnimeList:
    """MyAnimeList: REST v2 with form-encoded list updates."""

    def test_login_is_authorization_code_grant(self, adapters):
        parameters, _ = SUCCESS_CASES["myanimelist"][RequestType.AUTHENTICATE_USER]
        http_request = adapters["myanimelist"].build_request(Request(RequestType.AUTHENTICATE_USER, parameters), None)
        form = parse_qs(http_request.body.decode())
        assert http_request.url == "https://myanimelist.net/v1/oauth2/token"
        assert form["grant_type"] == ["authorization_code"]
        assert form["client_id"] == ["mal-client"]
        assert form["code_verifier"] == ["verifier"]

    def test_public_requests_send_client_id(self, adapters):
        http_request = adapters["myanimelist"].build_request(Request(RequestType.SEARCH_TITLE, {"query": "x"}), None)
        assert http_request.headers == {"X-MAL-CLIENT-ID": "mal-client"}

    def test_update_is_form_encoded(self, adapters):
        request = Request(RequestType.UPDATE_LIBRARY_ENTRY, {
            "media_id": 5114, "watched_episodes": 3, "score": 90, "status": LibraryStatus.COMPLETED,
        })
        http_request = adapters["myanimelist"].build_request(request, CREDENTIALS["myanimelist"])
        form = parse_qs(http_request.body.decode())
        assert http_request.method == "PATCH"
        assert http_request.url.endswith("/anime/5114/my_list_status")
        assert form == {"status": ["completed"], "num_watched_episodes": ["3"], "score": ["9"]}

    def test_season_path(self, adapters):
        parameters, _ = SUCCESS_CASES["myanimelist"][RequestType.GET_SEASON]
        http_request = adapters["myanimelist"].build_request(Request(RequestType.GET_SEASON, parameters), None)
        assert http_request.url.endswith("/anime/season/2009/spring")

    def test_delete_of_absent_entry_is_not_found(self, adapters):
        response = adapters["myanimelist"].handle_response(
            Request(RequestType.DELETE_LIBRARY_ENTRY, {"media_id": 1}), http(404, {"error": "not_found"}))
        assert response.error.error_class is ErrorClass.NOT_FOUND

    def test_rate_limit_keeps_retry_after(self, adapters):
        response = adapters["myanimelist"].handle_response(
            Request(RequestType.SEARCH_TITLE, {"query": "x"}), http(429, b"", {"Retry-After": "12"}))
        assert response.error.error_class is ErrorClass.RATE_LIMITED
        assert response.error.retry_after == 12.0

    def test_parses_mean_on_canonical_scale(self, adapters):
        _, http_response = SUCCESS_CASES["myanimelist"][RequestType.GET_METADATA_BY_ID]
        media = adapters["myanimelist"].handle_response(
            Request(RequestType.GET_METADATA_BY_ID, {"media_id": 5114}), http_response).payload
        assert media.aggregate_score == 91.0
        assert media.genres == ["Action", "Adventure"]

    def test_library_entry_uses_media_id_as_library_id(self, adapters):
        _, http_response = SUCCESS_CASES["myanimelist"][RequestType.GET_LIBRARY_ENTRIES]
        entry = adapters["myanimelist"].handle_response(
            Request(RequestType.GET_LIBRARY_ENTRIES), http_response).payload[0]
        assert entry.library_id == 5114
        assert entry.score == 80
        assert entry.watched_episodes == 1
