"""
Canonical, service-independent data models shared by every service adapter.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ErrorInfo


class RequestType(Enum):
    """The closed set of operations a service adapter understands."""
    ADD_LIBRARY_ENTRY = "AddLibraryEntry"
    AUTHENTICATE_USER = "AuthenticateUser"
    DELETE_LIBRARY_ENTRY = "DeleteLibraryEntry"
    GET_LIBRARY_ENTRIES = "GetLibraryEntries"
    GET_METADATA_BY_ID = "GetMetadataById"
    GET_SEASON = "GetSeason"
    SEARCH_TITLE = "SearchTitle"
    UPDATE_LIBRARY_ENTRY = "UpdateLibraryEntry"

    @property
    def is_mutation(self) -> bool:
        return self in MUTATING_REQUESTS


MUTATING_REQUESTS = frozenset({
    RequestType.ADD_LIBRARY_ENTRY,
    RequestType.UPDATE_LIBRARY_ENTRY,
    RequestType.DELETE_LIBRARY_ENTRY,
})


class LibraryStatus(Enum):
    """Canonical watch status of a library entry."""
    WATCHING = "watching"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    DROPPED = "dropped"
    PLAN_TO_WATCH = "plan_to_watch"


class AiringStatus(Enum):
    """Canonical airing status of a media entry."""
    AIRING = "airing"
    FINISHED = "finished"
    NOT_YET_AIRED = "not_yet_aired"


class Season(Enum):
    WINTER = "winter"
    SPRING = "spring"
    SUMMER = "summer"
    FALL = "fall"


@dataclass(frozen=True)
class Request:
    """
    A single operation against the active service.
    Created by the orchestrator, consumed once by an adapter, never mutated.
    """
    type: RequestType
    parameters: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.parameters.get(key, default)


@dataclass(frozen=True)
class MediaEntry:
    """Snapshot of remote metadata for one title."""
    id: int
    title: str
    synonyms: List[str] = field(default_factory=list)
    episode_count: int = 0  # 0 = unknown
    synopsis: str = ""
    genres: List[str] = field(default_factory=list)
    season: Optional[str] = None  # e.g. "Spring 2017"
    aggregate_score: Optional[float] = None  # 0-100
    status: Optional[AiringStatus] = None
    media_type: Optional[str] = None
    start_date: Optional[date] = None
    image_url: Optional[str] = None


@dataclass
class LibraryEntry:
    """A user's progress on one title, identified by media_id."""
    media_id: int
    watched_episodes: int = 0
    status: LibraryStatus = LibraryStatus.PLAN_TO_WATCH
    score: int = 0  # 0-100, 0 = unscored
    start_date: Optional[date] = None
    finish_date: Optional[date] = None
    last_updated: Optional[datetime] = None
    library_id: Optional[Union[int, str]] = None  # the backend's own entry id
    rewatched_times: int = 0
    notes: str = ""

    def copy(self, **changes) -> "LibraryEntry":
        return replace(self, **changes)


@dataclass(frozen=True)
class UserInfo:
    """Account details returned by a completed authentication."""
    id: Optional[Union[int, str]] = None
    name: str = ""


@dataclass(frozen=True)
class Credential:
    """
    Authentication state for one adapter instance.
    Instances are immutable; the auth controller swaps whole objects.
    """
    access_token: str = field(repr=False)
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = field(default=None, repr=False)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def merged(self, other: "Credential") -> "Credential":
        """Returns a new credential with other's values layered on top of this one."""
        return Credential(
            access_token=other.access_token or self.access_token,
            expires_at=other.expires_at or self.expires_at,
            refresh_token=other.refresh_token or self.refresh_token,
            metadata={**self.metadata, **other.metadata},
        )

    def secrets(self) -> List[str]:
        return [s for s in (self.access_token, self.refresh_token) if s]


Payload = Union[None, MediaEntry, LibraryEntry, UserInfo, List[MediaEntry], List[LibraryEntry]]


@dataclass
class Response:
    """
    Outcome of one completed exchange.
    The type always mirrors the originating request's type.
    """
    type: RequestType
    payload: Payload = None
    error: Optional[ErrorInfo] = None
    has_next_page: bool = False
    follow_up: Optional[Request] = None
    credential: Optional[Credential] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, request_type: RequestType, error: ErrorInfo) -> "Response":
        return cls(type=request_type, error=error)
