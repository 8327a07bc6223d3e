"""Data models for credentials, catalog media and list entries."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import ListStatus, SyncState


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class Credential(BaseModel):
    """OAuth2 credential for the single logged-in user."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    scope: str = ""
    token_type: str = "Bearer"

    def expires_within(self, seconds: int) -> bool:
        """Check if the token expires within the given margin."""
        return utcnow() >= self.expires_at - timedelta(seconds=seconds)

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class MediaTitle(BaseModel):
    romaji: Optional[str] = None
    english: Optional[str] = None
    native: Optional[str] = None

    @property
    def preferred(self) -> str:
        return self.english or self.romaji or self.native or "Unknown"


class FuzzyDate(BaseModel):
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None


class CoverImage(BaseModel):
    large: Optional[str] = None
    medium: Optional[str] = None


class Tag(BaseModel):
    name: str
    rank: Optional[int] = None
    is_spoiler: bool = False


class StudioRef(BaseModel):
    id: int
    name: str
    is_main: bool = False


class CharacterRef(BaseModel):
    id: int
    name: str
    role: Optional[str] = None


class MediaEntity(BaseModel):
    """Catalog record, replaced only by a full re-fetch."""

    id: int
    title: MediaTitle = Field(default_factory=MediaTitle)
    description: Optional[str] = None
    episode_count: Optional[int] = None
    duration: Optional[int] = None
    genres: set[str] = Field(default_factory=set)
    average_score: Optional[float] = None
    status: Optional[str] = None
    format: Optional[str] = None
    start_date: Optional[FuzzyDate] = None
    end_date: Optional[FuzzyDate] = None
    cover_image: CoverImage = Field(default_factory=CoverImage)
    banner_image: Optional[str] = None
    tags: list[Tag] = Field(default_factory=list)
    studios: list[StudioRef] = Field(default_factory=list)
    characters: list[CharacterRef] = Field(default_factory=list)
    last_fetched_at: datetime = Field(default_factory=utcnow)


class ListEntry(BaseModel):
    """The user's status, score and progress for one media."""

    model_config = ConfigDict(validate_assignment=True)

    local_id: Optional[int] = None
    media_id: int
    remote_id: Optional[int] = None
    status: ListStatus
    score: Optional[float] = Field(None, ge=0, le=100)
    progress: int = Field(default=0, ge=0)
    updated_at_local: datetime = Field(default_factory=utcnow)
    updated_at_remote: Optional[datetime] = None
    sync_state: SyncState = SyncState.CLEAN

    def same_user_fields(self, other: "ListEntry") -> bool:
        """Compare the fields the user can see and edit."""
        return (
            self.media_id == other.media_id
            and self.status == other.status
            and self.score == other.score
            and self.progress == other.progress
        )


class Avatar(BaseModel):
    large: Optional[str] = None
    medium: Optional[str] = None


class AnimeStatistics(BaseModel):
    count: int = 0
    episodes_watched: int = 0
    minutes_watched: int = 0
    mean_score: float = 0.0


class UserProfile(BaseModel):
    id: int
    name: str
    avatar: Avatar = Field(default_factory=Avatar)
    banner_image: Optional[str] = None
    about: Optional[str] = None
    statistics: Optional[AnimeStatistics] = None


class PushResult(BaseModel):
    """Identifiers the server reports after saving a list entry."""

    remote_id: int
    updated_at_remote: datetime


class SyncResult(BaseModel):
    """Result of a sync operation."""

    success: bool = True
    pulled: int = 0
    pushed: int = 0
    conflicted: int = 0
    pending: int = 0
    auth_required: bool = False
    errors: list[str] = Field(default_factory=list)
