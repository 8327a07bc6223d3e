"""AniList API client."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .base_client import BaseAPIClient
from .constants import HTTP_OK, HTTP_UNAUTHORIZED, ListStatus, SyncState
from .errors import NotFoundError, ServerError, ValidationError
from .models import (
    CharacterRef,
    ListEntry,
    MediaEntity,
    PushResult,
    StudioRef,
    Tag,
    UserProfile,
    utcnow,
)
from .oauth import AuthSession

logger = logging.getLogger(__name__)


MEDIA_FIELDS = """
    id
    title { romaji english native }
    description(asHtml: false)
    episodes
    duration
    genres
    averageScore
    status
    format
    startDate { year month day }
    endDate { year month day }
    coverImage { large medium }
    bannerImage
"""

MEDIA_QUERY = """
query ($id: Int) {
  Media(id: $id, type: ANIME) {
    %s
    tags { name rank isMediaSpoiler }
    studios { edges { isMain node { id name } } }
    characters(sort: [ROLE, RELEVANCE], perPage: 25) {
      edges { role node { id name { full } } }
    }
  }
}
""" % MEDIA_FIELDS

SEARCH_QUERY = """
query ($search: String, $page: Int, $perPage: Int) {
  Page(page: $page, perPage: $perPage) {
    media(search: $search, type: ANIME) {
      %s
    }
  }
}
""" % MEDIA_FIELDS

USER_FIELDS = """
    id
    name
    avatar { large medium }
    bannerImage
    about
    statistics { anime { count episodesWatched minutesWatched meanScore } }
"""

VIEWER_QUERY = "query { Viewer { %s } }" % USER_FIELDS

USER_QUERY = "query ($name: String) { User(name: $name) { %s } }" % USER_FIELDS

LIST_ENTRY_FIELDS = """
    id
    mediaId
    status
    score(format: POINT_100)
    progress
    updatedAt
"""

LIST_QUERY = """
query ($userId: Int, $userName: String) {
  MediaListCollection(userId: $userId, userName: $userName, type: ANIME) {
    lists { entries { %s } }
  }
}
""" % LIST_ENTRY_FIELDS

LIST_ENTRY_QUERY = """
query ($userId: Int, $mediaId: Int) {
  MediaList(userId: $userId, mediaId: $mediaId) { %s }
}
""" % LIST_ENTRY_FIELDS

SAVE_ENTRY_MUTATION = """
mutation ($id: Int, $mediaId: Int, $status: MediaListStatus, $scoreRaw: Int, $progress: Int) {
  SaveMediaListEntry(id: $id, mediaId: $mediaId, status: $status, scoreRaw: $scoreRaw, progress: $progress) {
    id
    mediaId
    updatedAt
  }
}
"""


def _from_unix(value: Optional[int]) -> datetime:
    return datetime.fromtimestamp(value or 0, tz=timezone.utc)


class AniListClient(BaseAPIClient):
    """Client for AniList GraphQL API.

    Every call goes through AuthSession.authorized_request; the blocking
    HTTP round trip runs on the default thread pool.
    """

    BASE_URL = "https://graphql.anilist.co"

    def __init__(self, auth: AuthSession, graphql_url: Optional[str] = None):
        """Initialize AniList client with the session that owns the credential."""
        super().__init__(
            base_url=graphql_url or self.BASE_URL,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        self.auth = auth

    def _execute(self, access_token: str, query: str, variables: Optional[dict] = None) -> dict:
        """Execute a GraphQL query (blocking)."""
        payload = {"query": query}
        if variables:
            payload["variables"] = variables

        response = self._request(
            "POST", self.base_url, access_token=access_token, service_name="AniList", json=payload, check_status=False
        )

        try:
            data = response.json()
        except ValueError:
            self._raise_for_status(response, "AniList")
            raise ServerError("AniList returned a non-JSON response", response.status_code)

        if not isinstance(data, dict):
            self._raise_for_status(response, "AniList")
            raise ServerError("AniList returned an unexpected response body", response.status_code)

        if data.get("errors"):
            self._raise_graphql_errors(data["errors"], response)
        self._raise_for_status(response, "AniList")

        if not isinstance(data.get("data"), dict):
            raise ValidationError("No data returned")
        return data["data"]

    def _raise_graphql_errors(self, errors: list, response) -> None:
        errors = [e for e in errors if isinstance(e, dict)] or [{}]
        message = "; ".join(str(e.get("message", "unknown error")) for e in errors)
        logger.error(f"GraphQL errors: {message}")

        status = errors[0].get("status") or response.status_code
        if "invalid token" in message.lower():
            status = HTTP_UNAUTHORIZED
        elif status == HTTP_OK:
            status = 400
        self._handle_auth_error(response, "AniList")
        raise self._error_for_status(int(status), message, response)

    async def _query(self, query: str, variables: Optional[dict] = None) -> dict:
        return await self.auth.authorized_request(
            lambda credential: asyncio.to_thread(self._execute, credential.access_token, query, variables)
        )

    # ----- catalog -----

    async def fetch_media(self, media_id: int) -> MediaEntity:
        """Fetch full details for one anime."""
        data = await self._query(MEDIA_QUERY, {"id": media_id})
        media = data.get("Media")
        if not media:
            raise NotFoundError(f"Media {media_id} not found")
        return self._parse_media(media)

    async def search_media(self, text: str, page: int = 1, per_page: int = 10) -> list[MediaEntity]:
        """Search AniList anime by title."""
        data = await self._query(SEARCH_QUERY, {"search": text, "page": page, "perPage": per_page})
        return [self._parse_media(m) for m in (data.get("Page") or {}).get("media") or []]

    def _parse_media(self, media: dict) -> MediaEntity:
        """Parse an AniList Media object; extra fields are ignored."""
        try:
            return MediaEntity(
                id=media["id"],
                title=media.get("title") or {},
                description=media.get("description"),
                episode_count=media.get("episodes"),
                duration=media.get("duration"),
                genres=set(media.get("genres") or []),
                average_score=media.get("averageScore"),
                status=media.get("status"),
                format=media.get("format"),
                start_date=media.get("startDate"),
                end_date=media.get("endDate"),
                cover_image=media.get("coverImage") or {},
                banner_image=media.get("bannerImage"),
                tags=[
                    Tag(name=t["name"], rank=t.get("rank"), is_spoiler=bool(t.get("isMediaSpoiler")))
                    for t in media.get("tags") or []
                ],
                studios=[
                    StudioRef(id=e["node"]["id"], name=e["node"]["name"], is_main=bool(e.get("isMain")))
                    for e in (media.get("studios") or {}).get("edges") or []
                ],
                characters=[
                    CharacterRef(
                        id=e["node"]["id"],
                        name=(e["node"].get("name") or {}).get("full") or "",
                        role=e.get("role"),
                    )
                    for e in (media.get("characters") or {}).get("edges") or []
                ],
                last_fetched_at=utcnow(),
            )
        except (KeyError, TypeError, PydanticValidationError) as e:
            raise ValidationError(f"Malformed Media in response: {e}") from e

    # ----- users -----

    async def fetch_viewer(self) -> UserProfile:
        """Fetch the profile of the logged-in user."""
        data = await self._query(VIEWER_QUERY)
        return self._parse_user(data.get("Viewer"))

    async def fetch_user_profile(self, name: str) -> UserProfile:
        data = await self._query(USER_QUERY, {"name": name})
        user = data.get("User")
        if not user:
            raise NotFoundError(f"User {name} not found")
        return self._parse_user(user)

    def _parse_user(self, user: Optional[dict]) -> UserProfile:
        try:
            stats = ((user or {}).get("statistics") or {}).get("anime")
            return UserProfile(
                id=user["id"],
                name=user["name"],
                avatar=user.get("avatar") or {},
                banner_image=user.get("bannerImage"),
                about=user.get("about"),
                statistics={
                    "count": stats.get("count") or 0,
                    "episodes_watched": stats.get("episodesWatched") or 0,
                    "minutes_watched": stats.get("minutesWatched") or 0,
                    "mean_score": stats.get("meanScore") or 0.0,
                } if stats else None,
            )
        except (KeyError, TypeError, PydanticValidationError) as e:
            raise ValidationError(f"Malformed User in response: {e}") from e

    # ----- list -----

    async def fetch_list(self, user: Union[int, str]) -> list[ListEntry]:
        """Fetch the user's anime list, by user id or name."""
        variables = {"userId": user} if isinstance(user, int) else {"userName": user}
        data = await self._query(LIST_QUERY, variables)

        entries = []
        for list_group in (data.get("MediaListCollection") or {}).get("lists") or []:
            for entry in list_group.get("entries") or []:
                entries.append(self._parse_entry(entry))

        logger.info(f"Fetched {len(entries)} anime entries from AniList")
        return entries

    async def fetch_list_entry(self, user_id: int, media_id: int) -> Optional[ListEntry]:
        """Fetch the remote copy of one entry, or None if the user has none."""
        try:
            data = await self._query(LIST_ENTRY_QUERY, {"userId": user_id, "mediaId": media_id})
        except NotFoundError:
            return None
        entry = data.get("MediaList")
        return self._parse_entry(entry) if entry else None

    def _parse_entry(self, entry: dict) -> ListEntry:
        """Parse AniList MediaList to a CLEAN ListEntry."""
        try:
            updated_at = _from_unix(entry.get("updatedAt"))
            return ListEntry(
                remote_id=entry["id"],
                media_id=entry["mediaId"],
                status=ListStatus(entry["status"]),
                # AniList reports 0 for "no score"
                score=entry.get("score") or None,
                progress=entry.get("progress") or 0,
                updated_at_local=updated_at,
                updated_at_remote=updated_at,
                sync_state=SyncState.CLEAN,
            )
        except (KeyError, TypeError, ValueError, PydanticValidationError) as e:
            raise ValidationError(f"Malformed MediaList in response: {e}") from e

    async def push_list_entry(self, entry: ListEntry) -> PushResult:
        """Create or update the entry on AniList."""
        variables = {
            "mediaId": entry.media_id,
            "status": entry.status.value,
            "scoreRaw": int(round(entry.score)) if entry.score is not None else 0,
            "progress": entry.progress,
        }
        if entry.remote_id is not None:
            variables["id"] = entry.remote_id

        data = await self._query(SAVE_ENTRY_MUTATION, variables)
        saved = data.get("SaveMediaListEntry")
        try:
            result = PushResult(remote_id=saved["id"], updated_at_remote=_from_unix(saved["updatedAt"]))
        except (KeyError, TypeError, PydanticValidationError) as e:
            raise ValidationError(f"Malformed SaveMediaListEntry response: {e}") from e

        logger.info(f"Updated AniList entry for media {entry.media_id} (id {result.remote_id})")
        return result
