from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ShowStatus = Literal["watching", "plan_to_watch", "completed", "on_hold", "dropped"]
NewSeasonTag = Literal["soon", "out"]


class TrackedShowBase(BaseModel):
    external_show_id: int
    title: str
    poster_url: Optional[str] = None
    backdrop_url: Optional[str] = None
    status: ShowStatus = "plan_to_watch"


class TrackedShowCreate(TrackedShowBase):
    pass


class TrackedShowUpdate(BaseModel):
    status: ShowStatus


class TrackedShowResponse(TrackedShowBase):
    id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EnrichedShowResponse(TrackedShowResponse):
    new_season_tag: Optional[NewSeasonTag] = None
    next_episode_air_date: Optional[date] = None
    has_upcoming_episodes_in_current_season: bool = False


class EpisodeRef(BaseModel):
    season: int = Field(ge=0)
    episode: int = Field(ge=0)


class EpisodeBatch(BaseModel):
    episodes: List[EpisodeRef]


class WatchedEpisodesResponse(BaseModel):
    external_show_id: int
    episodes: List[str]
    backfilled: int = 0


class EpisodeResponse(BaseModel):
    id: int
    name: str
    season: int
    number: int
    air_date: Optional[date] = None
    runtime: Optional[int] = None
    summary: Optional[str] = None


class ShowSummaryResponse(BaseModel):
    id: int
    name: str
    language: Optional[str] = None
    genres: List[str] = []
    premiered: Optional[date] = None
    rating: Optional[float] = None
    popularity: float = 0
    poster_url: Optional[str] = None
    poster_original_url: Optional[str] = None
    summary: Optional[str] = None


class ShowDetailResponse(ShowSummaryResponse):
    status: str
    runtime: Optional[int] = None
    ended: Optional[date] = None
    network: Optional[str] = None
    backdrop_url: Optional[str] = None
    number_of_seasons: int = 0
    next_episode: Optional[EpisodeResponse] = None


class SearchResultResponse(BaseModel):
    score: float
    show: ShowSummaryResponse


class DiscoverFallback(BaseModel):
    shows: List[ShowSummaryResponse]
    total_pages: int
    relaxed_filter: str
    relaxed_filter_label: str


class DiscoverResponse(BaseModel):
    shows: List[ShowSummaryResponse]
    total_pages: int
    fallback: Optional[DiscoverFallback] = None


class WatchProviderResponse(BaseModel):
    id: int
    name: str
    logo_url: Optional[str] = None


class WatchProvidersResponse(BaseModel):
    flatrate: List[WatchProviderResponse] = []
    buy: List[WatchProviderResponse] = []
    rent: List[WatchProviderResponse] = []
    link: Optional[str] = None
