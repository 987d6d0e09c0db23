"""Place search, routing and scene preview backed by Google Maps.

The core only sees the small value types and service classes defined here;
the Google client is an implementation detail of each service.
"""

from __future__ import annotations

import asyncio
import enum
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol, Sequence

import googlemaps
import httpx
from googlemaps.convert import decode_polyline
from googlemaps.exceptions import ApiError, Timeout, TransportError

from src.common.logging import get_logger

from . import deps
from .errors import Unavailable

logger = get_logger(__name__)

EARTH_RADIUS_M = 6371000
# Google text search rejects larger bias radii.
MAX_SEARCH_RADIUS_M = 50000

STREET_VIEW_METADATA_URL = "https://maps.googleapis.com/maps/api/streetview/metadata"
STREET_VIEW_IMAGE_URL = "https://maps.googleapis.com/maps/api/streetview"


class TransportType(str, enum.Enum):
    DRIVING = "driving"
    WALKING = "walking"


# Straight-line fallback speeds, metres per minute.
SPEED_M_PER_MIN = {
    TransportType.DRIVING: 1000.0,  # ~60 km/h
    TransportType.WALKING: 83.0,  # ~5 km/h
}


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass(frozen=True)
class Span:
    latitude_delta: float
    longitude_delta: float


@dataclass(frozen=True)
class Viewport:
    """Visible map region: center plus span."""

    center: Coordinate
    span: Span

    def radius_m(self) -> float:
        """Distance from the center to a corner of the region."""

        corner = Coordinate(
            self.center.latitude + self.span.latitude_delta / 2,
            self.center.longitude + self.span.longitude_delta / 2,
        )
        return haversine_m(self.center, corner)


@dataclass(frozen=True)
class PlaceCandidate:
    name: str
    address: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class RouteResult:
    duration: float
    """Travel time in seconds."""
    path: list[Coordinate]


@dataclass(frozen=True)
class SceneHandle:
    pano_id: str
    coordinate: Coordinate
    image_url: str


class PlaceSearchService(Protocol):
    async def search(self, query: str, viewport: Viewport) -> list[PlaceCandidate]:
        ...


class RoutingService(Protocol):
    async def route(
        self, origin: Coordinate, target: Coordinate, transport: TransportType
    ) -> RouteResult:
        ...


class ScenePreviewService(Protocol):
    async def preview(self, coordinate: Coordinate) -> SceneHandle | None:
        ...


def haversine_m(p1: Coordinate, p2: Coordinate) -> float:
    lat1, lon1 = map(math.radians, p1.as_tuple())
    lat2, lon2 = map(math.radians, p2.as_tuple())
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


class GoogleMapsError(Exception):
    """Google Maps request failed."""


class GoogleMapsClient:
    """Wrapper around ``googlemaps.Client`` carrying the configured locale."""

    def __init__(self, settings: deps.Settings) -> None:
        if not settings.google_maps_api_key:
            raise GoogleMapsError("Google Maps API key is missing")
        self._client = googlemaps.Client(
            key=settings.google_maps_api_key,
            timeout=settings.google_maps_timeout,
        )
        self._language = settings.google_maps_language
        self._region = settings.google_maps_region

    def text_search(
        self, query: str, center: Coordinate, radius_m: float
    ) -> list[dict[str, Any]]:
        try:
            response = self._client.places(
                query=query,
                location=center.as_tuple(),
                radius=int(min(max(radius_m, 1.0), MAX_SEARCH_RADIUS_M)),
                language=self._language,
                region=self._region,
            )
        except (ApiError, TransportError, Timeout, ValueError) as exc:
            raise GoogleMapsError("place search failed") from exc
        return list(response.get("results", []))

    def directions(
        self, origin: Coordinate, target: Coordinate, transport: TransportType
    ) -> list[dict[str, Any]]:
        try:
            return self._client.directions(
                origin=origin.as_tuple(),
                destination=target.as_tuple(),
                mode=transport.value,
                language=self._language,
                region=self._region,
            )
        except (ApiError, TransportError, Timeout, ValueError) as exc:
            raise GoogleMapsError("directions request failed") from exc


@lru_cache
def get_maps_client() -> GoogleMapsClient | None:
    """Return a cached Google Maps client, or ``None`` when not configured."""

    settings = deps.get_settings()
    if not settings.google_maps_api_key:
        return None
    try:
        return GoogleMapsClient(settings)
    except (GoogleMapsError, ValueError) as exc:
        logger.error("maps.client_init_failed", error=str(exc))
        return None


def _candidate(result: dict[str, Any]) -> PlaceCandidate | None:
    try:
        location = result["geometry"]["location"]
        latitude = float(location["lat"])
        longitude = float(location["lng"])
    except (KeyError, TypeError, ValueError):
        return None
    return PlaceCandidate(
        name=result.get("name") or "",
        address=result.get("formatted_address") or result.get("vicinity") or "",
        latitude=latitude,
        longitude=longitude,
    )


class GooglePlaceSearch:
    """Text search biased to the visible region."""

    def __init__(self, client: GoogleMapsClient, limit: int = 10) -> None:
        self._client = client
        self._limit = limit

    async def search(self, query: str, viewport: Viewport) -> list[PlaceCandidate]:
        try:
            results = await asyncio.to_thread(
                self._client.text_search, query, viewport.center, viewport.radius_m()
            )
        except GoogleMapsError as exc:
            raise Unavailable(str(exc)) from exc
        candidates = [c for c in map(_candidate, results) if c is not None]
        return candidates[: self._limit]


class UnconfiguredPlaceSearch:
    async def search(self, query: str, viewport: Viewport) -> list[PlaceCandidate]:
        raise Unavailable("place search is not configured")


def _decode_path(route: dict[str, Any]) -> list[Coordinate]:
    points = (route.get("overview_polyline") or {}).get("points")
    if not points:
        return []
    return [Coordinate(p["lat"], p["lng"]) for p in decode_polyline(points)]


class GoogleRouting:
    def __init__(self, client: GoogleMapsClient) -> None:
        self._client = client

    async def route(
        self, origin: Coordinate, target: Coordinate, transport: TransportType
    ) -> RouteResult:
        try:
            response = await asyncio.to_thread(
                self._client.directions, origin, target, transport
            )
        except GoogleMapsError as exc:
            raise Unavailable(str(exc)) from exc
        if not response:
            raise Unavailable("no route between the given points")
        route = response[0]
        legs: Sequence[dict[str, Any]] = route.get("legs", [])
        duration = float(sum(leg.get("duration", {}).get("value", 0) for leg in legs))
        return RouteResult(duration=duration, path=_decode_path(route))


class EstimatedRouting:
    """Straight-line estimate used when no directions backend is configured."""

    async def route(
        self, origin: Coordinate, target: Coordinate, transport: TransportType
    ) -> RouteResult:
        distance = haversine_m(origin, target)
        speed = SPEED_M_PER_MIN[transport]
        return RouteResult(duration=distance / speed * 60, path=[origin, target])


class StreetViewPreview:
    """Street-level imagery lookup via the Street View metadata endpoint."""

    def __init__(
        self,
        api_key: str | None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def preview(self, coordinate: Coordinate) -> SceneHandle | None:
        if not self._api_key:
            return None
        location = f"{coordinate.latitude},{coordinate.longitude}"
        params = {"location": location, "key": self._api_key}
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(STREET_VIEW_METADATA_URL, params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("preview.lookup_failed", location=location, error=str(exc))
            return None
        if data.get("status") != "OK" or not data.get("pano_id"):
            return None
        found = data.get("location") or {}
        pano_id = data["pano_id"]
        return SceneHandle(
            pano_id=pano_id,
            coordinate=Coordinate(
                float(found.get("lat", coordinate.latitude)),
                float(found.get("lng", coordinate.longitude)),
            ),
            image_url=f"{STREET_VIEW_IMAGE_URL}?size=640x320&pano={pano_id}",
        )
