from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .controller import Mode
from .maps import Coordinate, Span, TransportType, Viewport


class Point(BaseModel):
    lat: float
    lon: float

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)


class Region(BaseModel):
    center: Point
    latitude_delta: float = Field(gt=0)
    longitude_delta: float = Field(gt=0)

    def to_viewport(self) -> Viewport:
        return Viewport(
            center=self.center.to_coordinate(),
            span=Span(self.latitude_delta, self.longitude_delta),
        )


class DestinationCreate(BaseModel):
    name: str = ""


class PlacemarkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    address: str
    latitude: float
    longitude: float
    destination_id: Optional[int] = None


class DestinationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    latitude_delta: Optional[float] = None
    longitude_delta: Optional[float] = None
    placemarks: List[PlacemarkOut] = []


class SessionOpened(BaseModel):
    session_id: str
    destination_id: int


class SearchRequest(BaseModel):
    query: str
    region: Region


class SearchResponse(BaseModel):
    placemarks: List[PlacemarkOut]
    unavailable: bool = False


class TapRequest(BaseModel):
    point: Point


class SelectRequest(BaseModel):
    placemark_id: int


class DraftRequest(BaseModel):
    name: str
    address: str = ""


class MembershipResponse(BaseModel):
    placemark_id: int
    action: str


class ModeResponse(BaseModel):
    mode: Mode


class ClearResponse(BaseModel):
    purged: int


class RouteRequestIn(BaseModel):
    transport: TransportType = TransportType.DRIVING


class RouteOut(BaseModel):
    request_id: str
    target_id: int
    transport: TransportType
    requested: bool
    duration: Optional[float] = None
    path: Optional[List[Point]] = None
    unavailable: bool = False


class RouteResponse(BaseModel):
    route: RouteOut
    applied: bool


class SceneOut(BaseModel):
    pano_id: str
    image_url: str
    location: Point


class PreviewResponse(BaseModel):
    scene: Optional[SceneOut] = None


class SnapshotOut(BaseModel):
    session_id: str
    mode: Mode
    visible: List[PlacemarkOut]
    selected: Optional[PlacemarkOut] = None
    draft_name: str
    draft_address: str
    draft_changed: bool
    membership_action: Optional[str] = None
    can_change_membership: bool
    route: Optional[RouteOut] = None
    travel_time: Optional[str] = None
    preview: Optional[SceneOut] = None
    open_in_maps_url: Optional[str] = None
