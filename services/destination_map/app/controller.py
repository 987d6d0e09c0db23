"""Selection and mode state machine for a destination map session."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field, replace
from urllib.parse import urlencode
from uuid import uuid4

from src.common.logging import get_logger
from src.common.metrics import LOOKUP_DURATION, STALE_RESULTS, TRANSIENT_PURGED

from . import models
from .errors import (
    EmptyName,
    NothingSelected,
    NotVisible,
    PendingEdit,
    RouteNotAllowed,
    Unavailable,
)
from .maps import (
    Coordinate,
    PlaceSearchService,
    RouteResult,
    RoutingService,
    SceneHandle,
    ScenePreviewService,
    TransportType,
    Viewport,
)
from .store import PlaceStore

logger = get_logger(__name__)

SERVICE = "destination_map"


class Mode(str, enum.Enum):
    SEARCH = "search"
    MANUAL_MARKER = "manual_marker"


class MembershipAction(str, enum.Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class PlaceView:
    """Read-only copy of a placemark handed out to renderers."""

    id: int
    name: str
    address: str
    latitude: float
    longitude: float
    destination_id: int | None

    @property
    def is_transient(self) -> bool:
        return self.destination_id is None

    @classmethod
    def of(cls, placemark: models.Placemark) -> "PlaceView":
        return cls(
            id=placemark.id,
            name=placemark.name,
            address=placemark.address,
            latitude=placemark.latitude,
            longitude=placemark.longitude,
            destination_id=placemark.destination_id,
        )


@dataclass(frozen=True)
class RouteRequest:
    target_id: int
    transport: TransportType
    request_id: str = field(default_factory=lambda: uuid4().hex)
    requested: bool = True
    duration: float | None = None
    path: list[Coordinate] | None = None
    unavailable: bool = False

    @property
    def resolved(self) -> bool:
        return self.duration is not None or self.unavailable


@dataclass(frozen=True)
class SearchOutcome:
    placemarks: list[PlaceView]
    unavailable: bool = False


@dataclass(frozen=True)
class Snapshot:
    mode: Mode
    visible: list[PlaceView]
    selected: PlaceView | None
    draft_name: str
    draft_address: str
    draft_changed: bool
    membership_action: str | None
    """``add`` or ``remove``: what :meth:`SelectionController.add_or_remove` would do."""
    can_change_membership: bool
    route: RouteRequest | None
    travel_time: str | None
    preview: SceneHandle | None
    open_in_maps_url: str | None


def format_travel_time(seconds: float) -> str:
    """Abbreviated hours and minutes, e.g. ``1 hr, 5 min``."""

    minutes = int(round(seconds / 60))
    hours, minutes = divmod(minutes, 60)
    if hours and minutes:
        return f"{hours} hr, {minutes} min"
    if hours:
        return f"{hours} hr"
    return f"{minutes} min"


def maps_url(place: PlaceView) -> str:
    query = urlencode({"api": 1, "query": f"{place.latitude},{place.longitude}"})
    return f"https://www.google.com/maps/search/?{query}"


class SelectionController:
    """Mediates map input events into :class:`PlaceStore` mutations.

    One controller serves one open map of one destination. All transitions
    run to completion synchronously; only the collaborator lookups await,
    and their results are re-checked against the current selection before
    they are applied.
    """

    def __init__(
        self,
        store: PlaceStore,
        destination_id: int,
        *,
        search: PlaceSearchService,
        routing: RoutingService,
        preview: ScenePreviewService,
    ) -> None:
        self.store = store
        self.destination = store.get_destination(destination_id)
        self._search = search
        self._routing = routing
        self._preview_service = preview
        self.mode = Mode.SEARCH
        self.selected_id: int | None = None
        self.draft_name = ""
        self.draft_address = ""
        self.route: RouteRequest | None = None
        self.preview: SceneHandle | None = None
        self._preview_token: object | None = None
        self._search_token: object | None = None
        self.user_location: Coordinate | None = None

    # -- session lifecycle -------------------------------------------------

    def open(self) -> None:
        self._purge()
        self._set_selection(None)

    def close(self) -> None:
        self._purge()
        self._set_selection(None)

    # -- selection ---------------------------------------------------------

    def _purge(self) -> int:
        # Results of a search still in flight belong to the purged set.
        self._search_token = None
        count = self.store.purge_transient()
        if count:
            TRANSIENT_PURGED.labels(SERVICE).inc(count)
        return count

    def _set_selection(self, placemark: models.Placemark | None) -> None:
        self.selected_id = placemark.id if placemark is not None else None
        self.draft_name = placemark.name if placemark is not None else ""
        self.draft_address = placemark.address if placemark is not None else ""
        self.route = None
        self.preview = None
        self._preview_token = None

    def _selected(self) -> models.Placemark:
        if self.selected_id is None:
            raise NothingSelected()
        return self.store.get(self.selected_id)

    def visible_set(self) -> list[PlaceView]:
        return [PlaceView.of(p) for p in self.store.visible_set(self.destination)]

    def select(self, placemark_id: int) -> PlaceView:
        for placemark in self.store.visible_set(self.destination):
            if placemark.id == placemark_id:
                self._set_selection(placemark)
                return PlaceView.of(placemark)
        raise NotVisible(placemark_id)

    def dismiss_selection(self) -> None:
        self._set_selection(None)
        if self.mode is Mode.MANUAL_MARKER:
            self._purge()

    # -- modes and input events --------------------------------------------

    def toggle_mode(self) -> Mode:
        self.mode = Mode.SEARCH if self.mode is Mode.MANUAL_MARKER else Mode.MANUAL_MARKER
        self._purge()
        self._set_selection(None)
        logger.info("mode.toggled", mode=self.mode.value)
        return self.mode

    async def submit_search(self, query: str, viewport: Viewport) -> SearchOutcome:
        if self.mode is not Mode.SEARCH:
            logger.debug("search.ignored", mode=self.mode.value)
            return SearchOutcome(placemarks=[])
        token = object()
        self._search_token = token
        start = time.monotonic()
        try:
            candidates = await self._search.search(query, viewport)
        except Unavailable as exc:
            LOOKUP_DURATION.labels(SERVICE, "search", "unavailable").observe(
                time.monotonic() - start
            )
            logger.warning("search.unavailable", query=query, error=str(exc))
            return SearchOutcome(placemarks=[], unavailable=True)
        LOOKUP_DURATION.labels(SERVICE, "search", "ok").observe(
            time.monotonic() - start
        )
        if self._search_token is not token or self.mode is not Mode.SEARCH:
            STALE_RESULTS.labels(SERVICE, "search").inc()
            logger.info("search.discarded", query=query, results=len(candidates))
            return SearchOutcome(placemarks=[])
        created = [
            self.store.create_transient(c.name, c.address, c.latitude, c.longitude)
            for c in candidates
        ]
        logger.info("search.completed", query=query, results=len(created))
        return SearchOutcome(placemarks=[PlaceView.of(p) for p in created])

    def handle_tap(self, coordinate: Coordinate) -> PlaceView | None:
        if self.mode is not Mode.MANUAL_MARKER:
            return None
        placemark = self.store.create_transient(
            "", "", coordinate.latitude, coordinate.longitude
        )
        self._set_selection(placemark)
        return PlaceView.of(placemark)

    def clear_search_results(self) -> int:
        transient_ids = {p.id for p in self.store.transient()}
        count = self._purge()
        if self.selected_id in transient_ids:
            self._set_selection(None)
        return count

    # -- details and membership --------------------------------------------

    def edit_draft(self, name: str, address: str) -> None:
        self._selected()
        self.draft_name = name
        self.draft_address = address

    def _draft_changed(self, placemark: models.Placemark) -> bool:
        return (
            self.draft_name != placemark.name
            or self.draft_address != placemark.address
        )

    def save_draft(self) -> PlaceView:
        placemark = self.store.update_details(
            self._selected().id, self.draft_name, self.draft_address
        )
        self.draft_name = placemark.name
        self.draft_address = placemark.address
        return PlaceView.of(placemark)

    def add_or_remove(self) -> MembershipAction:
        placemark = self._selected()
        if not self.draft_name:
            raise EmptyName()
        if self._draft_changed(placemark):
            raise PendingEdit()
        if self.store.is_member(placemark, self.destination):
            self.store.demote(placemark.id)
            return MembershipAction.REMOVED
        self.store.promote(placemark.id, self.destination)
        return MembershipAction.ADDED

    def set_region(self, viewport: Viewport) -> None:
        self.store.set_region(self.destination, viewport)

    # -- routes and previews -----------------------------------------------

    def update_user_location(self, coordinate: Coordinate) -> None:
        self.user_location = coordinate

    def request_route(self, transport: TransportType) -> RouteRequest:
        placemark = self._selected()
        if placemark.destination is not None:
            raise RouteNotAllowed(placemark.id)
        self.route = RouteRequest(target_id=placemark.id, transport=transport)
        return self.route

    def _is_current(self, request: RouteRequest) -> bool:
        return (
            self.route is not None
            and self.route.request_id == request.request_id
            and self.selected_id == request.target_id
        )

    async def resolve_route(self, request: RouteRequest) -> bool:
        """Resolve ``request``; returns ``False`` if the result was discarded."""

        if not self._is_current(request):
            return self._discard_route(request)
        result: RouteResult | None = None
        if self.user_location is not None:
            target = self.store.get(request.target_id)
            start = time.monotonic()
            try:
                result = await self._routing.route(
                    self.user_location,
                    Coordinate(target.latitude, target.longitude),
                    request.transport,
                )
                outcome = "ok"
            except Unavailable as exc:
                logger.warning(
                    "route.unavailable", target_id=request.target_id, error=str(exc)
                )
                outcome = "unavailable"
            LOOKUP_DURATION.labels(SERVICE, "route", outcome).observe(
                time.monotonic() - start
            )
        if not self._is_current(request):
            return self._discard_route(request)
        if result is None:
            self.route = replace(request, unavailable=True)
        else:
            self.route = replace(request, duration=result.duration, path=result.path)
        return True

    def _discard_route(self, request: RouteRequest) -> bool:
        STALE_RESULTS.labels(SERVICE, "route").inc()
        logger.info("route.discarded", request_id=request.request_id)
        return False

    async def resolve_preview(self) -> SceneHandle | None:
        """Look up street-level imagery for the selection; ``None`` if there is none."""

        target = self._selected()
        token = object()
        self.preview = None
        self._preview_token = token
        start = time.monotonic()
        scene = await self._preview_service.preview(
            Coordinate(target.latitude, target.longitude)
        )
        LOOKUP_DURATION.labels(
            SERVICE, "preview", "ok" if scene is not None else "unavailable"
        ).observe(time.monotonic() - start)
        if self._preview_token is not token or self.selected_id != target.id:
            STALE_RESULTS.labels(SERVICE, "preview").inc()
            logger.info("preview.discarded", target_id=target.id)
            return None
        self.preview = scene
        return scene

    # -- rendering ---------------------------------------------------------

    def snapshot(self) -> Snapshot:
        visible = self.visible_set()
        selected = next((p for p in visible if p.id == self.selected_id), None)
        action: str | None = None
        changed = False
        if selected is not None:
            changed = (
                self.draft_name != selected.name
                or self.draft_address != selected.address
            )
            action = "add" if selected.is_transient else "remove"
        travel_time = None
        if self.route is not None and self.route.duration is not None:
            prefix = "Driving" if self.route.transport is TransportType.DRIVING else "Walking"
            travel_time = f"{prefix} time: {format_travel_time(self.route.duration)}"
        return Snapshot(
            mode=self.mode,
            visible=visible,
            selected=selected,
            draft_name=self.draft_name,
            draft_address=self.draft_address,
            draft_changed=changed,
            membership_action=action,
            can_change_membership=selected is not None
            and bool(self.draft_name)
            and not changed,
            route=self.route,
            travel_time=travel_time,
            preview=self.preview,
            open_in_maps_url=maps_url(selected)
            if selected is not None and selected.is_transient
            else None,
        )
