import asyncio
from typing import Iterator

import pytest

from services.destination_map.app import deps
from services.destination_map.app.controller import (
    MembershipAction,
    Mode,
    SelectionController,
    format_travel_time,
)
from services.destination_map.app.errors import (
    EmptyName,
    NothingSelected,
    NotVisible,
    PendingEdit,
    RouteNotAllowed,
    Unavailable,
)
from services.destination_map.app.maps import (
    Coordinate,
    PlaceCandidate,
    RouteResult,
    SceneHandle,
    Span,
    TransportType,
    Viewport,
)
from services.destination_map.app.store import PlaceStore

PARIS = Viewport(Coordinate(48.8566, 2.3522), Span(0.05, 0.05))
CAFES = [
    PlaceCandidate("Cafe de Flore", "172 Bd Saint-Germain", 48.854, 2.3325),
    PlaceCandidate("Les Deux Magots", "6 Pl. Saint-Germain des Pres", 48.854, 2.333),
    PlaceCandidate("Cafe Kitsune", "51 Gal de Montpensier", 48.8651, 2.3372),
]


class FakeSearch:
    def __init__(self, candidates: list[PlaceCandidate], fail: bool = False) -> None:
        self.candidates = candidates
        self.fail = fail
        self.calls: list[tuple[str, Viewport]] = []

    async def search(self, query: str, viewport: Viewport) -> list[PlaceCandidate]:
        self.calls.append((query, viewport))
        if self.fail:
            raise Unavailable("offline")
        return list(self.candidates)


class GatedRouting:
    """Routing stub whose answers are held until ``gate`` is set."""

    def __init__(self, duration: float = 3900.0, fail: bool = False) -> None:
        self.gate = asyncio.Event()
        self.gate.set()
        self.duration = duration
        self.fail = fail
        self.calls: list[TransportType] = []

    async def route(
        self, origin: Coordinate, target: Coordinate, transport: TransportType
    ) -> RouteResult:
        self.calls.append(transport)
        await self.gate.wait()
        if self.fail:
            raise Unavailable("no route")
        return RouteResult(duration=self.duration, path=[origin, target])


class GatedSearch:
    """Search stub holding each query's answer until its gate is set."""

    def __init__(self, results: dict[str, list[PlaceCandidate]]) -> None:
        self.results = results
        self.gates = {query: asyncio.Event() for query in results}

    async def search(self, query: str, viewport: Viewport) -> list[PlaceCandidate]:
        await self.gates[query].wait()
        return list(self.results[query])


class GatedPreview:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.gate.set()

    async def preview(self, coordinate: Coordinate) -> SceneHandle | None:
        await self.gate.wait()
        return SceneHandle("pano-1", coordinate, "https://example.test/pano-1.jpg")


@pytest.fixture()
def store(monkeypatch: pytest.MonkeyPatch) -> Iterator[PlaceStore]:
    class TestSettings(deps.Settings):
        database_url = "sqlite:///:memory:"

    monkeypatch.setattr(deps, "get_settings", lambda: TestSettings())
    deps._engine = None  # type: ignore[attr-defined]
    deps._SessionLocal = None  # type: ignore[attr-defined]
    deps.init_db()

    session = deps.get_sessionmaker()()
    yield PlaceStore(session)
    session.close()


@pytest.fixture()
def controller(store: PlaceStore) -> SelectionController:
    destination = store.create_destination("Paris")
    controller = SelectionController(
        store,
        destination.id,
        search=FakeSearch(CAFES),
        routing=GatedRouting(),
        preview=GatedPreview(),
    )
    controller.open()
    return controller


def _add_member(controller: SelectionController, name: str = "Louvre") -> int:
    placemark = controller.store.create_transient(name, "Rue de Rivoli", 48.8606, 2.3376)
    controller.store.promote(placemark.id, controller.destination)
    return placemark.id


def test_initial_state_is_search_without_selection(
    controller: SelectionController,
) -> None:
    snap = controller.snapshot()
    assert snap.mode is Mode.SEARCH
    assert snap.selected is None
    assert snap.visible == []
    assert snap.route is None


def test_open_purges_leftover_transients(store: PlaceStore) -> None:
    destination = store.create_destination("Paris")
    store.create_transient("left over", "", 1.0, 1.0)

    controller = SelectionController(
        store,
        destination.id,
        search=FakeSearch([]),
        routing=GatedRouting(),
        preview=GatedPreview(),
    )
    controller.open()

    assert controller.visible_set() == []


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_search_then_toggle_clears_results(
    controller: SelectionController, anyio_backend: str
) -> None:
    outcome = await controller.submit_search("cafe", PARIS)

    assert len(outcome.placemarks) == 3
    visible = controller.visible_set()
    assert len(visible) == 3
    assert all(p.is_transient for p in visible)
    assert controller._search.calls == [("cafe", PARIS)]  # type: ignore[attr-defined]

    assert controller.toggle_mode() is Mode.MANUAL_MARKER
    assert controller.visible_set() == []
    assert controller.selected_id is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_search_unavailable_creates_nothing(
    store: PlaceStore, anyio_backend: str
) -> None:
    destination = store.create_destination("Paris")
    controller = SelectionController(
        store,
        destination.id,
        search=FakeSearch(CAFES, fail=True),
        routing=GatedRouting(),
        preview=GatedPreview(),
    )

    outcome = await controller.submit_search("cafe", PARIS)

    assert outcome.unavailable
    assert outcome.placemarks == []
    assert controller.visible_set() == []


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_search_is_ignored_in_manual_mode(
    controller: SelectionController, anyio_backend: str
) -> None:
    controller.toggle_mode()

    outcome = await controller.submit_search("cafe", PARIS)

    assert outcome.placemarks == []
    assert not outcome.unavailable
    assert controller._search.calls == []  # type: ignore[attr-defined]


def test_tap_in_manual_mode_creates_and_selects(
    controller: SelectionController,
) -> None:
    controller.toggle_mode()

    place = controller.handle_tap(Coordinate(48.85, 2.35))

    assert place is not None
    assert place.name == "" and place.address == ""
    assert place.is_transient
    assert controller.selected_id == place.id
    assert [p.id for p in controller.visible_set()] == [place.id]

    controller.dismiss_selection()

    assert controller.selected_id is None
    assert controller.visible_set() == []


def test_tap_in_search_mode_is_ignored(controller: SelectionController) -> None:
    assert controller.handle_tap(Coordinate(48.85, 2.35)) is None
    assert controller.visible_set() == []
    assert controller.selected_id is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_dismiss_in_search_mode_keeps_results(
    controller: SelectionController, anyio_backend: str
) -> None:
    outcome = await controller.submit_search("cafe", PARIS)
    controller.select(outcome.placemarks[0].id)

    controller.dismiss_selection()

    assert controller.selected_id is None
    assert len(controller.visible_set()) == 3


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_select_invisible_leaves_state_unchanged(
    controller: SelectionController, anyio_backend: str
) -> None:
    outcome = await controller.submit_search("cafe", PARIS)
    first = outcome.placemarks[0]
    controller.select(first.id)
    controller.edit_draft("draft", "")
    before = controller.snapshot()

    with pytest.raises(NotVisible):
        controller.select(10_000)

    assert controller.snapshot() == before


def test_select_other_destinations_member_is_not_visible(
    controller: SelectionController,
) -> None:
    rome = controller.store.create_destination("Rome")
    colosseum = controller.store.create_transient("Colosseum", "", 41.89, 12.49)
    controller.store.promote(colosseum.id, rome)

    with pytest.raises(NotVisible):
        controller.select(colosseum.id)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
@pytest.mark.parametrize("manual", [False, True])
async def test_toggle_always_resets_selection_and_transients(
    controller: SelectionController, manual: bool, anyio_backend: str
) -> None:
    member_id = _add_member(controller)
    if manual:
        controller.toggle_mode()
        controller.handle_tap(Coordinate(48.85, 2.35))
    else:
        await controller.submit_search("cafe", PARIS)
        controller.select(member_id)

    controller.toggle_mode()

    assert controller.selected_id is None
    assert [p.id for p in controller.visible_set()] == [member_id]


def test_add_requires_selection(controller: SelectionController) -> None:
    with pytest.raises(NothingSelected):
        controller.add_or_remove()


def test_manual_marker_needs_name_before_add(controller: SelectionController) -> None:
    controller.toggle_mode()
    place = controller.handle_tap(Coordinate(48.85, 2.35))
    assert place is not None

    with pytest.raises(EmptyName):
        controller.add_or_remove()

    controller.edit_draft("Picnic spot", "Champ de Mars")
    assert controller.snapshot().draft_changed
    assert not controller.snapshot().can_change_membership
    with pytest.raises(PendingEdit):
        controller.add_or_remove()

    controller.save_draft()
    assert controller.snapshot().can_change_membership
    assert controller.snapshot().membership_action == "add"
    assert controller.add_or_remove() is MembershipAction.ADDED

    assert controller.destination.placemarks[0].name == "Picnic spot"
    controller.dismiss_selection()
    assert [p.name for p in controller.visible_set()] == ["Picnic spot"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_add_then_remove_search_result(
    controller: SelectionController, anyio_backend: str
) -> None:
    outcome = await controller.submit_search("cafe", PARIS)
    place = outcome.placemarks[1]
    controller.select(place.id)

    assert controller.add_or_remove() is MembershipAction.ADDED
    assert controller.snapshot().membership_action == "remove"
    assert controller.add_or_remove() is MembershipAction.REMOVED

    assert controller.destination.placemarks == []
    assert len(controller.visible_set()) == 3


def test_save_draft_trims_and_reloads(controller: SelectionController) -> None:
    member_id = _add_member(controller)
    controller.select(member_id)

    controller.edit_draft("  Musee du Louvre ", " 75001 Paris ")
    view = controller.save_draft()

    assert view.name == "Musee du Louvre"
    assert controller.draft_name == "Musee du Louvre"
    assert controller.draft_address == "75001 Paris"
    assert not controller.snapshot().draft_changed


def test_edit_draft_requires_selection(controller: SelectionController) -> None:
    with pytest.raises(NothingSelected):
        controller.edit_draft("x", "y")


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_clear_results_drops_transient_selection(
    controller: SelectionController, anyio_backend: str
) -> None:
    member_id = _add_member(controller)
    outcome = await controller.submit_search("cafe", PARIS)
    controller.select(outcome.placemarks[0].id)

    assert controller.clear_search_results() == 3

    assert controller.selected_id is None
    assert controller.mode is Mode.SEARCH
    assert [p.id for p in controller.visible_set()] == [member_id]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_clear_results_keeps_member_selection(
    controller: SelectionController, anyio_backend: str
) -> None:
    member_id = _add_member(controller)
    await controller.submit_search("cafe", PARIS)
    controller.select(member_id)

    controller.clear_search_results()

    assert controller.selected_id == member_id


def test_route_rejected_for_member(controller: SelectionController) -> None:
    member_id = _add_member(controller)
    controller.select(member_id)

    with pytest.raises(RouteNotAllowed):
        controller.request_route(TransportType.DRIVING)
    assert controller.route is None


def test_route_requires_selection(controller: SelectionController) -> None:
    with pytest.raises(NothingSelected):
        controller.request_route(TransportType.WALKING)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_route_for_transient_resolves(
    controller: SelectionController, anyio_backend: str
) -> None:
    outcome = await controller.submit_search("cafe", PARIS)
    controller.select(outcome.placemarks[0].id)
    controller.update_user_location(Coordinate(48.8584, 2.2945))

    request = controller.request_route(TransportType.WALKING)
    assert request.requested
    assert not request.resolved

    assert await controller.resolve_route(request) is True

    snap = controller.snapshot()
    assert snap.route is not None
    assert snap.route.duration == 3900.0
    assert snap.route.path is not None and len(snap.route.path) == 2
    assert snap.travel_time == "Walking time: 1 hr, 5 min"
    assert snap.open_in_maps_url is not None
    assert "48.854" in snap.open_in_maps_url


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_late_route_result_is_discarded(
    controller: SelectionController, anyio_backend: str
) -> None:
    routing: GatedRouting = controller._routing  # type: ignore[assignment]
    outcome = await controller.submit_search("cafe", PARIS)
    first, second = outcome.placemarks[0], outcome.placemarks[1]
    controller.select(first.id)
    controller.update_user_location(Coordinate(48.8584, 2.2945))

    routing.gate.clear()
    request = controller.request_route(TransportType.WALKING)
    task = asyncio.create_task(controller.resolve_route(request))
    await asyncio.sleep(0)
    assert routing.calls == [TransportType.WALKING]

    controller.select(second.id)
    routing.gate.set()

    assert await task is False
    assert controller.selected_id == second.id
    assert controller.route is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_superseded_route_request_is_discarded(
    controller: SelectionController, anyio_backend: str
) -> None:
    routing: GatedRouting = controller._routing  # type: ignore[assignment]
    outcome = await controller.submit_search("cafe", PARIS)
    controller.select(outcome.placemarks[0].id)
    controller.update_user_location(Coordinate(48.8584, 2.2945))

    routing.gate.clear()
    walking = controller.request_route(TransportType.WALKING)
    task = asyncio.create_task(controller.resolve_route(walking))
    await asyncio.sleep(0)
    driving = controller.request_route(TransportType.DRIVING)
    routing.gate.set()

    assert await task is False
    assert await controller.resolve_route(driving) is True
    assert controller.route is not None
    assert controller.route.transport is TransportType.DRIVING
    assert controller.snapshot().travel_time == "Driving time: 1 hr, 5 min"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_route_without_location_is_unavailable(
    controller: SelectionController, anyio_backend: str
) -> None:
    outcome = await controller.submit_search("cafe", PARIS)
    controller.select(outcome.placemarks[0].id)

    request = controller.request_route(TransportType.DRIVING)

    assert await controller.resolve_route(request) is True
    assert controller.route is not None
    assert controller.route.unavailable
    assert controller.route.duration is None
    assert controller.snapshot().travel_time is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_route_failure_is_unavailable(
    store: PlaceStore, anyio_backend: str
) -> None:
    destination = store.create_destination("Paris")
    controller = SelectionController(
        store,
        destination.id,
        search=FakeSearch(CAFES),
        routing=GatedRouting(fail=True),
        preview=GatedPreview(),
    )
    outcome = await controller.submit_search("cafe", PARIS)
    controller.select(outcome.placemarks[0].id)
    controller.update_user_location(Coordinate(48.8584, 2.2945))

    request = controller.request_route(TransportType.DRIVING)

    assert await controller.resolve_route(request) is True
    assert controller.route is not None and controller.route.unavailable


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_preview_resolves_for_current_selection(
    controller: SelectionController, anyio_backend: str
) -> None:
    member_id = _add_member(controller)
    controller.select(member_id)

    scene = await controller.resolve_preview()

    assert scene is not None
    assert controller.snapshot().preview == scene


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_late_preview_is_discarded(
    controller: SelectionController, anyio_backend: str
) -> None:
    preview: GatedPreview = controller._preview_service  # type: ignore[assignment]
    outcome = await controller.submit_search("cafe", PARIS)
    controller.select(outcome.placemarks[0].id)

    preview.gate.clear()
    task = asyncio.create_task(controller.resolve_preview())
    await asyncio.sleep(0)
    controller.select(outcome.placemarks[1].id)
    preview.gate.set()

    assert await task is None
    assert controller.preview is None


def test_set_region_updates_destination(controller: SelectionController) -> None:
    controller.set_region(PARIS)

    assert controller.destination.latitude == 48.8566
    assert controller.destination.latitude_delta == 0.05


def test_close_purges_transients(controller: SelectionController) -> None:
    member_id = _add_member(controller)
    controller.toggle_mode()
    controller.handle_tap(Coordinate(48.85, 2.35))

    controller.close()

    assert controller.selected_id is None
    assert [p.id for p in controller.visible_set()] == [member_id]


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0 min"), (59, "1 min"), (3600, "1 hr"), (3900, "1 hr, 5 min"), (7260, "2 hr, 1 min")],
)
def test_format_travel_time(seconds: float, expected: str) -> None:
    assert format_travel_time(seconds) == expected


def _gated_controller(store: PlaceStore, search: GatedSearch) -> SelectionController:
    destination = store.create_destination("Paris")
    controller = SelectionController(
        store,
        destination.id,
        search=search,
        routing=GatedRouting(),
        preview=GatedPreview(),
    )
    controller.open()
    return controller


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_late_search_after_toggle_is_discarded(
    store: PlaceStore, anyio_backend: str
) -> None:
    search = GatedSearch({"cafe": CAFES})
    controller = _gated_controller(store, search)

    task = asyncio.create_task(controller.submit_search("cafe", PARIS))
    await asyncio.sleep(0)
    assert controller.toggle_mode() is Mode.MANUAL_MARKER
    search.gates["cafe"].set()

    outcome = await task
    assert outcome.placemarks == []
    assert controller.visible_set() == []
    assert controller.mode is Mode.MANUAL_MARKER


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_superseded_search_is_discarded(
    store: PlaceStore, anyio_backend: str
) -> None:
    search = GatedSearch({"old": CAFES[:2], "new": CAFES[2:]})
    controller = _gated_controller(store, search)

    old = asyncio.create_task(controller.submit_search("old", PARIS))
    await asyncio.sleep(0)
    search.gates["new"].set()
    newer = await controller.submit_search("new", PARIS)
    search.gates["old"].set()

    assert (await old).placemarks == []
    assert [p.name for p in newer.placemarks] == ["Cafe Kitsune"]
    assert [p.name for p in controller.visible_set()] == ["Cafe Kitsune"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_search_in_flight_during_clear_is_discarded(
    store: PlaceStore, anyio_backend: str
) -> None:
    search = GatedSearch({"cafe": CAFES})
    controller = _gated_controller(store, search)

    task = asyncio.create_task(controller.submit_search("cafe", PARIS))
    await asyncio.sleep(0)
    controller.clear_search_results()
    search.gates["cafe"].set()

    assert (await task).placemarks == []
    assert controller.visible_set() == []
