import json
from typing import Dict
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from sqlalchemy.orm import Session

from src.common.logging import get_logger

from . import deps, schemas
from .controller import RouteRequest, SelectionController, Snapshot
from .errors import (
    DestinationNotFound,
    NotVisible,
    PlaceError,
    PlacemarkNotFound,
)
from .maps import SceneHandle
from .store import PlaceStore

logger = get_logger(__name__)

router = APIRouter()

# Open maps, least recently used first. Each holds its own DB session, so the
# count is capped by ``max_open_sessions``.
_sessions: Dict[str, SelectionController] = {}

_NOT_FOUND = (DestinationNotFound, PlacemarkNotFound, NotVisible)


def _http_error(exc: PlaceError) -> HTTPException:
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def get_controller(session_id: str) -> SelectionController:
    controller = _sessions.get(session_id)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Session not found"
        )
    _sessions[session_id] = _sessions.pop(session_id)
    return controller


def _route_out(route: RouteRequest) -> schemas.RouteOut:
    return schemas.RouteOut(
        request_id=route.request_id,
        target_id=route.target_id,
        transport=route.transport,
        requested=route.requested,
        duration=route.duration,
        path=[schemas.Point(lat=c.latitude, lon=c.longitude) for c in route.path]
        if route.path is not None
        else None,
        unavailable=route.unavailable,
    )


def _scene_out(scene: SceneHandle | None) -> schemas.SceneOut | None:
    if scene is None:
        return None
    return schemas.SceneOut(
        pano_id=scene.pano_id,
        image_url=scene.image_url,
        location=schemas.Point(
            lat=scene.coordinate.latitude, lon=scene.coordinate.longitude
        ),
    )


def _snapshot_out(session_id: str, snap: Snapshot) -> schemas.SnapshotOut:
    placemark = schemas.PlacemarkOut.model_validate
    return schemas.SnapshotOut(
        session_id=session_id,
        mode=snap.mode,
        visible=[placemark(p) for p in snap.visible],
        selected=placemark(snap.selected) if snap.selected is not None else None,
        draft_name=snap.draft_name,
        draft_address=snap.draft_address,
        draft_changed=snap.draft_changed,
        membership_action=snap.membership_action,
        can_change_membership=snap.can_change_membership,
        route=_route_out(snap.route) if snap.route is not None else None,
        travel_time=snap.travel_time,
        preview=_scene_out(snap.preview),
        open_in_maps_url=snap.open_in_maps_url,
    )


async def _send_membership_changed(
    destination_id: int, placemark_id: int, action: str
) -> None:
    settings = deps.get_settings()
    if not settings.kafka_brokers:
        return
    topic = f"destination.placemark.{action}"
    producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_brokers.split(","))
    await producer.start()
    try:
        payload = {"destination_id": destination_id, "placemark_id": placemark_id}
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(f"event.produce:{topic}"):
            await producer.send_and_wait(
                topic, json.dumps(payload).encode(), key=str(destination_id).encode()
            )
    finally:
        await producer.stop()


@router.post(
    "/destinations",
    response_model=schemas.DestinationOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_destination(
    data: schemas.DestinationCreate, db: Session = Depends(deps.get_db)
) -> schemas.DestinationOut:
    destination = PlaceStore(db).create_destination(data.name)
    return schemas.DestinationOut.model_validate(destination)


@router.get("/destinations/{destination_id}", response_model=schemas.DestinationOut)
async def get_destination(
    destination_id: int, db: Session = Depends(deps.get_db)
) -> schemas.DestinationOut:
    try:
        destination = PlaceStore(db).get_destination(destination_id)
    except PlaceError as exc:
        raise _http_error(exc) from exc
    return schemas.DestinationOut.model_validate(destination)


@router.post(
    "/destinations/{destination_id}/sessions",
    response_model=schemas.SessionOpened,
    status_code=status.HTTP_201_CREATED,
)
async def open_session(destination_id: int) -> schemas.SessionOpened:
    db = deps.get_sessionmaker()()
    try:
        controller = SelectionController(
            PlaceStore(db),
            destination_id,
            search=deps.get_place_search(),
            routing=deps.get_routing(),
            preview=deps.get_scene_preview(),
        )
    except PlaceError as exc:
        db.close()
        raise _http_error(exc) from exc
    while _sessions and len(_sessions) >= deps.get_settings().max_open_sessions:
        evicted = next(iter(_sessions))
        logger.info("session.evicted", session_id=evicted)
        await close_session(evicted)
    controller.open()
    session_id = str(uuid4())
    _sessions[session_id] = controller
    logger.info("session.opened", session_id=session_id, destination_id=destination_id)
    return schemas.SessionOpened(session_id=session_id, destination_id=destination_id)


@router.get("/sessions/{session_id}", response_model=schemas.SnapshotOut)
async def get_snapshot(session_id: str) -> schemas.SnapshotOut:
    return _snapshot_out(session_id, get_controller(session_id).snapshot())


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str) -> dict[str, str]:
    controller = _sessions.pop(session_id, None)
    if controller is not None:
        try:
            controller.close()
        finally:
            controller.store.session.close()
    return {"status": "ok"}


@router.post("/sessions/{session_id}/mode/toggle", response_model=schemas.ModeResponse)
async def toggle_mode(session_id: str) -> schemas.ModeResponse:
    return schemas.ModeResponse(mode=get_controller(session_id).toggle_mode())


@router.post("/sessions/{session_id}/search", response_model=schemas.SearchResponse)
async def submit_search(
    session_id: str, data: schemas.SearchRequest
) -> schemas.SearchResponse:
    controller = get_controller(session_id)
    query = data.query.strip()
    if not query:
        return schemas.SearchResponse(placemarks=[])
    outcome = await controller.submit_search(query, data.region.to_viewport())
    return schemas.SearchResponse(
        placemarks=[schemas.PlacemarkOut.model_validate(p) for p in outcome.placemarks],
        unavailable=outcome.unavailable,
    )


@router.post("/sessions/{session_id}/tap", response_model=schemas.SnapshotOut)
async def tap(session_id: str, data: schemas.TapRequest) -> schemas.SnapshotOut:
    controller = get_controller(session_id)
    controller.handle_tap(data.point.to_coordinate())
    return _snapshot_out(session_id, controller.snapshot())


@router.post("/sessions/{session_id}/select", response_model=schemas.SnapshotOut)
async def select(session_id: str, data: schemas.SelectRequest) -> schemas.SnapshotOut:
    controller = get_controller(session_id)
    try:
        controller.select(data.placemark_id)
    except PlaceError as exc:
        raise _http_error(exc) from exc
    return _snapshot_out(session_id, controller.snapshot())


@router.post("/sessions/{session_id}/dismiss", response_model=schemas.SnapshotOut)
async def dismiss(session_id: str) -> schemas.SnapshotOut:
    controller = get_controller(session_id)
    controller.dismiss_selection()
    return _snapshot_out(session_id, controller.snapshot())


@router.post("/sessions/{session_id}/clear", response_model=schemas.ClearResponse)
async def clear_results(session_id: str) -> schemas.ClearResponse:
    return schemas.ClearResponse(purged=get_controller(session_id).clear_search_results())


@router.put("/sessions/{session_id}/draft", response_model=schemas.SnapshotOut)
async def edit_draft(session_id: str, data: schemas.DraftRequest) -> schemas.SnapshotOut:
    controller = get_controller(session_id)
    try:
        controller.edit_draft(data.name, data.address)
    except PlaceError as exc:
        raise _http_error(exc) from exc
    return _snapshot_out(session_id, controller.snapshot())


@router.post("/sessions/{session_id}/draft/save", response_model=schemas.SnapshotOut)
async def save_draft(session_id: str) -> schemas.SnapshotOut:
    controller = get_controller(session_id)
    try:
        controller.save_draft()
    except PlaceError as exc:
        raise _http_error(exc) from exc
    return _snapshot_out(session_id, controller.snapshot())


@router.post(
    "/sessions/{session_id}/membership", response_model=schemas.MembershipResponse
)
async def add_or_remove(session_id: str) -> schemas.MembershipResponse:
    controller = get_controller(session_id)
    placemark_id = controller.selected_id
    try:
        action = controller.add_or_remove()
    except PlaceError as exc:
        raise _http_error(exc) from exc
    assert placemark_id is not None
    await _send_membership_changed(controller.destination.id, placemark_id, action.value)
    return schemas.MembershipResponse(placemark_id=placemark_id, action=action.value)


@router.put("/sessions/{session_id}/region", response_model=schemas.DestinationOut)
async def set_region(session_id: str, data: schemas.Region) -> schemas.DestinationOut:
    controller = get_controller(session_id)
    controller.set_region(data.to_viewport())
    return schemas.DestinationOut.model_validate(controller.destination)


@router.put("/sessions/{session_id}/location")
async def update_location(session_id: str, data: schemas.Point) -> dict[str, str]:
    get_controller(session_id).update_user_location(data.to_coordinate())
    return {"status": "ok"}


@router.post("/sessions/{session_id}/route", response_model=schemas.RouteResponse)
async def request_route(
    session_id: str, data: schemas.RouteRequestIn
) -> schemas.RouteResponse:
    controller = get_controller(session_id)
    try:
        request = controller.request_route(data.transport)
    except PlaceError as exc:
        raise _http_error(exc) from exc
    applied = await controller.resolve_route(request)
    route = controller.route if applied and controller.route is not None else request
    return schemas.RouteResponse(route=_route_out(route), applied=applied)


@router.post("/sessions/{session_id}/preview", response_model=schemas.PreviewResponse)
async def preview(session_id: str) -> schemas.PreviewResponse:
    controller = get_controller(session_id)
    try:
        scene = await controller.resolve_preview()
    except PlaceError as exc:
        raise _http_error(exc) from exc
    return schemas.PreviewResponse(scene=_scene_out(scene))
