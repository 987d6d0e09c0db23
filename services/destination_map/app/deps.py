from functools import lru_cache
from typing import Generator

from pydantic_settings import BaseSettings
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.common.logging import get_logger
from src.common.settings import SettingsMeta

logger = get_logger(__name__)


class Settings(BaseSettings, metaclass=SettingsMeta):
    database_url: str = "sqlite:///./destination_map.db"
    kafka_brokers: str | None = None
    google_maps_api_key: str | None = None
    google_maps_language: str = "en"
    google_maps_region: str | None = None
    google_maps_timeout: float = 5.0
    search_result_limit: int = 10
    max_open_sessions: int = 100


@lru_cache
def get_settings() -> Settings:
    return Settings()


_engine = None
_SessionLocal: sessionmaker | None = None


def get_sessionmaker() -> sessionmaker:
    global _engine, _SessionLocal
    if _SessionLocal is None:
        settings = get_settings()
        connect_args: dict[str, object] = {}
        kwargs: dict[str, object] = {"future": True}
        if settings.database_url.endswith(":memory:"):
            kwargs["poolclass"] = StaticPool
            connect_args["check_same_thread"] = False
        _engine = create_engine(
            settings.database_url, connect_args=connect_args, **kwargs
        )
        _SessionLocal = sessionmaker(
            bind=_engine, autoflush=False, autocommit=False, expire_on_commit=False
        )
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    session_local = get_sessionmaker()
    db = session_local()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    from . import models

    _ = get_sessionmaker()
    assert _engine is not None
    models.Base.metadata.create_all(bind=_engine)


def get_place_search():
    """Return the place search collaborator for the current settings."""

    from .maps import GooglePlaceSearch, UnconfiguredPlaceSearch, get_maps_client

    client = get_maps_client()
    if client is None:
        return UnconfiguredPlaceSearch()
    return GooglePlaceSearch(client, limit=get_settings().search_result_limit)


def get_routing():
    """Google directions when a key is configured, a straight-line estimate otherwise."""

    from .maps import EstimatedRouting, GoogleRouting, get_maps_client

    client = get_maps_client()
    if client is None:
        logger.info("routing.fallback", reason="no google maps client")
        return EstimatedRouting()
    return GoogleRouting(client)


def get_scene_preview():
    from .maps import StreetViewPreview

    settings = get_settings()
    return StreetViewPreview(
        api_key=settings.google_maps_api_key,
        timeout=settings.google_maps_timeout,
    )
