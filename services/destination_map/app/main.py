from fastapi import FastAPI

from src.common.logging import setup_logging
from src.common.metrics import setup_metrics
from src.common.settings import settings
from src.common.telemetry import setup_otel

from . import api, deps
from .api import router

setup_logging(
    "destination_map", settings.log_level, json_output=settings.log_json
)

app = FastAPI(title="destination_map")
setup_metrics(app, "destination_map")
setup_otel(app, "destination_map", endpoint=settings.otel_exporter_otlp_endpoint)


@app.on_event("startup")
async def on_startup() -> None:
    deps.init_db()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    # Open maps go away with the process; their transient results go too.
    for session_id in list(api._sessions):
        await api.close_session(session_id)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
async def readyz() -> dict[str, str]:
    return {"status": "ready"}


app.include_router(router)
