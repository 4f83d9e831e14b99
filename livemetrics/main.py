from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .logging_utils import configure_logging, get_logger
from .machine import LiveMetrics
from .routers import live

logger = get_logger("main")

app = FastAPI(
    title="Gateway Live Metrics",
    version="0.1.0",
    description="Keeps the gateway admin dashboard's telemetry snapshot fresh over SSE with a polling fallback.",
)


@app.middleware("http")
async def disable_caching(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Cache-Control", "no-store")
    return response


def _configure_cors(app: FastAPI, settings: Settings) -> None:
    origins = settings.get_allowed_origins()
    if not origins:
        return

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=600,
    )


def build_live_metrics(settings: Settings) -> LiveMetrics:
    return LiveMetrics(settings.live_metrics_config())


_configure_cors(app, get_settings())


@app.on_event("startup")
async def startup_event():
    settings = get_settings()
    configure_logging(settings)
    live_metrics = build_live_metrics(settings)
    app.state.live_metrics = live_metrics
    live_metrics.start()


@app.on_event("shutdown")
async def shutdown_event():
    live_metrics = getattr(app.state, "live_metrics", None)
    if live_metrics is not None:
        await live_metrics.aclose()
        logger.info("Live metrics client stopped")


@app.get("/health")
async def health() -> dict:
    live_metrics = getattr(app.state, "live_metrics", None)
    if live_metrics is None:
        return {"status": "starting", "state": None, "connected": False}
    return {
        "status": "ok",
        "state": live_metrics.state.value,
        "connected": live_metrics.handle.connected,
    }


app.include_router(live.router)
