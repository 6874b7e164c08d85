"""Main FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

from connectors import build_registry, load_sources  # noqa: E402
from database import async_session_maker, db_write_lock, engine, init_db, is_sqlite  # noqa: E402
from errors import IngestError  # noqa: E402
from schemas import ApiResponse, HealthData  # noqa: E402
from services.invalidation import FeedVersions  # noqa: E402
from services.item_store import ItemStore  # noqa: E402
from services.run_coordinator import RunCoordinator  # noqa: E402
from services.scheduler import get_job_status, start_scheduler, stop_scheduler  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown."""
    await init_db()

    registry = build_registry(load_sources(settings.sources_file))
    store = ItemStore(async_session_maker, write_lock=db_write_lock if is_sqlite() else None)
    versions = FeedVersions()
    coordinator = RunCoordinator(registry, store, versions, session_maker=async_session_maker)

    app.state.registry = registry
    app.state.item_store = store
    app.state.feed_versions = versions
    app.state.coordinator = coordinator
    app.state.scheduler = None
    logging.info(f"Loaded {len(registry)} connectors from {settings.sources_file}")

    if settings.scheduler_enabled:
        app.state.scheduler = start_scheduler(coordinator)
        logging.info("Scheduler enabled and started")
    else:
        logging.info("Scheduler disabled via SCHEDULER_ENABLED=false")

    yield

    if app.state.scheduler is not None:
        stop_scheduler(app.state.scheduler)
    # Let in-flight runs finish writing
    await coordinator.wait_idle()
    await engine.dispose()
    logging.info("Shutdown complete")


API_DESCRIPTION = """
## News Aggregator API

Aggregates items from subreddits, Telegram channels and RSS feeds into one
normalized, filterable, paginated feed.

### Connector Types

| Type | Description |
|------|-------------|
| `rss` | RSS/Atom feeds |
| `reddit` | Subreddit listings |
| `telegram` | Public Telegram channels |

### Cache invalidation

`GET /news` returns the current feed version in `X-Feed-Version` and an
`ETag`. The version grows every time a connector run writes items; cached pages
taken at an older version may be stale.
"""

app = FastAPI(
    title=settings.app_name,
    description=API_DESCRIPTION,
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "news", "description": "Normalized news items from all sources"},
        {"name": "connectors", "description": "Configured connectors and their runs"},
    ],
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag", "X-Feed-Version"],
)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse(success=False, error=message).model_dump(),
    )


@app.exception_handler(IngestError)
async def ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
    )
    return _error_response(422, f"Invalid request: {errors}")


# Import and include routers
from api import connectors, news  # noqa: E402
from api.dependencies import get_coordinator, get_item_store, get_scheduler  # noqa: E402

app.include_router(news.router, prefix=settings.api_prefix, tags=["news"])
app.include_router(connectors.router, prefix=settings.api_prefix, tags=["connectors"])


@app.get("/health", response_model=ApiResponse[HealthData])
async def health_check(
    store: ItemStore = Depends(get_item_store),
    coordinator: RunCoordinator = Depends(get_coordinator),
    scheduler=Depends(get_scheduler),
):
    """Health check endpoint."""
    summary = coordinator.summary()
    return ApiResponse(
        data=HealthData(
            status="healthy",
            connectors=summary["connectors"],
            items=await store.count(),
            feed_version=summary["feed_version"],
            database=settings.get_database_info(),
            scheduler=get_job_status(scheduler),
        )
    )
