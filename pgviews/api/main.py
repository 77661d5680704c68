"""
FastAPI application for the managed view service.

create_app() wires a ViewService onto app.state; the module-level ``app`` is
built from environment configuration for ``uvicorn pgviews.api.main:app``.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pgviews.api.routes.views import router as views_router
from pgviews.core.constants import API_VERSION, CONNECTIONS_FILE, CORS_ORIGINS, DATABASE_URL
from pgviews.core.errors import ViewError
from pgviews.views.connections import ConnectionRegistry
from pgviews.views.persistence import InMemoryViewStore
from pgviews.views.service import ViewService
from pgviews.utils.log_utils import get_logger, setup_logging

logger = get_logger(__name__)


def build_default_service() -> ViewService:
    if DATABASE_URL:
        from pgviews.views.db_persistence import DatabaseViewStore

        store = DatabaseViewStore(DATABASE_URL)
        store.create_tables()
        logger.info("Using database view store")
    else:
        store = InMemoryViewStore()
        logger.info("PGVIEWS_DATABASE_URL not set, using in-memory view store")
    return ViewService(store, ConnectionRegistry.from_yaml(CONNECTIONS_FILE))


def create_app(service: Optional[ViewService] = None) -> FastAPI:
    setup_logging()
    view_service = service or build_default_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        view_service.connections.close_all()

    app = FastAPI(title="pgviews API", version=API_VERSION, lifespan=lifespan)
    app.state.view_service = view_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ViewError)
    async def view_error_handler(request: Request, exc: ViewError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ())[1:]) or None
        payload = {"error": first.get("msg", "invalid request"), "code": "VALIDATION_ERROR"}
        if field:
            payload["field"] = field
        payload["details"] = {"errors": len(errors)}
        return JSONResponse(status_code=400, content=payload)

    @app.get("/")
    def root():
        return {"status": "pgviews API is running", "version": API_VERSION}

    app.include_router(views_router)
    return app


app = create_app()
