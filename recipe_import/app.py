from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from recipe_import.application import CompletionService, configure_completion_service
from recipe_import.core.logging import configure_logging
from recipe_import.core.settings import Settings, load_settings
from recipe_import.core.store import CompletionStore
from recipe_import.infrastructure import (
    CleanupService,
    HttpStatusBroadcaster,
    InMemoryNoteRepository,
    configure_status_broadcaster,
)
from recipe_import.routes import jobs, notes


def _configure_services(settings: Settings) -> HttpStatusBroadcaster | None:
    http_broadcaster: HttpStatusBroadcaster | None = None
    if settings.status_broadcast_url:
        http_broadcaster = HttpStatusBroadcaster(
            settings.status_broadcast_url,
            timeout=settings.status_broadcast_timeout,
        )
        configure_status_broadcaster(http_broadcaster)

    configure_completion_service(
        CompletionService(
            CompletionStore(),
            InMemoryNoteRepository(),
            cleanup=CleanupService(settings.imports_root),
            ttl_seconds=settings.completion_ttl_seconds,
        )
    )
    return http_broadcaster


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    http_broadcaster = _configure_services(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await CleanupService(settings.imports_root).cleanup_orphaned_import_directories()
        yield
        if http_broadcaster is not None:
            await http_broadcaster.aclose()

    app = FastAPI(title="Recipe Import Queue API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(notes.router, prefix="/api")
    app.include_router(jobs.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Recipe Import Queue API",
                "docs": "/docs",
                "health": "/api/notes",
            }
        )

    return app


app = create_app()
