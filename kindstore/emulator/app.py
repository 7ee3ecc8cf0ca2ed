"""FastAPI application serving the in-memory Datastore emulator.

Run it with any ASGI server, e.g. ``uvicorn kindstore.emulator.app:app``,
then point clients at it with ``DATASTORE_EMULATOR_HOST=localhost:8000``.
"""

from __future__ import annotations

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from kindstore.core.errors import KindstoreError
from kindstore.core.logging import get_logger
from kindstore.core.metrics import metrics_text
from kindstore.emulator.dependencies import default_store
from kindstore.emulator.routes import router
from kindstore.emulator.store import EmulatorStore, StoreError

logger = get_logger(__name__)


def create_app(store: EmulatorStore | None = None) -> FastAPI:
    """Build an emulator app around ``store`` (the shared default store when omitted)."""
    application = FastAPI(
        title="kindstore emulator",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
    )
    application.state.store = store if store is not None else default_store()
    application.include_router(router, prefix="/v1", tags=["datastore"])

    @application.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.info(
            "request rejected",
            extra={"ctx_path": request.url.path, "ctx_status": exc.status, "ctx_message": exc.message},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_wire())

    @application.exception_handler(KindstoreError)
    async def codec_error_handler(request: Request, exc: KindstoreError) -> JSONResponse:
        return await store_error_handler(request, StoreError(400, "INVALID_ARGUMENT", str(exc)))

    @application.get("/health", tags=["admin"])
    def health() -> dict[str, object]:
        """Simple liveness check."""
        return {"ok": True, "entities": application.state.store.entity_count()}

    @application.get("/metrics", tags=["admin"])
    def metrics() -> Response:
        payload, content_type = metrics_text()
        return Response(content=payload, media_type=content_type)

    return application


app = create_app()


__all__ = ["app", "create_app"]
