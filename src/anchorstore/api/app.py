from __future__ import annotations

import os

from fastapi import APIRouter, FastAPI

from anchorstore.api.middleware import RequestLogMiddleware, RequestSizeLimitMiddleware
from anchorstore.api.routes import router as v1_router
from anchorstore.runtime import Runtime
from anchorstore.runtime import build_runtime as _build_runtime
from anchorstore.structured_logging import configure_structured_logging


def build_runtime() -> Runtime:
    """Build the publish/read runtime from configuration.

    This wrapper exists so tests can monkeypatch `anchorstore.api.app.build_runtime`
    without reaching into the runtime module.
    """
    return _build_runtime()


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): load configuration and attach app.state.runtime
      - False: no runtime; tests attach one themselves
    """
    mode = os.environ.get("ANCHORSTORE_MODE", "prod").strip().lower()
    configure_structured_logging()

    if mode == "prod":
        app = FastAPI(title="anchorstore", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="anchorstore")

    app.state.runtime = build_runtime() if boot_runtime else None

    # Last added is outermost.
    app.add_middleware(RequestLogMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware)

    api = APIRouter()
    api.include_router(v1_router, prefix="/v1")
    app.include_router(api)
    return app
