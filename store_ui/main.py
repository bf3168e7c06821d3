"""store-ui FastAPI application.

Builds the HTTP surface: the liveness probe at the configured health path,
readiness and info endpoints, and Prometheus metrics.
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from store_ui import __version__
from store_ui.api.routes import health, router
from store_ui.core.config import Settings
from store_ui.metrics.prometheus import metrics_router
from store_ui.models.schemas import Health
from store_ui.services.lifecycle import Lifecycle
from store_ui.services.registration import Registrar


def create_app(
    settings: Settings,
    lifecycle: Optional[Lifecycle] = None,
    registrar: Optional[Registrar] = None,
) -> FastAPI:
    """Create the application and attach lifecycle collaborators to ``app.state``."""
    app = FastAPI(title=settings.registration.service_name, version=__version__)
    app.state.settings = settings
    app.state.lifecycle = lifecycle or Lifecycle()
    app.state.registrar = registrar

    app.add_api_route(
        settings.registration.health_path,
        health,
        methods=["GET"],
        response_model=Health,
        summary="Liveness probe",
    )
    app.include_router(router)
    app.include_router(metrics_router)
    return app
