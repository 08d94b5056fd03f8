"""
app.py: FastAPI application factory and arbitration lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the control plane, cache, policy, quota, preemption and controller
services, then runs the two background loops for the lifetime of the app.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app
"""

from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from arbitrator.controllers.status_controller import router as status_router
from arbitrator.domain.constraints import build_arbitration_config, validate_arbitration_config
from arbitrator.repository.control_plane import ControlPlane, KubernetesControlPlane
from arbitrator.services.cache_service import ClusterStateCache
from arbitrator.services.controller_service import ArbitrationController
from arbitrator.services.policy_service import get_policy
from arbitrator.services.preemption_service import PreemptionService
from arbitrator.services.quota_service import QuotaService
from arbitrator.utils.config import Settings, get_settings
from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)

THREAD_JOIN_TIMEOUT_SECONDS = 10.0


def create_app(
    settings: Optional[Settings] = None,
    control_plane: Optional[ControlPlane] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Configuration and the allocation policy are validated here so a bad
    setting fails before the server binds. The control plane is only
    contacted from the lifespan, so importing this module never needs a
    cluster.
    """
    settings = settings or get_settings()
    config = build_arbitration_config(settings)
    validate_arbitration_config(config)
    policy = get_policy(settings.allocation_policy)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start background loops before accepting requests; stop them on shutdown."""
        _startup(app, control_plane, policy)
        try:
            yield
        finally:
            _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(status_router)

    app.state.settings = settings
    app.state.config = config
    app.state.cache = None
    app.state.controller = None

    return app


def _startup(app: FastAPI, control_plane: Optional[ControlPlane], policy) -> None:
    """
    Startup sequence. Any failure here aborts the process.

    Order matters:
      1. The queue CRD must be registered before queues can be listed.
      2. The cache must complete its initial list before the controller runs,
         otherwise the first cycle would publish shares for an empty cluster.
      3. Ingestion and reconciliation threads start last.
    """
    settings: Settings = app.state.settings
    config = app.state.config
    control_plane = control_plane or KubernetesControlPlane(settings)

    if settings.register_queue_crd:
        logger.info("Startup: registering queue CRD")
        control_plane.ensure_queue_crd()

    cache = ClusterStateCache(control_plane, settings=settings, config=config)
    logger.info("Startup: initial cluster state sync")
    cache.sync()

    controller = ArbitrationController(
        cache=cache,
        policy=policy,
        quota_service=QuotaService(control_plane, settings=settings, config=config),
        preemption_service=PreemptionService(control_plane),
        control_plane=control_plane,
        settings=settings,
        config=config,
    )

    stop_event = threading.Event()
    threads = [
        threading.Thread(target=cache.run, args=(stop_event,), name="cache-ingestion", daemon=True),
        threading.Thread(target=controller.run, args=(stop_event,), name="arbitration-controller", daemon=True),
    ]
    for thread in threads:
        thread.start()

    app.state.control_plane = control_plane
    app.state.cache = cache
    app.state.controller = controller
    app.state.stop_event = stop_event
    app.state.threads = threads
    logger.info("Startup complete, arbitration running")


def _shutdown(app: FastAPI) -> None:
    stop_event: Optional[threading.Event] = getattr(app.state, "stop_event", None)
    if stop_event is None:
        return
    logger.info("Shutdown: stopping background loops")
    stop_event.set()
    for thread in getattr(app.state, "threads", []):
        thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
    logger.info("Shutdown complete")


# Module-level app object for uvicorn
app = create_app()
