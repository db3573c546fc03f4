"""FastAPI application hosting the monitor.

The lifespan builds the runtime, seeds and then runs leader election as a
background task.  If that task fails (lock lost, fatal service error) the
``on_failure`` callback is invoked so that the hosting server can exit.

``/health`` always answers 200 for liveness; ``/ready`` answers 503 while
the database is unreachable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from apps_monitor import __version__
from apps_monitor.config import Settings, load_settings
from apps_monitor.log_format import configure_logging
from apps_monitor.runtime import MonitorRuntime, build_runtime, run_monitor
from apps_monitor.state.database import create_tables, ping

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _runtime(request: Request) -> MonitorRuntime:
    return request.app.state.runtime  # type: ignore[no-any-return]


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Return service health, leadership and worker states."""
    runtime = _runtime(request)
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "leader": runtime.leader.is_leader,
        "workers": {},
    }
    if not await ping(runtime.engine):
        result["db"] = "degraded"
    if runtime.orchestrator is not None:
        result["workers"] = {str(owner): state.value for owner, state in runtime.orchestrator.worker_states.items()}
    failure = getattr(request.app.state, "failure", None)
    if failure is not None:
        result["status"] = "failed"
    return result


@router.get("/ready")
async def readiness_probe(request: Request) -> JSONResponse:
    """Readiness probe gated on database connectivity."""
    runtime = _runtime(request)
    if not await ping(runtime.engine):
        return JSONResponse(status_code=503, content={"status": "not_ready", "version": __version__})
    return JSONResponse(status_code=200, content={"status": "ready", "version": __version__})


def create_app(
    settings: Settings | None = None,
    *,
    runtime: MonitorRuntime | None = None,
    on_failure: Callable[[BaseException], None] | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Parameters
    ----------
    settings:
        Loaded from the environment when omitted.
    runtime:
        Pre-built runtime (tests); built from *settings* when omitted.
    on_failure:
        Invoked with the exception when the monitor task fails.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        nonlocal settings, runtime
        settings = settings or (runtime.settings if runtime is not None else load_settings())
        configure_logging(structured=settings.structured_logging, debug=settings.debug)
        runtime = runtime or build_runtime(settings)
        if settings.is_sqlite:
            await create_tables(runtime.engine)

        app.state.runtime = runtime
        app.state.failure = None
        stop = asyncio.Event()
        task = asyncio.create_task(run_monitor(runtime, stop), name="apps-monitor")

        def _on_done(done: asyncio.Task[None]) -> None:
            if done.cancelled():
                return
            exc = done.exception()
            if exc is None:
                return
            app.state.failure = exc
            logger.critical("Monitor failed: %s", exc, exc_info=exc)
            if on_failure is not None:
                on_failure(exc)

        task.add_done_callback(_on_done)
        logger.info("Apps monitor %s started (env=%s)", __version__, settings.env.value)

        yield

        stop.set()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=settings.shutdown_grace_seconds + 5)
        except TimeoutError:
            logger.error("Monitor did not stop in time; cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        except Exception:
            # Already reported by _on_done.
            pass
        await runtime.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Apps Monitor",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(router)
    return app
