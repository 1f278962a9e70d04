"""ASGI application: Socket.IO sessions plus the FastAPI health surface."""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import socketio
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import RunnerConfig, load_config
from .health import router as health_router
from .hub import RunnerNamespace

logger = structlog.get_logger()


def create_sio(config: RunnerConfig) -> socketio.AsyncServer:
    """Create the Socket.IO server.

    Connections are accepted before the connect handler runs so the initial
    tree can be pushed from it; a rejected handshake is disconnected at once.
    """
    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=config.cors_origins,
        ping_interval=config.ping_interval,
        ping_timeout=config.ping_timeout,
        max_http_buffer_size=config.max_http_buffer_size,
        always_connect=True,
        logger=False,
        engineio_logger=False,
    )


async def idle_monitor(namespace: RunnerNamespace, interval: float) -> None:
    """Background task that flags idle sessions. Idle sessions stay open."""
    while True:
        try:
            await asyncio.sleep(interval)
            namespace.check_idle()
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Error in idle monitor")


def create_app(config: RunnerConfig | None = None) -> socketio.ASGIApp:
    """Build the runner's ASGI application."""
    config = config or load_config()

    sio = create_sio(config)
    namespace = RunnerNamespace(config)
    sio.register_namespace(namespace)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Starting Codexa runner",
            environment=config.environment,
            workspace_dir=config.workspace_dir,
            events=namespace.supported_events,
        )
        if not config.s3_bucket:
            logger.warning("Object storage not configured, remote sync disabled")

        monitor = asyncio.create_task(idle_monitor(namespace, config.idle_check_interval))

        yield

        logger.info("Shutting down Codexa runner", sessions=len(namespace.sessions))

        monitor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await monitor

        async def graceful_shutdown() -> None:
            watchers = [session.watcher for session in namespace.sessions.all()]
            await namespace.close_all()
            await namespace.terminals.shutdown()
            # Syncs already under way get to finish
            await asyncio.gather(
                *(watcher.wait_idle(config.shutdown_timeout) for watcher in watchers)
            )

        try:
            await asyncio.wait_for(graceful_shutdown(), timeout=config.shutdown_timeout)
            logger.info("Graceful shutdown completed")
        except TimeoutError:
            logger.warning("Shutdown timed out, forcing exit", timeout=config.shutdown_timeout)

    api = FastAPI(
        title="Codexa Runner",
        description="Workspace session server: terminals, files and ports over Socket.IO",
        version=__version__,
        lifespan=lifespan,
    )
    api.state.config = config
    api.state.namespace = namespace

    api.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_origin_regex=config.cors_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    api.include_router(health_router)

    return socketio.ASGIApp(sio, other_asgi_app=api)
