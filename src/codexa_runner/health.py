"""Health check endpoints."""

import time
from datetime import UTC, datetime
from typing import Any

import psutil
from fastapi import APIRouter, Request

from . import __version__

router = APIRouter(tags=["health"])

_STARTED_AT = time.monotonic()
_PROCESS = psutil.Process()


@router.get("/")
async def root() -> dict[str, str]:
    return {"service": "codexa-runner", "version": __version__}


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check with process uptime and resource usage."""
    memory = _PROCESS.memory_info()
    namespace = getattr(request.app.state, "namespace", None)

    return {
        "status": "healthy",
        "service": "runner",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        "uptime": round(time.monotonic() - _STARTED_AT, 3),
        "memory": {
            "rss": memory.rss,
            "vms": memory.vms,
            "percent": round(_PROCESS.memory_percent(), 2),
        },
        "cpu_percent": _PROCESS.cpu_percent(interval=None),
        "sessions": len(namespace.sessions) if namespace else 0,
        "terminals": namespace.terminals.session_info()["session_count"] if namespace else 0,
    }


@router.get("/ready")
async def readiness_check() -> dict[str, str]:
    """Readiness check endpoint."""
    return {"status": "ready", "service": "runner"}
