from __future__ import annotations

import time
from typing import Dict

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/status")
async def status_endpoint(request: Request) -> Dict[str, str]:
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    uptime = max(time.monotonic() - started_at, 0.0)
    return {
        "uptime": f"{uptime}",
        "version": request.app.state.version,
    }
