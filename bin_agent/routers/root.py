from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/healthz")
async def healthz(request: Request):
    connection = getattr(request.app.state, "connection", None)
    state = getattr(connection, "state", None)
    return {
        "status": "ok",
        "mqtt": state.value if state is not None else "unknown",
    }
