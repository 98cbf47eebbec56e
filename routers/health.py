from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse
from typing import Dict, Any
import time, platform, os

router = APIRouter(tags=["meta"])

START_TIME = time.time()


@router.get("/_livez", response_class=PlainTextResponse)
async def livez() -> PlainTextResponse:
    return PlainTextResponse("ok", headers={"Cache-Control": "no-store"})


@router.get("/status")
async def status(request: Request, response: Response) -> Dict[str, Any]:
    """Снимок таймера и репортера (без выполнения каких-либо действий)."""
    response.headers["Cache-Control"] = "no-store"
    state = request.app.state
    cfg = state.config
    reporter = getattr(state, "reporter", None)
    metrics = getattr(state, "metrics", None)
    return {
        "ok": True,
        "timer": state.timer.status().to_public_dict(),
        "reporter": reporter.state.to_public_dict() if reporter is not None else None,
        "counters": metrics.snapshot() if metrics is not None else {},
        "one_shot": cfg.one_shot,
        "paths": {
            "reset": cfg.reset_path,
            "restart": None if cfg.one_shot else cfg.restart_path,
        },
        "uptime_s": int(time.time() - START_TIME),
        "host": platform.node(),
        "pid": os.getpid(),
    }
