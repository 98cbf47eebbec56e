# routers/switch.py
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from services.watchdog_timer import WatchdogTimer
from utils.structured_logging import get_logger
from utils.watchdog_config import WatchdogConfig

LOG = get_logger("watchdog.switch")


# ──────────────────────────────────────────────────────────────────────────────
# Templates
# ──────────────────────────────────────────────────────────────────────────────
def _detect_templates_dir() -> str:
    base_dir = Path(__file__).resolve().parents[1]
    for p in [
        base_dir / "src" / "templates",
        base_dir / "templates",
        Path.cwd() / "templates",
    ]:
        if p.is_dir():
            return str(p)
    return str(base_dir / "src" / "templates")


templates = Jinja2Templates(directory=_detect_templates_dir())

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}


def _rfc3339(ts: Optional[datetime]) -> str:
    return ts.isoformat(timespec="seconds") if ts else "-"


def _timer(request: Request) -> WatchdogTimer:
    return request.app.state.timer


def _config(request: Request) -> WatchdogConfig:
    return request.app.state.config


def _short_circuit(cfg: WatchdogConfig) -> Optional[Response]:
    """redirect-режим важнее stealth: 302 на заданный URL; stealth — как будто маршрута нет."""
    if cfg.redirect_url:
        return RedirectResponse(cfg.redirect_url, status_code=302, headers=_NO_CACHE_HEADERS)
    if cfg.stealth:
        raise HTTPException(status_code=404, detail="Not Found")
    return None


def _render(request: Request, name: str, ctx: Dict[str, Any]) -> HTMLResponse:
    response = templates.TemplateResponse(request, name, ctx)
    for k, v in _NO_CACHE_HEADERS.items():
        response.headers[k] = v
    return response


# ──────────────────────────────────────────────────────────────────────────────
# Handlers
# ──────────────────────────────────────────────────────────────────────────────
async def reset_timer(request: Request, subpath: str = "") -> Response:
    """Продлить срок. Команду не выполняет и канал результатов не трогает."""
    cfg = _config(request)
    timer = _timer(request)
    now = datetime.now().astimezone()
    accepted = timer.reset()

    short = _short_circuit(cfg)
    if short is not None:
        return short

    return _render(
        request,
        "reset.html",
        {
            "title": cfg.reset_path,
            "accepted": accepted,
            "now": _rfc3339(now),
            "expires_at": _rfc3339(timer.expires_at),
            "command": timer.task.command_line,
            "reset_path": cfg.reset_path,
            "restart_path": None if cfg.one_shot else cfg.restart_path,
        },
    )


async def restart_timer(request: Request, subpath: str = "") -> Response:
    """Новый цикл всегда, даже если текущий ещё взведён."""
    cfg = _config(request)
    timer = _timer(request)
    now = datetime.now().astimezone()
    cycle = timer.arm()
    LOG.info("Restart requested via %s -> cycle %d", request.url.path, cycle)

    short = _short_circuit(cfg)
    if short is not None:
        return short

    return _render(
        request,
        "restart.html",
        {
            "title": cfg.restart_path,
            "now": _rfc3339(now),
            "expires_at": _rfc3339(timer.expires_at),
            "command": timer.task.command_line,
            "reset_path": cfg.reset_path,
        },
    )


def build_switch_router(cfg: WatchdogConfig) -> APIRouter:
    """
    Пути берутся из конфигурации (нормализованы к виду /path/).
    Совпадает и всё поддерево: /reset/anything. В one-shot режиме restart не регистрируется.
    """
    router = APIRouter(tags=["switch"])
    router.add_api_route(
        cfg.reset_path + "{subpath:path}",
        reset_timer,
        methods=["GET", "POST"],
        name="reset_timer",
        include_in_schema=not cfg.stealth,
    )
    if not cfg.one_shot:
        router.add_api_route(
            cfg.restart_path + "{subpath:path}",
            restart_timer,
            methods=["GET", "POST"],
            name="restart_timer",
            include_in_schema=not cfg.stealth,
        )
    return router


__all__ = ["build_switch_router", "reset_timer", "restart_timer", "templates"]
