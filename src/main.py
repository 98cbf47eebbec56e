# src/main.py
from __future__ import annotations

import asyncio
import os
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from executors.base import TaskRunner, TaskSpec
from monitoring.observability import WatchdogMetrics
from routers.health import router as health_router
from routers.metrics import router as metrics_router
from routers.switch import build_switch_router
from services.reporter import Reporter
from services.result_channel import ResultChannel
from services.watchdog_timer import Deadline, WatchdogTimer
from utils.structured_logging import (
    configure_structured_logging,
    get_logger,
    reset_trace_id,
    set_trace_id,
)
from utils.watchdog_config import (
    ConfigError,
    WatchdogConfig,
    build_arg_parser,
    format_duration,
    load_config,
)

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

LOG = get_logger("watchdog.app")


# ──────────────────────────────────────────────────────────────────────────────
# ENV utils
# ──────────────────────────────────────────────────────────────────────────────
def env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


# ──────────────────────────────────────────────────────────────────────────────
# Lifespan: канал → репортер → таймер; остановка в обратном порядке
# ──────────────────────────────────────────────────────────────────────────────
def _finish(app: FastAPI) -> None:
    """Вызывается репортером после единственного цикла в one-shot режиме."""
    app.state.finished.set()
    hook = getattr(app.state, "shutdown_hook", None)
    if hook is not None:
        hook()


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: WatchdogConfig = app.state.config
    metrics: WatchdogMetrics = app.state.metrics

    channel = ResultChannel()
    timer = WatchdogTimer(
        TaskSpec(cfg.task),
        Deadline(cfg.duration),
        channel,
        runner=app.state.runner,
        metrics=metrics,
    )
    reporter = Reporter(channel, one_shot=cfg.one_shot, on_finish=lambda: _finish(app), metrics=metrics)

    app.state.channel = channel
    app.state.timer = timer
    app.state.reporter = reporter
    app.state.finished = asyncio.Event()

    # репортер должен работать всё время, пока таймер взведён
    app.state.reporter_task = asyncio.create_task(reporter.run(), name="watchdog_reporter")
    timer.arm()
    LOG.info(
        "Watchdog started: task=%r time=%s reset=%s restart=%s one_shot=%s stealth=%s redirect=%s",
        cfg.task,
        format_duration(cfg.duration),
        cfg.reset_path,
        "disabled" if cfg.one_shot else cfg.restart_path,
        cfg.one_shot,
        cfg.stealth,
        cfg.redirect_url or "-",
    )

    try:
        yield
    finally:
        timer.stop()
        drain_sec = env_float("SHUTDOWN_DRAIN_SEC", 10.0)
        if not await timer.drain(timeout=drain_sec):
            LOG.warning(
                "Task still running after %.1fs, its outcome will not be reported", drain_sec
            )
        channel.close()
        try:
            await asyncio.wait_for(app.state.reporter_task, timeout=5.0)
        except asyncio.TimeoutError:  # pragma: no cover
            LOG.warning("Reporter did not stop in time")
        LOG.info("Shutdown complete")


# ──────────────────────────────────────────────────────────────────────────────
# Приложение
# ──────────────────────────────────────────────────────────────────────────────
def create_app(
    config: WatchdogConfig,
    *,
    runner: Optional[TaskRunner] = None,
    metrics: Optional[WatchdogMetrics] = None,
) -> FastAPI:
    """
    Фабрика приложения. Конфигурация валидируется здесь ещё раз (ConfigError — фатально),
    таймер создаётся и взводится в lifespan.
    """
    cfg = config.validate()
    docs_enabled = env_bool("ENABLE_DOCS", False) and not cfg.stealth

    app = FastAPI(
        title="Web Watchdog",
        version=APP_VERSION,
        lifespan=lifespan,
        openapi_url="/openapi.json" if docs_enabled else None,
        docs_url="/docs" if docs_enabled else None,
        redoc_url=None,
    )
    app.state.config = cfg
    app.state.runner = runner
    app.state.metrics = metrics or WatchdogMetrics()
    app.state.shutdown_hook = None

    # ── Middlewares ──────────────────────────────────────────────────────────
    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):
        trace_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        token = set_trace_id(trace_id)
        try:
            response = await call_next(request)
        finally:
            reset_trace_id(token)
        response.headers["X-Request-ID"] = trace_id
        return response

    # ── Обработчики ошибок ───────────────────────────────────────────────────
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            headers={"Cache-Control": "no-store"},
            content={"detail": str(exc.detail)},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        LOG.exception("Unhandled exception at %s: %r", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            headers={"Cache-Control": "no-store"},
            content={"detail": "Internal Server Error"},
        )

    # ── Роуты ────────────────────────────────────────────────────────────────
    app.include_router(build_switch_router(cfg))
    if not cfg.stealth:
        app.include_router(health_router)
        app.include_router(metrics_router)

    return app


# ──────────────────────────────────────────────────────────────────────────────
# Точка входа
# ──────────────────────────────────────────────────────────────────────────────
def run(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)
    configure_structured_logging()

    try:
        cfg = load_config(argv)
    except ConfigError as exc:
        for problem in exc.problems:
            LOG.error("%s", problem)
        build_arg_parser().print_usage(sys.stderr)
        return 1

    app = create_app(cfg)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=cfg.listen_host,
            port=cfg.port,
            lifespan="on",
            log_config=None,
            access_log=env_bool("ACCESS_LOG", not cfg.stealth),
        )
    )
    app.state.shutdown_hook = lambda: setattr(server, "should_exit", True)

    # при ошибке bind uvicorn сам пишет в лог и завершает процесс с кодом 1
    server.run()

    reporter = getattr(app.state, "reporter", None)
    return reporter.exit_code if reporter is not None else 0


if __name__ == "__main__":
    sys.exit(run())
