from __future__ import annotations

import argparse
import math
import os
import re
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx


class ConfigError(ValueError):
    """Ошибка конфигурации: фатальна при старте, процесс завершается с кодом 1."""

    def __init__(self, problems: Iterable[str]):
        self.problems: List[str] = [str(p) for p in problems if str(p)]
        super().__init__("; ".join(self.problems) or "invalid configuration")


# ──────────────────────────────────────────────────────────────────────────────
# Длительности: "10s", "1h5m46s", "1.5h", "300ms", "-2m"
# ──────────────────────────────────────────────────────────────────────────────
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,  # U+00B5
    "μs": 1e-6,  # U+03BC
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

# предел int64 наносекунд, дальше длительность не представима
MAX_DURATION_SEC = (2 ** 63 - 1) / 1e9


def parse_duration(text: str) -> float:
    """
    Разбирает человекочитаемую длительность и возвращает секунды.
    Единица обязательна для каждого числа; голый "0" допускается.
    """
    raw = str(text or "").strip()
    s = raw
    sign = 1.0
    if s[:1] in ("+", "-"):
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ConfigError([f"invalid duration {raw!r}"])

    total = 0.0
    pos = 0
    while pos < len(s):
        m = _DURATION_PART_RE.match(s, pos)
        if m is None:
            if re.match(r"(\d+(?:\.\d*)?|\.\d+)$", s[pos:]):
                raise ConfigError([f"missing unit in duration {raw!r}"])
            raise ConfigError([f"invalid duration {raw!r}"])
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if not math.isfinite(total) or total > MAX_DURATION_SEC:
        raise ConfigError([f"duration out of range {raw!r}: at most {format_duration(MAX_DURATION_SEC)}"])
    return sign * total


def format_duration(seconds: float) -> str:
    """Обратное форматирование для страниц/логов: 3905 → "1h5m5s", 0.25 → "250ms"."""
    value = float(seconds)
    if value == 0:
        return "0s"
    sign = "-" if value < 0 else ""
    value = abs(value)
    if value < 1:
        return f"{sign}{value * 1000:g}ms"
    hours, rest = divmod(value, 3600)
    minutes, secs = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{int(hours)}h"
    if hours or minutes:
        out += f"{int(minutes)}m"
    out += f"{round(secs, 3):g}s"
    return sign + out


def normalize_path(path: str) -> str:
    """Путь всегда начинается и заканчивается на "/"."""
    p = str(path or "").strip()
    if not p.startswith("/"):
        p = "/" + p
    if not p.endswith("/"):
        p = p + "/"
    return p


def normalize_redirect_url(value: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        return ""
    try:
        return str(httpx.URL(raw))
    except (httpx.InvalidURL, ValueError, TypeError) as exc:
        raise ConfigError([f"invalid redirect URL {raw!r}: {exc}"]) from exc


def _truthy(value: Any) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


# ──────────────────────────────────────────────────────────────────────────────
# Неизменяемая конфигурация процесса
# ──────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class WatchdogConfig:
    """
    Всё, что нужно таймеру, репортеру и обработчикам. Создаётся один раз при старте
    и передаётся явно (никаких глобальных переменных).
    """
    task: str = ""                   # команда, которую выполнить по истечении
    duration: float = 0.0            # секунды ожидания, > 0
    port: int = 8080
    local: bool = True               # слушать только 127.0.0.1
    stealth: bool = False            # без вывода в браузер (404)
    one_shot: bool = False           # один цикл, потом выход
    reset_path: str = "/reset/"
    restart_path: str = "/restart/"
    redirect_url: str = ""           # если задан — 302 после reset / restart

    @property
    def listen_host(self) -> str:
        return "127.0.0.1" if self.local else "0.0.0.0"

    @property
    def redirect_enabled(self) -> bool:
        return bool(self.redirect_url)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> "WatchdogConfig":
        """
        Возвращает нормализованную копию или бросает ConfigError со всеми найденными проблемами.
        """
        problems: List[str] = []
        if not str(self.task or "").strip():
            problems.append('"task" flag required')
        try:
            seconds = float(self.duration)
        except (TypeError, ValueError):
            seconds = 0.0
        if not seconds > 0:
            problems.append('"time" flag required, and must be positive')
        elif not math.isfinite(seconds) or seconds > MAX_DURATION_SEC:
            problems.append(f"duration out of range: at most {format_duration(MAX_DURATION_SEC)}")
        if not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            problems.append(f"invalid port {self.port!r}: must be within 0..65535")
        redirect = self.redirect_url
        try:
            redirect = normalize_redirect_url(self.redirect_url)
        except ConfigError as exc:
            problems.extend(exc.problems)
        if problems:
            raise ConfigError(problems)

        return replace(
            self,
            task=str(self.task).strip(),
            duration=float(self.duration),
            reset_path=normalize_path(self.reset_path),
            restart_path=normalize_path(self.restart_path),
            redirect_url=redirect,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WatchdogConfig":
        return load_config([], environ=environ)


# ──────────────────────────────────────────────────────────────────────────────
# CLI (флаги имеют приоритет над ENV)
# ──────────────────────────────────────────────────────────────────────────────
ENV_PREFIX = "WATCHDOG_"


def build_arg_parser(environ: Optional[Mapping[str, str]] = None) -> argparse.ArgumentParser:
    env = os.environ if environ is None else environ

    def _env(name: str, default: str = "") -> str:
        return env.get(ENV_PREFIX + name, default)

    p = argparse.ArgumentParser(
        prog="web-watchdog",
        description="Task timer with web based reset / restart (a dead man's switch for one command).",
    )
    p.add_argument("--task", default=_env("TASK"), help="Command to execute. REQUIRED! (env WATCHDOG_TASK)")
    p.add_argument(
        "--time",
        default=_env("TIME"),
        help="Time to wait. REQUIRED! e.g. 10h5m46s, 90s, 1.5h, 300ms (env WATCHDOG_TIME)",
    )
    p.add_argument("--port", default=_env("PORT", "8080"), help="TCP/IP port to listen on (default 8080)")
    p.add_argument(
        "--local",
        action=argparse.BooleanOptionalAction,
        default=_truthy(_env("LOCAL", "true")),
        help="Listen on localhost only (default true)",
    )
    p.add_argument(
        "--stealth",
        action=argparse.BooleanOptionalAction,
        default=_truthy(_env("STEALTH", "false")),
        help="No browser output, answer 404 (default false)",
    )
    p.add_argument(
        "--onetime",
        action=argparse.BooleanOptionalAction,
        default=_truthy(_env("ONETIME", "false")),
        help="Run timer once only, then exit (default false)",
    )
    p.add_argument("--reseturl", default=_env("RESET_URL", "/reset/"), help="URL path for reset (default /reset/)")
    p.add_argument(
        "--restarturl", default=_env("RESTART_URL", "/restart/"), help="URL path for restart (default /restart/)"
    )
    p.add_argument("--redirurl", default=_env("REDIR_URL", ""), help="URL to redirect to after reset / restart")
    return p


def load_config(
    argv: Optional[Sequence[str]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> WatchdogConfig:
    """
    Собирает WatchdogConfig из ENV (WATCHDOG_*) и аргументов командной строки.
    Все проблемы собираются и отдаются одним ConfigError.
    """
    args = build_arg_parser(environ).parse_args(argv)
    problems: List[str] = []

    duration = 0.0
    bad_time = False
    if str(args.time or "").strip():
        try:
            duration = parse_duration(args.time)
        except ConfigError as exc:
            bad_time = True
            problems.extend(exc.problems)

    port = 8080
    try:
        port = int(str(args.port).strip())
    except ValueError:
        problems.append(f"invalid port {args.port!r}")

    cfg = WatchdogConfig(
        task=str(args.task or ""),
        duration=duration,
        port=port,
        local=bool(args.local),
        stealth=bool(args.stealth),
        one_shot=bool(args.onetime),
        reset_path=args.reseturl,
        restart_path=args.restarturl,
        redirect_url=args.redirurl,
    )
    try:
        cfg = cfg.validate()
    except ConfigError as exc:
        # не дублируем сообщение о времени, если уже сообщили о формате
        problems.extend(p for p in exc.problems if not (bad_time and p.startswith('"time"')))
    if problems:
        raise ConfigError(problems)
    return cfg


__all__ = [
    "ConfigError",
    "MAX_DURATION_SEC",
    "WatchdogConfig",
    "parse_duration",
    "format_duration",
    "normalize_path",
    "normalize_redirect_url",
    "build_arg_parser",
    "load_config",
]
