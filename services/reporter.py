from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from executors.base import OutcomeRecord
from monitoring.observability import WatchdogMetrics
from services.result_channel import ResultChannel
from utils.structured_logging import get_logger

LOG = get_logger("watchdog.reporter")

# сколько символов вывода команды класть в лог
OUTPUT_LOG_LIMIT = 4000


@dataclass
class ReporterState:
    running: bool = False
    started_at: float = 0.0
    reported: int = 0
    failed: int = 0
    last_cycle: Optional[int] = None
    last_ok: Optional[bool] = None
    last_reported_at: Optional[float] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "started_at": self.started_at or None,
            "reported": self.reported,
            "failed": self.failed,
            "last_cycle": self.last_cycle,
            "last_ok": self.last_ok,
            "last_reported_at": self.last_reported_at,
        }


def _clip(text: str, limit: int = OUTPUT_LOG_LIMIT) -> str:
    text = text.rstrip("\n")
    if len(text) <= limit:
        return text
    return text[:limit] + f"... [{len(text) - limit} more chars]"


class Reporter:
    """
    Единственный потребитель ResultChannel. Живёт весь срок жизни процесса
    (не создаётся заново на каждый restart).

      • failure → ERROR (команда, цикл, текст ошибки, вывод если был)
      • непустой вывод → INFO
      • ни того ни другого → INFO "no output"
      • one-shot: после первой записи один раз вызывает on_finish; exit_code = 1 при ошибке
    """

    def __init__(
        self,
        channel: ResultChannel,
        *,
        one_shot: bool = False,
        on_finish: Optional[Callable[[], None]] = None,
        metrics: Optional[WatchdogMetrics] = None,
    ) -> None:
        self._channel = channel
        self.one_shot = bool(one_shot)
        self._on_finish = on_finish
        self._metrics = metrics
        self.state = ReporterState()
        self.exit_code = 0
        self.finished = False

    @property
    def reported(self) -> int:
        return self.state.reported

    async def run(self) -> None:
        self.state.running = True
        self.state.started_at = time.time()
        LOG.debug("Reporter started (one_shot=%s)", self.one_shot)
        try:
            async for outcome in self._channel:
                self.report(outcome)
        finally:
            self.state.running = False
            LOG.debug("Reporter stopped after %d outcome(s)", self.state.reported)

    def report(self, outcome: OutcomeRecord) -> None:
        self.state.reported += 1
        self.state.last_cycle = outcome.cycle
        self.state.last_ok = outcome.ok
        self.state.last_reported_at = time.time()
        if self._metrics is not None:
            self._metrics.record_outcome(ok=outcome.ok, duration_sec=outcome.duration_sec)

        if not outcome.ok:
            self.state.failed += 1
            LOG.error(
                "Task %r failed (cycle %d): %s",
                outcome.command,
                outcome.cycle,
                outcome.failure,
            )
            if outcome.output.strip():
                LOG.error("Output of failed task (cycle %d):\n%s", outcome.cycle, _clip(outcome.output))
        elif outcome.output.strip():
            LOG.info("Task %r output (cycle %d):\n%s", outcome.command, outcome.cycle, _clip(outcome.output))
        else:
            LOG.info("Task %r completed with no output (cycle %d)", outcome.command, outcome.cycle)

        if self.one_shot and not self.finished:
            self.finished = True
            self.exit_code = 0 if outcome.ok else 1
            LOG.info("One-shot cycle reported, exiting...")
            if self._on_finish is not None:
                try:
                    self._on_finish()
                except Exception:
                    LOG.exception("Shutdown hook failed")


__all__ = ["Reporter", "ReporterState", "OUTPUT_LOG_LIMIT"]
