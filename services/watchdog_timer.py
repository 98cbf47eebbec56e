"""Dead-man's-switch timer bound to one external command.

The timer is an actor owned by the running asyncio event loop. Every public
operation is a plain (non-async) method that must be called on that loop, so
``arm``, ``reset``, ``stop`` and the alarm callback never interleave: the
reset-versus-expiry race always resolves to exactly one winner.

Each ``arm`` starts a new cycle with a fresh alarm handle and a bumped cycle
number. An alarm that fires for a cycle other than the current one is stale
and is dropped without running the command. Command execution happens in a
separate asyncio task, so HTTP handlers never wait for it, and publishes
exactly one :class:`~executors.base.OutcomeRecord` per fired cycle.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from executors.base import OutcomeRecord, TaskRunner, TaskSpec
from executors.command import SubprocessRunner
from monitoring.observability import WatchdogMetrics
from services.result_channel import ResultChannel
from utils.structured_logging import get_logger
from utils.watchdog_config import MAX_DURATION_SEC

LOG = get_logger("watchdog.timer")


class ArmState(str, Enum):
    ARMED = "armed"
    FIRED = "fired"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Deadline:
    duration: float  # секунды, строго > 0

    def __post_init__(self) -> None:
        try:
            seconds = float(self.duration)
        except (TypeError, ValueError):
            seconds = 0.0
        if not seconds > 0:
            raise ValueError(f"deadline duration must be positive, got {self.duration!r}")
        if not math.isfinite(seconds) or seconds > MAX_DURATION_SEC:
            raise ValueError(f"deadline duration out of range, got {self.duration!r}")


@dataclass(frozen=True)
class TimerStatus:
    state: ArmState
    cycle: int
    command: str
    duration: float
    expires_at: Optional[datetime]
    remaining_sec: Optional[float]
    fires: int
    in_flight: int

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "cycle": self.cycle,
            "command": self.command,
            "duration_sec": self.duration,
            "expires_at": self.expires_at.isoformat(timespec="seconds") if self.expires_at else None,
            "remaining_sec": None if self.remaining_sec is None else round(self.remaining_sec, 3),
            "fires": self.fires,
            "in_flight": self.in_flight,
        }


def _local_now() -> datetime:
    return datetime.now().astimezone()


class WatchdogTimer:
    def __init__(
        self,
        task: TaskSpec,
        deadline: Deadline,
        channel: ResultChannel,
        *,
        runner: Optional[TaskRunner] = None,
        metrics: Optional[WatchdogMetrics] = None,
    ) -> None:
        self._task = task
        self._deadline = deadline
        self._channel = channel
        self._runner = runner or SubprocessRunner()
        self._metrics = metrics or WatchdogMetrics()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = ArmState.STOPPED
        self._cycle = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fire_at: Optional[float] = None        # loop.time() момента срабатывания
        self._expires_at: Optional[datetime] = None  # то же самое в локальном времени (для страниц)
        self._fires = 0
        self._executions: Set[asyncio.Task] = set()

    # ── свойства ─────────────────────────────────────────────────────────────
    @property
    def task(self) -> TaskSpec:
        return self._task

    @property
    def deadline(self) -> Deadline:
        return self._deadline

    @property
    def state(self) -> ArmState:
        return self._state

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def fires(self) -> int:
        return self._fires

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._expires_at

    @property
    def fire_at(self) -> Optional[float]:
        """Момент срабатывания по часам event loop (monotonic), только в состоянии ARMED."""
        return self._fire_at

    @property
    def in_flight(self) -> int:
        return len(self._executions)

    # ── операции ─────────────────────────────────────────────────────────────
    def arm(self, deadline: Optional[Deadline] = None) -> int:
        """
        Новый цикл из любого состояния: отменяет прежний будильник и ставит свежий.
        Возвращает номер нового цикла. Выполнение команды прошлого цикла (если идёт)
        не прерывается — его результат уйдёт в канал со старым номером цикла.
        """
        loop = self._owner_loop()
        deadline = deadline or self._deadline
        # сначала считаем срок: если он непредставим, состояние не меняется
        fire_at, expires_at = self._next_fire(loop, deadline)
        self._cancel_alarm()
        self._deadline = deadline
        self._cycle += 1
        self._state = ArmState.ARMED
        self._schedule(loop, fire_at, expires_at)
        self._metrics.record_arm()
        LOG.info(
            "Timer armed (cycle %d): %r in %.3fs, expires at %s",
            self._cycle,
            self._task.command_line,
            self._deadline.duration,
            self._expires_at.isoformat(timespec="seconds") if self._expires_at else "-",
        )
        return self._cycle

    def reset(self, deadline: Optional[Deadline] = None) -> bool:
        """
        Продлить текущий цикл: срок отсчитывается заново от момента вызова.
        True — продлили; False — цикл уже сработал/остановлен или срок уже наступил
        (в последнем случае ожидающий будильник всё равно сработает).
        """
        loop = self._owner_loop()
        if self._state is not ArmState.ARMED or self._handle is None or self._fire_at is None:
            LOG.info("Reset rejected: timer is %s (cycle %d)", self._state.value, self._cycle)
            self._metrics.record_reset(accepted=False)
            return False
        if loop.time() >= self._fire_at:
            LOG.info("Reset rejected: cycle %d expired before the reset arrived", self._cycle)
            self._metrics.record_reset(accepted=False)
            return False

        deadline = deadline or self._deadline
        fire_at, expires_at = self._next_fire(loop, deadline)
        self._deadline = deadline
        self._handle.cancel()
        self._schedule(loop, fire_at, expires_at)
        self._metrics.record_reset(accepted=True)
        LOG.info(
            "Timer reset (cycle %d), expires at %s",
            self._cycle,
            self._expires_at.isoformat(timespec="seconds") if self._expires_at else "-",
        )
        return True

    def stop(self) -> None:
        """STOPPED: будильник отменён; уже идущее выполнение команды не трогаем."""
        if self._state is ArmState.ARMED:
            LOG.info("Timer stopped (cycle %d) before expiry", self._cycle)
        self._cancel_alarm()
        self._state = ArmState.STOPPED
        self._metrics.record_stop()

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Дождаться выполняющихся команд (перед закрытием канала).
        True — все завершились и отправили результат; False — истёк timeout.
        """
        pending = set(self._executions)
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running

    def status(self) -> TimerStatus:
        remaining: Optional[float] = None
        if self._state is ArmState.ARMED and self._fire_at is not None and self._loop is not None:
            remaining = max(0.0, self._fire_at - self._loop.time())
        return TimerStatus(
            state=self._state,
            cycle=self._cycle,
            command=self._task.command_line,
            duration=self._deadline.duration,
            expires_at=self._expires_at if self._state is ArmState.ARMED else None,
            remaining_sec=remaining,
            fires=self._fires,
            in_flight=len(self._executions),
        )

    # ── внутреннее ───────────────────────────────────────────────────────────
    def _owner_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if self._loop is None or self._loop.is_closed():
            self._loop = loop
        elif self._loop is not loop:
            raise RuntimeError("WatchdogTimer is owned by another event loop")
        return loop

    @staticmethod
    def _next_fire(loop: asyncio.AbstractEventLoop, deadline: Deadline) -> Tuple[float, datetime]:
        duration = float(deadline.duration)
        return loop.time() + duration, _local_now() + timedelta(seconds=duration)

    def _schedule(self, loop: asyncio.AbstractEventLoop, fire_at: float, expires_at: datetime) -> None:
        self._fire_at = fire_at
        self._expires_at = expires_at
        self._handle = loop.call_at(fire_at, self._on_alarm, self._cycle)

    def _cancel_alarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._fire_at = None
        self._expires_at = None

    def _on_alarm(self, cycle: int) -> None:
        if cycle != self._cycle or self._state is not ArmState.ARMED:
            LOG.debug(
                "Discarding stale alarm of cycle %d (current cycle %d, state %s)",
                cycle, self._cycle, self._state.value,
            )
            return

        self._state = ArmState.FIRED
        self._handle = None
        self._fire_at = None
        self._expires_at = None
        self._fires += 1
        self._metrics.record_fire()
        LOG.warning("Deadline expired (cycle %d): running %r", cycle, self._task.command_line)

        loop = self._loop or asyncio.get_running_loop()
        execution = loop.create_task(self._execute(cycle), name=f"watchdog-cycle-{cycle}")
        self._executions.add(execution)
        execution.add_done_callback(self._executions.discard)

    async def _execute(self, cycle: int) -> None:
        try:
            outcome = await self._runner.run(self._task)
        except Exception as exc:
            LOG.exception("Task runner crashed in cycle %d", cycle)
            outcome = OutcomeRecord(failure=f"runner error: {exc!r}")
        outcome = replace(outcome, cycle=cycle, command=outcome.command or self._task.command_line)
        self._channel.send(outcome)


__all__ = ["ArmState", "Deadline", "TimerStatus", "WatchdogTimer"]
