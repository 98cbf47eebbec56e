import asyncio
import time

import pytest

from conftest import RecordingRunner, wait_for
from executors.base import OutcomeRecord, TaskRunner, TaskSpec
from executors.command import SubprocessRunner
from monitoring.observability import WatchdogMetrics
from services.result_channel import ResultChannel
from services.watchdog_timer import ArmState, Deadline, WatchdogTimer


def _timer(duration: float, runner=None, metrics=None):
    channel = ResultChannel()
    timer = WatchdogTimer(
        TaskSpec("echo hello"),
        Deadline(duration),
        channel,
        runner=runner or RecordingRunner(),
        metrics=metrics,
    )
    return timer, channel


class ExplodingRunner(TaskRunner):
    async def run(self, task: TaskSpec) -> OutcomeRecord:
        raise RuntimeError("boom")


# ──────────────────────────────────────────────────────────────────────────────
# Deadline
# ──────────────────────────────────────────────────────────────────────────────
@pytest.mark.parametrize("bad", [0, -1, -0.5, "abc", None, float("inf"), float("nan"), 1e12])
def test_deadline_must_be_positive(bad):
    with pytest.raises(ValueError):
        Deadline(bad)


def test_deadline_accepts_fractions():
    assert Deadline(0.25).duration == 0.25


# ──────────────────────────────────────────────────────────────────────────────
# Арм / срабатывание
# ──────────────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_fresh_timer_is_stopped_until_armed():
    timer, _ = _timer(1.0)
    assert timer.state is ArmState.STOPPED
    assert timer.cycle == 0
    assert timer.reset() is False

    assert timer.arm() == 1
    assert timer.state is ArmState.ARMED
    assert timer.expires_at is not None
    timer.stop()


@pytest.mark.asyncio
async def test_expiry_runs_task_exactly_once():
    runner = RecordingRunner(output="hello\n")
    timer, channel = _timer(0.05, runner=runner)
    timer.arm()

    await wait_for(lambda: channel.sent == 1)
    assert timer.state is ArmState.FIRED
    # ещё подождём: повторного запуска без restart быть не должно
    await asyncio.sleep(0.2)
    assert runner.calls == ["echo hello"]
    assert timer.fires == 1
    assert channel.sent == 1

    record = await channel.receive()
    assert record.cycle == 1
    assert record.output == "hello\n"
    assert record.command == "echo hello"


@pytest.mark.asyncio
async def test_reset_restarts_countdown_from_reset_time():
    loop = asyncio.get_running_loop()
    timer, channel = _timer(0.3)
    start = loop.time()
    timer.arm()

    await asyncio.sleep(0.1)
    reset_at = loop.time()
    assert timer.reset() is True
    assert timer.fire_at == pytest.approx(reset_at + 0.3, abs=0.02)

    # исходный срок (start + 0.3) прошёл, но после reset срабатывать рано
    await asyncio.sleep(max(0.0, start + 0.35 - loop.time()))
    assert timer.fires == 0
    assert timer.state is ArmState.ARMED

    await wait_for(lambda: timer.fires == 1)
    assert loop.time() - start >= 0.39
    await wait_for(lambda: channel.sent == 1)


@pytest.mark.asyncio
async def test_real_command_output_is_delivered():
    channel = ResultChannel()
    timer = WatchdogTimer(TaskSpec("echo hello"), Deadline(0.1), channel, runner=SubprocessRunner())
    timer.arm()
    record = await asyncio.wait_for(channel.receive(), timeout=3.0)
    assert record.ok
    assert "hello" in record.output


@pytest.mark.asyncio
async def test_missing_binary_is_delivered_as_failure():
    channel = ResultChannel()
    timer = WatchdogTimer(
        TaskSpec("doesnotexist-binary"), Deadline(0.05), channel, runner=SubprocessRunner()
    )
    timer.arm()
    record = await asyncio.wait_for(channel.receive(), timeout=3.0)
    assert record.failure
    assert record.cycle == 1


@pytest.mark.asyncio
async def test_reset_after_fire_is_rejected():
    timer, channel = _timer(0.05)
    timer.arm()
    await wait_for(lambda: channel.sent == 1)

    assert timer.reset() is False
    assert timer.state is ArmState.FIRED
    await asyncio.sleep(0.1)
    assert timer.fires == 1


@pytest.mark.asyncio
async def test_reset_loses_to_due_expiry_even_before_callback_ran():
    timer, channel = _timer(0.05)
    timer.arm()

    # блокируем loop: срок наступает, а callback будильника ещё не успел выполниться
    time.sleep(0.1)
    assert timer.state is ArmState.ARMED
    assert timer.reset() is False

    await wait_for(lambda: channel.sent == 1)
    assert timer.fires == 1
    assert timer.state is ArmState.FIRED


@pytest.mark.asyncio
async def test_reset_results_never_flip_back_to_accepted():
    timer, channel = _timer(0.1)
    timer.arm()

    results = []
    for pause in (0.02, 0.02, 0.25, 0.02, 0.02):
        await asyncio.sleep(pause)
        results.append(timer.reset())

    assert results == [True, True, False, False, False]
    first_rejected = results.index(False)
    assert all(r is False for r in results[first_rejected:])
    await wait_for(lambda: channel.sent == 1)
    assert timer.fires == 1


@pytest.mark.asyncio
async def test_back_to_back_arms_leave_only_latest_cycle():
    runner = RecordingRunner()
    timer, channel = _timer(0.05, runner=runner)
    timer.arm()
    timer.arm()
    assert timer.arm() == 3

    await wait_for(lambda: channel.sent == 1)
    await asyncio.sleep(0.15)
    assert channel.sent == 1
    assert len(runner.calls) == 1
    record = await channel.receive()
    assert record.cycle == 3


@pytest.mark.asyncio
async def test_restart_after_fire_starts_new_cycle():
    timer, channel = _timer(0.05)
    timer.arm()
    await wait_for(lambda: channel.sent == 1)
    first = await channel.receive()

    assert timer.arm() == 2
    assert timer.state is ArmState.ARMED
    await wait_for(lambda: channel.sent == 2)
    second = await channel.receive()

    assert (first.cycle, second.cycle) == (1, 2)
    assert timer.fires == 2


@pytest.mark.asyncio
async def test_restart_while_armed_cancels_pending_alarm():
    runner = RecordingRunner()
    timer, channel = _timer(0.15, runner=runner)
    timer.arm()
    await asyncio.sleep(0.1)
    timer.arm()

    # первый будильник должен был сработать на 0.15 — его отменили
    await asyncio.sleep(0.1)
    assert timer.fires == 0
    await wait_for(lambda: channel.sent == 1)
    record = await channel.receive()
    assert record.cycle == 2
    assert len(runner.calls) == 1


@pytest.mark.asyncio
async def test_stop_prevents_execution():
    runner = RecordingRunner()
    timer, channel = _timer(0.05, runner=runner)
    timer.arm()
    timer.stop()

    await asyncio.sleep(0.15)
    assert timer.state is ArmState.STOPPED
    assert runner.calls == []
    assert channel.sent == 0
    assert timer.reset() is False


@pytest.mark.asyncio
async def test_runner_crash_becomes_failure_record():
    timer, channel = _timer(0.02, runner=ExplodingRunner())
    timer.arm()
    await wait_for(lambda: channel.sent == 1)

    record = await channel.receive()
    assert not record.ok
    assert record.failure.startswith("runner error")
    assert "boom" in record.failure
    assert record.cycle == 1
    assert record.command == "echo hello"


@pytest.mark.asyncio
async def test_drain_waits_for_in_flight_execution():
    timer, channel = _timer(0.02, runner=RecordingRunner(delay=0.3))
    timer.arm()
    await wait_for(lambda: timer.fires == 1)
    assert timer.in_flight == 1

    assert await timer.drain(timeout=0.01) is False
    assert await timer.drain(timeout=2.0) is True
    assert timer.in_flight == 0
    assert channel.sent == 1


@pytest.mark.asyncio
async def test_drain_without_executions_returns_immediately():
    timer, _ = _timer(1.0)
    assert await timer.drain(timeout=0) is True


@pytest.mark.asyncio
async def test_reset_does_not_touch_channel():
    timer, channel = _timer(0.5)
    timer.arm()
    for _ in range(5):
        assert timer.reset() is True
    assert channel.sent == 0
    timer.stop()


@pytest.mark.asyncio
async def test_status_reflects_state_and_metrics_counts():
    metrics = WatchdogMetrics()
    timer, channel = _timer(0.05, metrics=metrics)
    timer.arm()

    status = timer.status().to_public_dict()
    assert status["state"] == "armed"
    assert status["cycle"] == 1
    assert status["command"] == "echo hello"
    assert 0 <= status["remaining_sec"] <= 0.05
    assert status["expires_at"] is not None

    assert timer.reset() is True
    await wait_for(lambda: channel.sent == 1)
    assert timer.reset() is False

    status = timer.status().to_public_dict()
    assert status["state"] == "fired"
    assert status["remaining_sec"] is None
    assert status["expires_at"] is None
    assert status["fires"] == 1

    counts = metrics.snapshot()
    assert counts["cycles"] == 1
    assert counts["resets_accepted"] == 1
    assert counts["resets_rejected"] == 1
    assert counts["fires"] == 1


@pytest.mark.asyncio
async def test_stale_alarm_of_previous_cycle_is_discarded():
    runner = RecordingRunner()
    timer, channel = _timer(5.0, runner=runner)
    timer.arm()
    assert timer.arm() == 2

    # будильник первого цикла "доехал" уже после restart
    timer._on_alarm(1)
    await asyncio.sleep(0.05)

    assert timer.state is ArmState.ARMED
    assert timer.cycle == 2
    assert timer.fires == 0
    assert timer.in_flight == 0
    assert runner.calls == []
    assert channel.sent == 0
    timer.stop()


@pytest.mark.asyncio
async def test_alarm_after_stop_is_discarded():
    runner = RecordingRunner()
    timer, channel = _timer(5.0, runner=runner)
    timer.arm()
    timer.stop()
    timer._on_alarm(1)
    await asyncio.sleep(0.05)
    assert timer.state is ArmState.STOPPED
    assert runner.calls == []
    assert channel.sent == 0


@pytest.mark.asyncio
async def test_failed_scheduling_leaves_timer_untouched(monkeypatch):
    import services.watchdog_timer as timer_mod

    timer, channel = _timer(0.5)
    timer.arm()
    fire_at = timer.fire_at

    def _overflow():
        raise OverflowError("date value out of range")

    monkeypatch.setattr(timer_mod, "_local_now", _overflow)
    with pytest.raises(OverflowError):
        timer.arm()
    with pytest.raises(OverflowError):
        timer.reset()

    # прежний цикл жив: тот же номер, тот же срок, будильник на месте
    assert timer.cycle == 1
    assert timer.state is ArmState.ARMED
    assert timer.fire_at == fire_at
    monkeypatch.undo()
    await wait_for(lambda: channel.sent == 1)
    assert timer.fires == 1
