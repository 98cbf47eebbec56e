from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from executors.base import EmptyCommandError, OutcomeRecord, TaskRunner, TaskSpec, split_command_line
from utils.structured_logging import get_logger

LOG = get_logger("watchdog.command")

# сколько байт stderr прикладывать к тексту ошибки
STDERR_TAIL_BYTES = 2048


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


def _describe_exit(returncode: int, stderr: Optional[bytes]) -> str:
    if returncode < 0:
        text = f"signal: killed by signal {-returncode}"
    else:
        text = f"exit status {returncode}"
    tail = _decode((stderr or b"")[-STDERR_TAIL_BYTES:]).strip()
    if tail:
        text = f"{text}: {tail}"
    return text


class SubprocessRunner(TaskRunner):
    """
    Реальный исполнитель: запускает программу без shell, ждёт завершения
    (таймаут не ограничен), забирает stdout.
      • пустая команда → failure "empty command", процесс не запускается
      • программа не найдена / нет прав → failure с текстом OSError
      • ненулевой код возврата → failure "exit status N" (+ хвост stderr), stdout сохраняется
    """

    name = "subprocess"

    async def run(self, task: TaskSpec) -> OutcomeRecord:
        command = str(getattr(task, "command_line", "") or "")
        started = _now()
        try:
            program, arguments = split_command_line(command)
        except EmptyCommandError as exc:
            LOG.warning("Refusing to run an empty command")
            return OutcomeRecord(failure=str(exc), command=command, started_at=started, finished_at=_now())

        LOG.info("Running %r with %d argument(s)", program, len(arguments))
        try:
            proc = await asyncio.create_subprocess_exec(
                program,
                *arguments,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            # FileNotFoundError / PermissionError / прочие ошибки запуска
            return OutcomeRecord(
                failure=f"exec {program}: {exc.strerror or exc}",
                command=command,
                started_at=started,
                finished_at=_now(),
            )

        try:
            stdout, stderr = await proc.communicate()
        except OSError as exc:
            return OutcomeRecord(
                failure=f"reading output of {program}: {exc}",
                command=command,
                returncode=proc.returncode,
                started_at=started,
                finished_at=_now(),
            )

        failure = None if proc.returncode == 0 else _describe_exit(proc.returncode, stderr)
        return OutcomeRecord(
            output=_decode(stdout),
            failure=failure,
            command=command,
            returncode=proc.returncode,
            started_at=started,
            finished_at=_now(),
        )


__all__ = ["SubprocessRunner", "STDERR_TAIL_BYTES"]
