from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple


class EmptyCommandError(ValueError):
    """Командная строка пуста (или состоит только из пробелов)."""

    def __init__(self, message: str = "empty command"):
        super().__init__(message)


def split_command_line(command_line: str) -> Tuple[str, Tuple[str, ...]]:
    """
    Делит строку по пробельным символам: первый токен — программа, остальные — аргументы.
    Кавычки не интерпретируются: shell не участвует.
    """
    argv = (command_line or "").split()
    if not argv:
        raise EmptyCommandError()
    return argv[0], tuple(argv[1:])


@dataclass(frozen=True)
class TaskSpec:
    """Описание внешней команды, которую выполняет сработавший таймер."""

    command_line: str

    def __post_init__(self) -> None:
        split_command_line(self.command_line)

    @property
    def program(self) -> str:
        return split_command_line(self.command_line)[0]

    @property
    def arguments(self) -> Tuple[str, ...]:
        return split_command_line(self.command_line)[1]

    def split(self) -> Tuple[str, Tuple[str, ...]]:
        return split_command_line(self.command_line)


@dataclass(frozen=True)
class OutcomeRecord:
    output: str = ""
    failure: Optional[str] = None   # None — команда отработала успешно
    cycle: int = 0
    command: str = ""
    returncode: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def duration_sec(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def to_public_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "command": self.command,
            "ok": self.ok,
            "returncode": self.returncode,
            "failure": self.failure,
            "output_bytes": len(self.output.encode("utf-8")),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class TaskRunner(abc.ABC):
    """Интерфейс шага исполнения (реальный subprocess или тестовый двойник)."""

    name: str = "base"

    @abc.abstractmethod
    async def run(self, task: TaskSpec) -> OutcomeRecord:
        """
        Выполнить команду один раз и вернуть результат.
        Ошибки запуска/завершения не бросаются, а попадают в OutcomeRecord.failure.
        """
        ...


__all__ = [
    "EmptyCommandError",
    "split_command_line",
    "TaskSpec",
    "OutcomeRecord",
    "TaskRunner",
]
