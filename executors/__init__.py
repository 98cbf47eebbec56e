from .base import EmptyCommandError, OutcomeRecord, TaskRunner, TaskSpec, split_command_line
from .command import SubprocessRunner

__all__ = [
    "EmptyCommandError",
    "OutcomeRecord",
    "TaskRunner",
    "TaskSpec",
    "split_command_line",
    "SubprocessRunner",
]
