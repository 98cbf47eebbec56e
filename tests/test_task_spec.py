import pytest

from executors.base import EmptyCommandError, OutcomeRecord, TaskSpec, split_command_line


@pytest.mark.parametrize(
    "line, program, args",
    [
        ("echo hello", "echo", ("hello",)),
        ("reboot", "reboot", ()),
        ("  /usr/bin/env   python3  -c  pass ", "/usr/bin/env", ("python3", "-c", "pass")),
        ("tar\tczf\nbackup.tgz  /etc", "tar", ("czf", "backup.tgz", "/etc")),
    ],
)
def test_split_keeps_program_and_ordered_arguments(line, program, args):
    spec = TaskSpec(line)
    assert spec.program == program
    assert spec.arguments == args
    assert spec.split() == (program, args)


@pytest.mark.parametrize("line", ["", "   ", "\t\n"])
def test_empty_command_is_rejected(line):
    with pytest.raises(EmptyCommandError):
        TaskSpec(line)
    with pytest.raises(ValueError, match="empty command"):
        split_command_line(line)


def test_quotes_are_not_interpreted():
    # только пробелы, без shell-разбора
    assert TaskSpec('sh -c "exit 3"').arguments == ("-c", '"exit', '3"')


def test_task_spec_is_immutable():
    spec = TaskSpec("echo hi")
    with pytest.raises(Exception):
        spec.command_line = "rm -rf /"  # type: ignore[misc]


def test_outcome_record_helpers():
    ok = OutcomeRecord(output="x")
    bad = OutcomeRecord(failure="exit status 1", cycle=3, command="false")
    assert ok.ok and not bad.ok
    assert ok.duration_sec is None
    public = bad.to_public_dict()
    assert public["cycle"] == 3
    assert public["ok"] is False
    assert public["failure"] == "exit status 1"
