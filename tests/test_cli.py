import os
import re
import stat

import pytest

from rainbowpty.cli import (
    DEFAULT_SHELL,
    ProgramNotFound,
    build_parser,
    default_shell,
    main,
    resolve_program,
)
from rainbowpty.log import LOG_FILENAME
from rainbowpty.rainbow import SGR_RESET
from rainbowpty.settings import Schema, Settings
from rainbowpty.settings_schema import SCHEMA

COLOR = re.compile(rb"\x1b\[38;2;\d+;\d+;\d+m")


@pytest.fixture
def script(tmp_path):
    path = tmp_path / "bin" / "hello"
    path.parent.mkdir()
    path.write_text("#!/bin/sh\necho hello\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def test_resolve_program_on_path():
    assert os.path.basename(resolve_program("sh")) == "sh"


def test_resolve_program_search_path(script):
    assert resolve_program("hello", path=str(script.parent)) == str(script)


def test_resolve_program_direct_path(script):
    assert resolve_program(str(script)) == str(script)


def test_resolve_program_not_executable(script):
    script.chmod(0o644)
    with pytest.raises(ProgramNotFound):
        resolve_program(str(script))
    with pytest.raises(ProgramNotFound):
        resolve_program("hello", path=str(script.parent))


def test_resolve_program_missing(tmp_path):
    with pytest.raises(ProgramNotFound):
        resolve_program(str(tmp_path / "nothing"))
    with pytest.raises(ProgramNotFound):
        resolve_program("rainbowpty-no-such-program", path=str(tmp_path))


def test_default_shell():
    schema = Schema(SCHEMA)
    configured = Settings(schema, {"shell": {"command": "/bin/zsh"}})
    unset = Settings(schema, {})
    assert default_shell(configured, {"SHELL": "/bin/bash"}) == "/bin/zsh"
    assert default_shell(unset, {"SHELL": "/bin/bash"}) == "/bin/bash"
    assert default_shell(unset, {}) == DEFAULT_SHELL


def test_parse_command():
    args = build_parser().parse_args(["--colors", "256", "ls", "-la", "/tmp"])
    assert args.colors == "256"
    assert args.command == "ls"
    assert args.arguments == ["-la", "/tmp"]


def test_parse_no_command():
    args = build_parser().parse_args([])
    assert args.command is None
    assert args.arguments == []


def test_help(capsys):
    with pytest.raises(SystemExit) as exit_info:
        main(["--help"])
    assert exit_info.value.code == 0
    assert "usage: rainbowpty" in capsys.readouterr().out


def test_program_not_found(capsys):
    assert main(["rainbowpty-no-such-program"]) == 1
    assert "command not found" in capsys.readouterr().err


def test_invalid_spread(capsys):
    assert main(["--spread", "0", "sh"]) == 1
    assert "spread must be positive" in capsys.readouterr().err


def test_invalid_settings(user_dirs, capsys):
    settings_path = user_dirs / "config" / "rainbowpty" / "settings.json"
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text('{"rainbow": {"colors": "16"}}', "utf-8")
    assert main(["sh"]) == 1
    assert "truecolor" in capsys.readouterr().err


@pytest.fixture
def empty_stdin():
    """Replace file descriptor 0 with a pipe at end of file."""
    read_fd, write_fd = os.pipe()
    os.close(write_fd)
    saved_stdin = os.dup(0)
    os.dup2(read_fd, 0)
    os.close(read_fd)
    yield
    os.dup2(saved_stdin, 0)
    os.close(saved_stdin)


def test_run_program(empty_stdin, capsysbinary):
    assert main(["/bin/sh", "-c", "printf hello"]) == 0
    output = capsysbinary.readouterr().out
    assert output.endswith(SGR_RESET)
    assert COLOR.sub(b"", output[: -len(SGR_RESET)]) == b"hello"


def test_run_program_exit_status_ignored(empty_stdin, capsysbinary):
    assert main(["/bin/false"]) == 0


def test_settings_written_before_logging(user_dirs, empty_stdin):
    assert main(["--log-level", "INFO", "/bin/true"]) == 0
    log_path = user_dirs / "state" / "rainbowpty" / "log" / LOG_FILENAME
    assert "wrote default settings" in log_path.read_text("utf-8")
    settings_path = user_dirs / "config" / "rainbowpty" / "settings.json"
    assert settings_path.exists()
