import asyncio
import errno
import fcntl
import io
import os
import re
import signal
import struct
import termios
import threading
import time
from contextlib import suppress

import pytest

from rainbowpty.ansi import RainbowStream
from rainbowpty.rainbow import SGR_RESET, ColorPhase
from rainbowpty.shell import (
    LFLAG,
    Session,
    SessionError,
    acquire_pty,
    copy_window_size,
    enter_raw_mode,
    raw_mode,
    restore_mode,
)

PHASE = ColorPhase(0.1, 3.0, 0.0)

COLOR = re.compile(rb"\x1b\[38;2;\d+;\d+;\d+m")


@pytest.fixture
def pty_pair():
    master, slave = acquire_pty()
    yield master, slave
    os.close(master)
    os.close(slave)


@pytest.fixture
def closed_stdin():
    """A pipe that is already at end of file."""
    read_fd, write_fd = os.pipe()
    os.close(write_fd)
    yield read_fd
    os.close(read_fd)


def set_size(fd: int, columns: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, columns, 0, 0))


def get_size(fd: int) -> tuple[int, int]:
    rows, columns, _, _ = struct.unpack(
        "HHHH", fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    )
    return (columns, rows)


def strip_colors(data: bytes) -> bytes:
    return COLOR.sub(b"", data)


def test_session_error():
    error = SessionError("ioctl", OSError(errno.ENOTTY, "Inappropriate ioctl for device"))
    assert str(error) == "ioctl: Inappropriate ioctl for device"
    assert error.operation == "ioctl"
    assert error.error.errno == errno.ENOTTY


def test_acquire_pty(pty_pair):
    master, slave = pty_pair
    assert os.isatty(master)
    assert os.isatty(slave)


def test_copy_window_size(pty_pair):
    _, slave = pty_pair
    master, other_slave = acquire_pty()
    try:
        set_size(slave, 100, 40)
        assert copy_window_size(slave, master) == (100, 40)
        assert get_size(other_slave) == (100, 40)
    finally:
        os.close(master)
        os.close(other_slave)


def test_copy_window_size_not_a_terminal(closed_stdin, pty_pair):
    master, _ = pty_pair
    with pytest.raises(SessionError) as error_info:
        copy_window_size(closed_stdin, master)
    assert error_info.value.operation == "ioctl"


def test_raw_mode(pty_pair):
    _, slave = pty_pair
    before = termios.tcgetattr(slave)
    assert before[LFLAG] & termios.ECHO
    with raw_mode(slave) as saved_mode:
        assert saved_mode == before
        attrs = termios.tcgetattr(slave)
        assert not attrs[LFLAG] & (termios.ECHO | termios.ICANON | termios.ISIG)
        assert attrs[6][termios.VMIN] in (1, b"\x01")
    assert termios.tcgetattr(slave) == before


def test_raw_mode_restored_on_error(pty_pair):
    _, slave = pty_pair
    before = termios.tcgetattr(slave)
    with pytest.raises(RuntimeError):
        with raw_mode(slave):
            raise RuntimeError("boom")
    assert termios.tcgetattr(slave) == before


def test_raw_mode_not_a_terminal(closed_stdin):
    with raw_mode(closed_stdin) as saved_mode:
        assert saved_mode is None


def test_enter_raw_mode_not_a_terminal(closed_stdin):
    with pytest.raises(SessionError) as error_info:
        enter_raw_mode(closed_stdin)
    assert error_info.value.operation == "tcgetattr"


def test_enter_and_restore_mode(pty_pair):
    _, slave = pty_pair
    before = termios.tcgetattr(slave)
    saved_mode = enter_raw_mode(slave)
    assert saved_mode == before
    restore_mode(slave, saved_mode)
    assert termios.tcgetattr(slave) == before


def test_session(closed_stdin):
    output = io.BytesIO()
    session = Session(
        "/bin/sh",
        ["-c", "printf hello"],
        RainbowStream(PHASE),
        stdin_fd=closed_stdin,
        output=output,
    )
    asyncio.run(session.run())
    expected = RainbowStream(PHASE).feed(b"hello") + SGR_RESET
    assert output.getvalue() == expected
    assert session.process is not None
    assert session.process.returncode == 0
    assert session.master == -1


def test_session_passes_escape_sequences(closed_stdin):
    output = io.BytesIO()
    session = Session(
        "/bin/sh",
        ["-c", r"printf 'a\033[2;5Hb'"],
        RainbowStream(PHASE),
        stdin_fd=closed_stdin,
        output=output,
    )
    asyncio.run(session.run())
    data = output.getvalue()
    assert data.endswith(SGR_RESET)
    assert strip_colors(data[: -len(SGR_RESET)]) == b"a\x1b[2;5Hb"
    assert session.stream.cursor.position == (2, 6)


def test_session_relays_input():
    read_fd, write_fd = os.pipe()
    os.write(write_fd, b"abcde\n")
    os.close(write_fd)
    output = io.BytesIO()
    session = Session(
        "/bin/sh",
        ["-c", "head -c 5"],
        RainbowStream(PHASE),
        stdin_fd=read_fd,
        output=output,
    )
    try:
        asyncio.run(session.run())
    finally:
        os.close(read_fd)
    # The pty echoes the input, then the child writes it back
    assert strip_colors(output.getvalue()).count(b"abcde") == 2


def test_session_program_not_found(closed_stdin, tmp_path):
    output = io.BytesIO()
    session = Session(
        str(tmp_path / "missing"),
        stdin_fd=closed_stdin,
        output=output,
    )
    with pytest.raises(SessionError) as error_info:
        asyncio.run(session.run())
    assert error_info.value.operation == "exec"
    assert output.getvalue() == SGR_RESET


def test_write_output_retries():
    class BusyOutput(io.BytesIO):
        flush_attempts = 0

        def flush(self) -> None:
            self.flush_attempts += 1
            if self.flush_attempts < 3:
                raise BlockingIOError(errno.EAGAIN, "busy")

    output = BusyOutput()
    session = Session("/bin/true", output=output)
    session.write_output(b"data")
    assert output.getvalue() == b"data"
    assert output.flush_attempts == 3


def test_write_output_drops_on_error(caplog):
    class BrokenOutput(io.BytesIO):
        def write(self, data) -> int:
            raise OSError(errno.EIO, "gone")

    session = Session("/bin/true", output=BrokenOutput())
    session.write_output(b"data")
    assert "dropped 4 bytes" in caplog.text


def test_session_stdin_not_pollable():
    stdin_fd = os.open(os.devnull, os.O_RDONLY)
    output = io.BytesIO()
    session = Session(
        "/bin/sh",
        ["-c", "printf hello"],
        RainbowStream(PHASE),
        stdin_fd=stdin_fd,
        output=output,
    )
    try:
        asyncio.run(session.run())
    finally:
        os.close(stdin_fd)
    assert output.getvalue() == RainbowStream(PHASE).feed(b"hello") + SGR_RESET


def test_session_large_input():
    lines = 2000
    read_fd, write_fd = os.pipe()

    def write_input() -> None:
        with os.fdopen(write_fd, "wb") as pipe:
            pipe.write((b"x" * 99 + b"\n") * lines)

    writer = threading.Thread(target=write_input)
    writer.start()
    output = io.BytesIO()
    session = Session(
        "/bin/sh",
        ["-c", f"sleep 0.5; head -n {lines} | wc -l"],
        RainbowStream(PHASE),
        stdin_fd=read_fd,
        output=output,
    )
    try:
        asyncio.run(session.run())
    finally:
        writer.join()
        os.close(read_fd)
    data = strip_colors(output.getvalue()[: -len(SGR_RESET)])
    assert data.split()[-1] == str(lines).encode()


def test_session_child_detached(closed_stdin):
    session = Session(
        "/bin/sh",
        ["-c", "exec </dev/null >/dev/null 2>&1; exec sleep 30"],
        RainbowStream(PHASE),
        stdin_fd=closed_stdin,
        output=io.BytesIO(),
    )
    start = time.monotonic()
    try:
        asyncio.run(session.run())
        assert time.monotonic() - start < 10
        assert session.master == -1
    finally:
        with suppress(ProcessLookupError):
            os.kill(session.process.pid, signal.SIGKILL)


async def run_when_relaying(session: Session, action) -> None:
    """Run a session, calling `action` once it is relaying."""
    task = asyncio.create_task(session.run())
    while session._finished is None:
        await asyncio.sleep(0.01)
    await action()
    await task


def test_session_terminate(closed_stdin):
    output = io.BytesIO()
    session = Session(
        "/bin/sh",
        ["-c", "printf ready; exec sleep 30"],
        RainbowStream(PHASE),
        stdin_fd=closed_stdin,
        output=output,
    )

    async def terminate() -> None:
        os.kill(os.getpid(), signal.SIGTERM)

    start = time.monotonic()
    asyncio.run(run_when_relaying(session, terminate))
    assert time.monotonic() - start < 10
    assert session.process.returncode == -signal.SIGHUP
    assert output.getvalue().endswith(SGR_RESET)


def test_session_resize(pty_pair):
    terminal, stdin_fd = pty_pair
    set_size(stdin_fd, 80, 24)
    before = termios.tcgetattr(stdin_fd)
    output = io.BytesIO()
    session = Session(
        "/bin/sh",
        ["-c", "stty size; read line; stty size"],
        RainbowStream(PHASE),
        stdin_fd=stdin_fd,
        output=output,
    )

    async def resize() -> None:
        for _ in range(500):
            if b"24 80" in strip_colors(output.getvalue()):
                break
            await asyncio.sleep(0.01)
        set_size(stdin_fd, 100, 40)
        os.kill(os.getpid(), signal.SIGWINCH)
        await asyncio.sleep(0.2)
        os.write(terminal, b"\r")

    asyncio.run(run_when_relaying(session, resize))
    data = strip_colors(output.getvalue())
    assert data.index(b"24 80") < data.index(b"40 100")
    assert termios.tcgetattr(stdin_fd) == before
