from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import sys
import termios
from contextlib import contextmanager, suppress
from typing import BinaryIO, Iterator, Mapping, Sequence

from rainbowpty.ansi import RainbowStream
from rainbowpty.rainbow import SGR_RESET

log = logging.getLogger("rainbowpty")

READ_SIZE = 8192
STDIN_FILENO = 0
CHILD_EXIT_TIMEOUT = 1.0
"""Seconds to wait for the child to be reaped once its output has ended."""

# Indices in to the list returned by termios.tcgetattr
IFLAG, OFLAG, CFLAG, LFLAG, ISPEED, OSPEED, CC = range(7)


class SessionError(Exception):
    """An OS level operation required by the session failed."""

    def __init__(self, operation: str, error: OSError) -> None:
        self.operation = operation
        self.error = error
        super().__init__(f"{operation}: {error.strerror or error}")


def acquire_pty() -> tuple[int, int]:
    """Open a pseudo-terminal.

    Raises:
        SessionError: If a pty could not be allocated.

    Returns:
        A tuple of master and slave file descriptors.
    """
    try:
        return pty.openpty()
    except OSError as error:
        raise SessionError("openpty", error) from None


def enter_raw_mode(fd: int) -> list:
    """Put a terminal in to raw mode.

    Input is delivered a byte at a time, with no echo, no line editing, and
    no signal generating keys. Output post-processing is disabled.

    Args:
        fd: Terminal file descriptor.

    Raises:
        SessionError: If the terminal attributes could not be read or set.

    Returns:
        The previous attributes, to pass to `restore_mode`.
    """
    try:
        saved_mode = termios.tcgetattr(fd)
    except termios.error as error:
        raise SessionError("tcgetattr", OSError(*error.args)) from None

    attrs = list(saved_mode)
    attrs[CC] = list(saved_mode[CC])
    attrs[IFLAG] &= ~(
        termios.BRKINT | termios.ICRNL | termios.INPCK | termios.ISTRIP | termios.IXON
    )
    attrs[OFLAG] &= ~termios.OPOST
    attrs[CFLAG] &= ~(termios.CSIZE | termios.PARENB)
    attrs[CFLAG] |= termios.CS8
    attrs[LFLAG] &= ~(termios.ECHO | termios.ICANON | termios.IEXTEN | termios.ISIG)
    attrs[CC][termios.VMIN] = 1
    attrs[CC][termios.VTIME] = 0

    try:
        termios.tcsetattr(fd, termios.TCSAFLUSH, attrs)
    except termios.error as error:
        raise SessionError("tcsetattr", OSError(*error.args)) from None
    return saved_mode


def restore_mode(fd: int, saved_mode: list) -> None:
    """Restore terminal attributes saved by `enter_raw_mode`.

    Raises:
        SessionError: If the attributes could not be set.
    """
    try:
        termios.tcsetattr(fd, termios.TCSAFLUSH, saved_mode)
    except termios.error as error:
        raise SessionError("tcsetattr", OSError(*error.args)) from None


@contextmanager
def raw_mode(fd: int) -> Iterator[list | None]:
    """Context manager to put a terminal in raw mode, and restore it on exit.

    Does nothing if `fd` isn't a terminal.

    Args:
        fd: Terminal file descriptor.
    """
    if not os.isatty(fd):
        yield None
        return
    saved_mode = enter_raw_mode(fd)
    try:
        yield saved_mode
    finally:
        restore_mode(fd, saved_mode)


def copy_window_size(from_fd: int, to_fd: int) -> tuple[int, int]:
    """Copy the terminal dimensions from one terminal to another.

    Args:
        from_fd: Terminal to read the size from.
        to_fd: Terminal to resize.

    Raises:
        SessionError: If the size could not be read or written.

    Returns:
        Size as (columns, rows).
    """
    try:
        size = fcntl.ioctl(from_fd, termios.TIOCGWINSZ, b"\0" * 8)
        fcntl.ioctl(to_fd, termios.TIOCSWINSZ, size)
    except OSError as error:
        raise SessionError("ioctl", error) from None
    rows, columns, _, _ = struct.unpack("HHHH", size)
    return (columns, rows)


def _set_controlling_terminal() -> None:
    """Make standard input (the pty slave) the controlling terminal of the child."""
    # Job control is unavailable without a controlling terminal, but the
    # program can still run.
    with suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


async def spawn_child(
    program: str,
    args: Sequence[str],
    env: Mapping[str, str] | None,
    slave_fd: int,
) -> asyncio.subprocess.Process:
    """Run a program in a new session, connected to the pty slave.

    Args:
        program: Path to the executable.
        args: Arguments (not including the program).
        env: Environment, or `None` to inherit.
        slave_fd: Pty slave file descriptor.

    Raises:
        SessionError: If the program could not be started.

    Returns:
        The child process.
    """
    try:
        return await asyncio.create_subprocess_exec(
            program,
            *args,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            env=env,
            start_new_session=True,
            preexec_fn=_set_controlling_terminal,
        )
    except OSError as error:
        raise SessionError("exec", error) from None


class _InputProtocol(asyncio.BaseProtocol):
    """Flow control for input written to the pty master."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def pause_writing(self) -> None:
        self.session._watch_stdin(False)

    def resume_writing(self) -> None:
        self.session._watch_stdin(True)


class Session:
    """Runs a child in a pty, and relays its output through a `RainbowStream`."""

    def __init__(
        self,
        program: str,
        args: Sequence[str] = (),
        stream: RainbowStream | None = None,
        *,
        env: Mapping[str, str] | None = None,
        stdin_fd: int = STDIN_FILENO,
        output: BinaryIO | None = None,
    ) -> None:
        self.program = program
        self.args = list(args)
        self.stream = RainbowStream() if stream is None else stream
        self.env = env
        self.stdin_fd = stdin_fd
        self.output = sys.stdout.buffer if output is None else output
        self.master = -1
        self.process: asyncio.subprocess.Process | None = None
        self._finished: asyncio.Future[None] | None = None
        self._writer: asyncio.WriteTransport | None = None
        self._stdin_open = False

    @property
    def is_terminal(self) -> bool:
        """Is standard input a terminal?"""
        return os.isatty(self.stdin_fd)

    async def run(self) -> None:
        """Run the session until the child exits.

        Raises:
            SessionError: If the session could not be set up, or relaying failed.
        """
        master, slave = acquire_pty()
        self.master = master
        try:
            try:
                if self.is_terminal:
                    copy_window_size(self.stdin_fd, master)
                self.process = await spawn_child(
                    self.program, self.args, self.env, slave
                )
            finally:
                os.close(slave)
            log.info("started %r (pid %s)", self.program, self.process.pid)

            flags = fcntl.fcntl(master, fcntl.F_GETFL)
            fcntl.fcntl(master, fcntl.F_SETFL, flags | os.O_NONBLOCK)

            with raw_mode(self.stdin_fd):
                await self._relay(self.process)
        finally:
            self.write_output(self.stream.flush() + SGR_RESET)
            os.close(master)
            self.master = -1

    async def _relay(self, process: asyncio.subprocess.Process) -> None:
        loop = asyncio.get_running_loop()
        master = self.master
        writer, _ = await loop.connect_write_pipe(
            lambda: _InputProtocol(self), os.fdopen(os.dup(master), "wb", 0)
        )
        self._writer = writer
        self._stdin_open = True
        self._finished = loop.create_future()

        self._watch_stdin(True)
        loop.add_reader(master, self._on_master)
        loop.add_signal_handler(signal.SIGWINCH, self._on_resize)
        for signum in (signal.SIGTERM, signal.SIGHUP):
            loop.add_signal_handler(signum, self._on_terminate, signum)
        wait_task = asyncio.create_task(self._wait_child(process))
        try:
            await self._finished
            # A child which has detached from the pty isn't waited for
            done, _ = await asyncio.wait([wait_task], timeout=CHILD_EXIT_TIMEOUT)
            if not done:
                log.info("pid %s is still running; not waiting", process.pid)
        finally:
            wait_task.cancel()
            with suppress(asyncio.CancelledError):
                await wait_task
            loop.remove_reader(self.stdin_fd)
            loop.remove_reader(master)
            for signum in (signal.SIGWINCH, signal.SIGTERM, signal.SIGHUP):
                loop.remove_signal_handler(signum)
            # Input the child never read is discarded
            writer.abort()
            self._writer = None

    def _finish(self, error: SessionError | None = None) -> None:
        if self._finished is None or self._finished.done():
            return
        if error is None:
            self._finished.set_result(None)
        else:
            log.error("%s", error)
            self._finished.set_exception(error)

    async def _wait_child(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        log.info("child exited with %s", returncode)
        # Anything the child wrote before exiting is still in the pty
        try:
            while self._read_master():
                pass
        except SessionError as error:
            self._finish(error)
        self._finish()

    def _on_stdin(self) -> None:
        try:
            data = os.read(self.stdin_fd, READ_SIZE)
        except OSError as error:
            self._finish(SessionError("read", error))
            return
        if not data:
            log.debug("end of input")
            self._stdin_open = False
            self._watch_stdin(False)
            return
        if self._writer is not None:
            self._writer.write(data)

    def _watch_stdin(self, watch: bool) -> None:
        """Start or stop reading standard input.

        Reading stops while the pty's input buffer is full, and resumes
        when it drains.

        Args:
            watch: `True` to read input, `False` to stop.
        """
        loop = asyncio.get_running_loop()
        if not watch:
            loop.remove_reader(self.stdin_fd)
            return
        if not self._stdin_open:
            return
        try:
            loop.add_reader(self.stdin_fd, self._on_stdin)
        except PermissionError:
            # epoll refuses regular files and /dev/null
            log.info("standard input can't be watched; treating it as empty")
            self._stdin_open = False

    def _on_master(self) -> None:
        try:
            self._read_master()
        except SessionError as error:
            self._finish(error)

    def _read_master(self) -> bool:
        """Relay a single read from the pty master.

        Raises:
            SessionError: If the read failed.

        Returns:
            `True` if data was relayed, `False` if there was nothing to read.
        """
        try:
            data = os.read(self.master, READ_SIZE)
        except BlockingIOError:
            return False
        except OSError as error:
            # EIO means the slave side was closed (the child has gone)
            if error.errno != errno.EIO:
                raise SessionError("read", error) from None
            data = b""
        if not data:
            self._finish()
            return False
        self.write_output(self.stream.feed(data))
        return True

    def _on_resize(self) -> None:
        if not self.is_terminal:
            return
        try:
            columns, rows = copy_window_size(self.stdin_fd, self.master)
        except SessionError as error:
            log.warning("unable to resize; %s", error)
        else:
            log.debug("resized to %sx%s", columns, rows)

    def _on_terminate(self, signum: int) -> None:
        log.info("received %s", signal.Signals(signum).name)
        if self.process is not None and self.process.returncode is None:
            with suppress(ProcessLookupError):
                self.process.send_signal(signal.SIGHUP)
        self._finish()

    def write_output(self, data: bytes) -> None:
        """Write to the terminal, retrying if the terminal is busy.

        Args:
            data: Bytes to write.
        """
        output = self.output
        while True:
            try:
                output.write(data)
                break
            except (BlockingIOError, InterruptedError) as error:
                written = getattr(error, "characters_written", 0)
                data = data[written:]
            except OSError as error:
                log.warning("dropped %d bytes of output; %s", len(data), error)
                return
        while True:
            try:
                output.flush()
                break
            except (BlockingIOError, InterruptedError):
                continue
            except OSError as error:
                log.warning("unable to flush output; %s", error)
                return
