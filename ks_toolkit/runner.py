"""Utility helpers for running subprocesses consistently."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import IO, Any

CHUNK_SIZE = 1024
TERMINATE_GRACE_SECONDS = 10.0

Command = tuple[str, ...]


@dataclass(slots=True)
class CommandError(RuntimeError):
    """Raised when a subprocess exits with a non-zero status."""

    command: Sequence[str]
    returncode: int

    def __str__(self) -> str:
        if self.returncode < 0:
            return f"{format_command(self.command)} was killed by signal {-self.returncode}"
        return f"{format_command(self.command)} exited with status {self.returncode}"


class CommandLaunchError(RuntimeError):
    """Raised when a subprocess cannot be started at all."""

    def __init__(self, command: Sequence[str], cause: OSError):
        super().__init__(f"failed to start {format_command(command)}: {cause}")
        self.command = tuple(command)
        self.cause = cause


class CommandTimeoutError(RuntimeError):
    """Raised when a subprocess outlives its deadline and is terminated."""

    def __init__(self, command: Sequence[str], timeout: float):
        super().__init__(f"{format_command(command)} timed out after {timeout:g}s")
        self.command = tuple(command)
        self.timeout = timeout


class RelayError(RuntimeError):
    """Raised when forwarding a subprocess output stream failed."""

    def __init__(self, command: Sequence[str], stream: str, cause: BaseException):
        super().__init__(f"failed to relay {stream} of {format_command(command)}: {cause}")
        self.command = tuple(command)
        self.stream = stream
        self.cause = cause


@dataclass(slots=True)
class CommandResult:
    """Outcome of one ``run_command`` invocation.

    The process exit error and both relay errors are kept separately. The
    summary ``error`` prefers the exit error, then the stdout relay, then the
    stderr relay.
    """

    command: Command
    returncode: int | None = None
    exit_error: BaseException | None = None
    stdout_error: BaseException | None = None
    stderr_error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error(self) -> BaseException | None:
        if self.exit_error is not None:
            return self.exit_error
        if self.stdout_error is not None:
            return RelayError(self.command, "stdout", self.stdout_error)
        if self.stderr_error is not None:
            return RelayError(self.command, "stderr", self.stderr_error)
        return None

    def check(self) -> CommandResult:
        error = self.error
        if error is not None:
            raise error
        return self


def format_command(command: Sequence[str]) -> str:
    """Render a subprocess command for display or logging."""

    return " ".join(shlex.quote(part) for part in command)


def _merge_env(env: Mapping[str, str] | None) -> Mapping[str, str] | None:
    if env is None:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


def _binary_sink(stream: Any) -> IO[bytes]:
    return getattr(stream, "buffer", stream)


def relay_stream(source: IO[bytes], sink: IO[bytes], *, chunk_size: int = CHUNK_SIZE) -> int:
    """Copy ``source`` into ``sink`` until end-of-stream and return the byte count.

    Read and write failures propagate immediately. Whatever was already
    written stays written.
    """

    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")

    read = getattr(source, "read1", source.read)
    flush = getattr(sink, "flush", None)
    total = 0
    while True:
        chunk = read(chunk_size)
        if not chunk:
            return total
        sink.write(chunk)
        if flush is not None:
            flush()
        total += len(chunk)


def _drain(source: IO[bytes]) -> None:
    read = getattr(source, "read1", source.read)
    try:
        while read(CHUNK_SIZE):
            pass
    except (OSError, ValueError):
        return


def _relay_worker(
    source: IO[bytes],
    sink: IO[bytes],
    errors: dict[str, BaseException],
    stream: str,
) -> None:
    try:
        relay_stream(source, sink)
    except Exception as exc:
        errors[stream] = exc
        # The child must never block on a pipe nobody reads.
        _drain(source)


def _terminate_group(process: subprocess.Popen[bytes]) -> None:
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


def run_command(
    command: Sequence[str],
    *,
    stdout: Any = None,
    stderr: Any = None,
    env: Mapping[str, str] | None = None,
    cwd: os.PathLike[str] | str | None = None,
    dry_run: bool = False,
    timeout: float | None = None,
) -> CommandResult:
    """Run ``command`` while relaying its stdout and stderr concurrently.

    Both relays are joined before the exit status is collected so no output
    is truncated. Launch failures raise :class:`CommandLaunchError`; every
    other failure is recorded on the returned :class:`CommandResult`.
    """

    argv: Command = tuple(command)
    print(f"$ {format_command(argv)}", flush=True)
    if dry_run:
        return CommandResult(argv, returncode=0)

    stdout_sink = _binary_sink(stdout if stdout is not None else sys.stdout)
    stderr_sink = _binary_sink(stderr if stderr is not None else sys.stderr)

    try:
        process = subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=_merge_env(env),
            cwd=str(cwd) if cwd is not None else None,
            start_new_session=timeout is not None,
        )
    except OSError as exc:
        raise CommandLaunchError(argv, exc) from exc

    errors: dict[str, BaseException] = {}
    relays = [
        threading.Thread(
            target=_relay_worker,
            args=(process.stdout, stdout_sink, errors, "stdout"),
            daemon=True,
        ),
        threading.Thread(
            target=_relay_worker,
            args=(process.stderr, stderr_sink, errors, "stderr"),
            daemon=True,
        ),
    ]
    for relay in relays:
        relay.start()

    exit_error: BaseException | None = None
    deadline = time.monotonic() + timeout if timeout is not None else None
    try:
        for relay in relays:
            if deadline is None:
                relay.join()
                continue
            relay.join(max(deadline - time.monotonic(), 0))
            if relay.is_alive():
                exit_error = CommandTimeoutError(argv, timeout)
                _terminate_group(process)
                relay.join()
        if deadline is None:
            returncode = process.wait()
        else:
            try:
                returncode = process.wait(max(deadline - time.monotonic(), 0))
            except subprocess.TimeoutExpired:
                # The pipes closed early but the process group is still running.
                exit_error = CommandTimeoutError(argv, timeout)
                _terminate_group(process)
                returncode = process.wait()
    finally:
        for pipe in (process.stdout, process.stderr):
            if pipe is not None:
                pipe.close()

    if exit_error is None and returncode != 0:
        exit_error = CommandError(argv, returncode)

    return CommandResult(
        argv,
        returncode=returncode,
        exit_error=exit_error,
        stdout_error=errors.get("stdout"),
        stderr_error=errors.get("stderr"),
    )

