import logging
import sys
import threading
import time
from typing import Callable, List, Mapping, Optional

from typeguard import TypeCheckError

from .async_runner import AsyncRunner
from .util import (
    DRAIN_GRACE_SECONDS,
    POLL_INTERVAL_SECONDS,
    SUPPORTS_ASYNC_DELIVERY,
    InvalidExecutable,
    Result,
    describe_error,
    utf8_decoder,
)

logger = logging.getLogger(__name__)


def echo_to_console(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class OutputAccumulator:
    """
    Collects the stdout and stderr chunks of one run.

    Appends may come from two reader threads at once. The buffers and the
    decoders are guarded by one lock, and a count of in-flight appends is
    kept under the same lock. Buffers may only be read once that count is
    zero, which wait_idle() waits for. After seal(), late chunks from a reader
    that fetched its handler before it was detached are dropped.
    """

    def __init__(
        self,
        print_output: bool = False,
        output_prefix: Optional[str] = None,
        echo: Callable[[str], None] = echo_to_console,
    ):
        self.print_output = print_output
        self.prefix = f"{output_prefix}: " if output_prefix is not None else ""
        self.echo = echo
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight = 0
        self._sealed = False
        self._stdout: List[str] = []
        self._stderr: List[str] = []
        self._stdout_decoder = utf8_decoder()
        self._stderr_decoder = utf8_decoder()

    @property
    def is_appending(self) -> bool:
        with self._lock:
            return self._in_flight > 0

    def _begin(self) -> None:
        with self._lock:
            self._in_flight += 1

    def _end(self) -> None:
        with self._lock:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.notify_all()

    def append_stdout(self, chunk: bytes) -> None:
        self._begin()
        try:
            with self._lock:
                if self._sealed:
                    return
                text = self._stdout_decoder.decode(chunk)
                if len(text) == 0:
                    return
                line = self.prefix + text
                self._stdout.append(line)
            if self.print_output:
                self.echo(line)
        finally:
            self._end()

    def append_stderr(self, chunk: bytes) -> None:
        # stderr is never prefixed or echoed.
        self._begin()
        try:
            with self._lock:
                if self._sealed:
                    return
                text = self._stderr_decoder.decode(chunk)
                if len(text) > 0:
                    self._stderr.append(text)
        finally:
            self._end()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout)

    def seal(self) -> None:
        """Waits for in-flight appends, then ignores any further chunk."""
        with self._idle:
            self._idle.wait_for(lambda: self._in_flight == 0)
            self._sealed = True

    def result(self, exit_code: int, timeout: bool = False) -> Result:
        with self._lock:
            if self._in_flight > 0:
                raise RuntimeError("output read while a chunk is still being appended")
            stdout = "".join(self._stdout) + self._stdout_decoder.decode(b"", final=True)
            stderr = "".join(self._stderr) + self._stderr_decoder.decode(b"", final=True)
        return Result(
            stdout=stdout,
            stderr=stderr if len(stderr.strip()) > 0 else None,
            exit_code=exit_code,
            timeout=timeout,
        )


def _wait_for_exit(runner: AsyncRunner, deadline: Optional[float]) -> Optional[int]:
    """
    Waits for the child to exit, waking every POLL_INTERVAL_SECONDS. Returns
    None if the deadline passes first.
    """
    while True:
        interval = POLL_INTERVAL_SECONDS
        if deadline is not None:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            interval = min(interval, remaining)
        exit_code = runner.wait(interval)
        if exit_code is not None:
            return exit_code


def _wait_for_drain(
    runner: AsyncRunner, accumulator: OutputAccumulator, deadline: Optional[float]
) -> bool:
    """
    Exit does not mean all output was delivered: the last chunks can still be
    in a pipe or inside a handler. Waits until both pipes reached EOF and no
    append is in flight.
    """
    while True:
        interval = POLL_INTERVAL_SECONDS
        if deadline is not None:
            remaining = deadline - time.time()
            if remaining <= 0:
                return False
            interval = min(interval, remaining)
        if runner.wait_for_drain(interval) and accumulator.wait_idle(interval):
            return True


def _read_until_exit(
    runner: AsyncRunner, accumulator: OutputAccumulator, deadline: Optional[float]
) -> Optional[int]:
    """
    Blocking path. Reads in short slices so that exit is noticed even while
    something else still holds the pipes. Once the child has exited, EOF is
    waited for at most DRAIN_GRACE_SECONDS. Returns None if the deadline
    passes before exit.
    """
    while not runner.wait_for_drain(0):
        exit_code = runner.exit_code
        interval = POLL_INTERVAL_SECONDS if exit_code is None else DRAIN_GRACE_SECONDS
        if exit_code is None and deadline is not None:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            interval = min(interval, remaining)
        stdout, stderr = runner.read_to_end(interval)
        accumulator.append_stdout(stdout)
        accumulator.append_stderr(stderr)
        if exit_code is not None:
            return exit_code
    return _wait_for_exit(runner, deadline)


def run(
    launch_path: str,
    arguments: Optional[List[str]] = None,
    print_output: bool = False,
    output_prefix: Optional[str] = None,
    environment: Optional[Mapping[str, str]] = None,
    timeout_seconds: Optional[float] = None,
    supports_async_delivery: bool = SUPPORTS_ASYNC_DELIVERY,
) -> Result:
    """
    Runs the program at launch_path to completion and returns everything it
    wrote to stdout and stderr, along with its exit code. Never raises.

    When print_output is set, each stdout chunk is also written to the console
    as it arrives. An output_prefix is prepended to each stdout chunk. stderr
    is None when the child wrote nothing but whitespace to it.

    If the program cannot be started, the result is (None, description, -1).
    If timeout_seconds elapses first, the child is killed and the result has
    timeout=True and exit_code -1.
    """
    deadline = None if timeout_seconds is None else time.time() + timeout_seconds
    accumulator = OutputAccumulator(print_output=print_output, output_prefix=output_prefix)

    try:
        runner = AsyncRunner(
            launch_path,
            arguments=arguments,
            environment=environment,
            supports_async_delivery=supports_async_delivery,
        )
        if runner.supports_async_delivery:
            runner.set_stdout_handler(accumulator.append_stdout)
            runner.set_stderr_handler(accumulator.append_stderr)
        runner.launch()
    except (InvalidExecutable, OSError, TypeError, TypeCheckError) as exn:
        logger.debug(f"Could not start {launch_path}: {exn}")
        return Result(stdout=None, stderr=describe_error(exn), exit_code=-1)

    # Nothing is written to stdin, so close it for children that read until EOF.
    runner.close_stdin()

    if runner.supports_async_delivery:
        exit_code = _wait_for_exit(runner, deadline)
    else:
        exit_code = _read_until_exit(runner, accumulator, deadline)
    is_timeout = exit_code is None
    if is_timeout:
        logger.debug(f"Timed out after {timeout_seconds}s, killing pid={runner.pid}")
        runner.kill()
        runner.wait()
        if not runner.supports_async_delivery:
            stdout, stderr = runner.read_to_end(DRAIN_GRACE_SECONDS)
            accumulator.append_stdout(stdout)
            accumulator.append_stderr(stderr)

    # A grandchild can keep the pipes open long after the child exits, so the
    # wait for EOF is always bounded.
    if runner.supports_async_delivery:
        drained = _wait_for_drain(
            runner, accumulator, time.time() + DRAIN_GRACE_SECONDS
        )
    else:
        drained = runner.wait_for_drain(0)
    if not drained:
        logger.debug(f"Output of pid={runner.pid} did not drain, returning what arrived")
        if runner.supports_async_delivery:
            runner.set_stdout_handler(None)
            runner.set_stderr_handler(None)
    accumulator.seal()
    runner.close()
    logger.debug(f"Finished pid={runner.pid} exit_code={exit_code}")

    return accumulator.result(-1 if is_timeout else exit_code, timeout=is_timeout)
