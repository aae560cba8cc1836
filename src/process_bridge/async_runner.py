import logging
import os
import subprocess
import threading
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from typeguard import typechecked

from .util import (
    MAX_BYTES_PER_READ,
    STDIN_WRITE_TIMEOUT,
    SUPPORTS_ASYNC_DELIVERY,
    read_to_eof_sync,
    resolve_executable,
    set_nonblocking,
    write_nonblocking_sync,
)

logger = logging.getLogger(__name__)

ChunkHandler = Callable[[bytes], None]

STDOUT = "stdout"
STDERR = "stderr"


@typechecked
class AsyncRunner:
    """
    Owns one child process and its stdin, stdout, and stderr pipes.

    With asynchronous delivery (the default), each output pipe gets a reader
    thread that passes every chunk to the current handler for that stream.
    Handlers therefore never run on the caller's thread, and the stdout and
    stderr handlers may run at the same time as each other. Chunks that
    arrive while no handler is set are discarded.

    With supports_async_delivery=False there are no handlers. The only way to
    get output is read_to_end(), which blocks until both pipes close.

        runner = AsyncRunner("/usr/bin/openssl", on_stdout=print)
        runner.launch()
        runner.write(b"version\\n")
    """

    def __init__(
        self,
        launch_path: str,
        arguments: Optional[List[str]] = None,
        environment: Optional[Mapping[str, str]] = None,
        on_stdout: Optional[ChunkHandler] = None,
        on_stderr: Optional[ChunkHandler] = None,
        supports_async_delivery: bool = SUPPORTS_ASYNC_DELIVERY,
    ) -> None:
        self.launch_path = resolve_executable(launch_path)
        self.arguments = list(arguments) if arguments is not None else []
        self.environment = dict(environment) if environment is not None else None
        self.cwd = os.getcwd()
        self.supports_async_delivery = supports_async_delivery

        self._handlers_lock = threading.Lock()
        self._handlers: Dict[str, Optional[ChunkHandler]] = {STDOUT: None, STDERR: None}
        self._set_handler(STDOUT, on_stdout)
        self._set_handler(STDERR, on_stderr)

        self._process: Optional[subprocess.Popen] = None
        self._readers: List[threading.Thread] = []
        self._reading: Set[str] = set()
        self._closing = False
        self._drained = threading.Event()
        self._stdin_lock = threading.Lock()

    def launch(self) -> None:
        if self._process is not None:
            raise RuntimeError(f"{self.launch_path} was already launched")
        self._process = subprocess.Popen(
            [self.launch_path, *self.arguments],
            env=self.environment,
            cwd=self.cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
        set_nonblocking(self._process.stdin)
        logger.debug(
            f"Started pid={self._process.pid} path={self.launch_path} "
            f"args={self.arguments} cwd={self.cwd}"
        )

        if not self.supports_async_delivery:
            return
        for stream, pipe in ((STDOUT, self._process.stdout), (STDERR, self._process.stderr)):
            reader = threading.Thread(
                target=self._pump,
                args=(stream, pipe),
                name=f"AsyncRunner-{stream}-{self._process.pid}",
                daemon=True,
            )
            self._readers.append(reader)
        self._reading = {STDOUT, STDERR}
        for reader in self._readers:
            reader.start()

    def set_stdout_handler(self, handler: Optional[ChunkHandler] = None) -> "AsyncRunner":
        self._set_handler(STDOUT, handler)
        return self

    def set_stderr_handler(self, handler: Optional[ChunkHandler] = None) -> "AsyncRunner":
        self._set_handler(STDERR, handler)
        return self

    def _set_handler(self, stream: str, handler: Optional[ChunkHandler]) -> None:
        if handler is not None and not self.supports_async_delivery:
            raise RuntimeError(
                "chunk handlers need asynchronous delivery; use read_to_end()"
            )
        with self._handlers_lock:
            self._handlers[stream] = handler

    def _pump(self, stream: str, pipe) -> None:
        fd = pipe.fileno()
        try:
            while True:
                try:
                    chunk = os.read(fd, MAX_BYTES_PER_READ)
                except OSError as exn:
                    logger.debug(f"Stopped reading {stream}: {exn}")
                    break
                if len(chunk) == 0:
                    break
                with self._handlers_lock:
                    handler = self._handlers[stream]
                if handler is None:
                    continue
                try:
                    handler(chunk)
                except Exception:
                    # Keep draining, or the child blocks on a full pipe.
                    logger.exception(f"{stream} handler failed for {self.launch_path}")
        finally:
            with self._handlers_lock:
                self._reading.discard(stream)
                if self._closing:
                    pipe.close()
                if not self._reading:
                    self._drained.set()

    def write(self, data: bytes) -> bool:
        """
        Fire-and-forget write to the child's stdin. Returns False, without
        raising, when the child has exited, stdin is closed, or the child does
        not read within STDIN_WRITE_TIMEOUT seconds.
        """
        if self._process is None or self._process.stdin is None:
            return False
        with self._stdin_lock:
            return write_nonblocking_sync(
                fd=self._process.stdin, data=data, timeout_seconds=STDIN_WRITE_TIMEOUT
            )

    def close_stdin(self) -> None:
        if self._process is None or self._process.stdin is None:
            return
        with self._stdin_lock:
            try:
                self._process.stdin.close()
            except (BrokenPipeError, BlockingIOError):
                pass

    def read_to_end(
        self, timeout_seconds: Optional[float] = None
    ) -> Tuple[bytes, bytes]:
        """
        Blocking read of stdout and stderr until both pipes close, or until
        timeout_seconds elapses. Both pipes are read concurrently. Only
        available when the runner was built without asynchronous delivery.
        """
        if self.supports_async_delivery:
            raise RuntimeError("read_to_end() is only for runners without async delivery")
        if self._process is None:
            raise RuntimeError("read_to_end() called before launch()")
        (stdout, stderr), reached_eof = read_to_eof_sync(
            [self._process.stdout, self._process.stderr], timeout_seconds
        )
        if reached_eof:
            self._drained.set()
        return stdout, stderr

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def exit_code(self) -> Optional[int]:
        return self._process.poll() if self._process is not None else None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Waits for the child to exit. Returns None if timeout elapses first."""
        if self._process is None:
            raise RuntimeError("wait() called before launch()")
        try:
            return self._process.wait(timeout)
        except subprocess.TimeoutExpired:
            return None

    @property
    def is_closed(self) -> bool:
        """True once close() ran and every output pipe was released."""
        if self._process is None or not self._closing:
            return False
        return all(
            pipe is None or pipe.closed
            for pipe in (self._process.stdout, self._process.stderr)
        )

    def wait_for_drain(self, timeout: Optional[float] = None) -> bool:
        """True once both output pipes reached EOF and no handler is running."""
        return self._drained.wait(timeout)

    def kill(self) -> None:
        if self._process is None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass
        logger.debug(f"Killed pid={self._process.pid}")

    def close(self) -> None:
        """
        Releases the pipes. A pipe whose reader is still blocked on it (a
        grandchild may hold it open) is closed by that reader at EOF instead,
        so its descriptor is never reused under a pending read.
        """
        if self._process is None:
            return
        self.close_stdin()
        pipes = {STDOUT: self._process.stdout, STDERR: self._process.stderr}
        with self._handlers_lock:
            self._closing = True
            still_reading = set(self._reading)
            for stream, pipe in pipes.items():
                if pipe is not None and stream not in still_reading:
                    pipe.close()
        if still_reading:
            logger.debug(
                f"pid={self._process.pid} {sorted(still_reading)} still open; "
                "their readers close them at EOF"
            )
