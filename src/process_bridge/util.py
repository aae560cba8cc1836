import codecs
import dataclasses
import errno
import fcntl
import os
import select
import time
from typing import Iterator, List, Optional, Tuple, Union

MAX_BYTES_PER_READ = 1024
POLL_INTERVAL_SECONDS = 0.1
STDIN_WRITE_TIMEOUT = 15
DRAIN_GRACE_SECONDS = 1.0
# Chunk handlers are delivered on reader threads. Runners built with
# supports_async_delivery=False only offer the blocking read_to_end path.
SUPPORTS_ASYNC_DELIVERY = True


class InvalidExecutable(Exception):
    """The launch path does not name an existing, executable file."""

    def __init__(self, path: Optional[str]):
        super().__init__(f"File is not executable at path: {path}")
        self.path = path


@dataclasses.dataclass
class Result:
    stdout: Optional[str]
    stderr: Optional[str]
    exit_code: int
    timeout: bool = False

    def __iter__(self) -> Iterator[Union[Optional[str], int]]:
        # Unpacks as the (stdout, stderr, exit_code) triple.
        return iter((self.stdout, self.stderr, self.exit_code))


def describe_error(exn: BaseException) -> str:
    return f"{type(exn).__name__}: {exn}"


def normalize_launch_path(launch_path: str) -> Optional[str]:
    """
    Expands ~, collapses . and .. components, and makes the path absolute
    against the current directory. Returns None for an empty path.
    """
    if not launch_path:
        return None
    return os.path.abspath(os.path.expanduser(launch_path))


def is_executable_file(path: Optional[str]) -> bool:
    return path is not None and os.path.isfile(path) and os.access(path, os.X_OK)


def resolve_executable(launch_path: str) -> str:
    path = normalize_launch_path(launch_path)
    if not is_executable_file(path):
        raise InvalidExecutable(path)
    return path


def set_nonblocking(reader):
    fd = reader.fileno()
    fl = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, fl | os.O_NONBLOCK)


def utf8_decoder():
    """A stateful decoder, so that characters split across chunks survive."""
    return codecs.getincrementaldecoder("utf-8")(errors="ignore")


def write_nonblocking_sync(*, fd, data: bytes, timeout_seconds: float) -> bool:
    """
    Writes to a nonblocking file descriptor with the timeout.

    Returns True if all the data was written. False indicates that there was
    a timeout, a broken pipe, or that the pipe was already closed.
    """
    start_time_seconds = time.time()

    # A slice, data[..], would create a copy. A memoryview does not.
    mv = memoryview(data)
    start = 0
    while start < len(mv):
        try:
            # An unbuffered pipe returns None instead of raising when full.
            written = fd.write(mv[start:])
            if written is None:
                written = 0
            start = start + written
        except (BrokenPipeError, ValueError):
            # ValueError: the stdin file object was closed under us.
            return False
        except BlockingIOError as exn:
            if exn.errno != errno.EAGAIN:
                return False
            start = start + exn.characters_written
            written = 0

        if written == 0 and start < len(mv):
            wait_timeout = timeout_seconds - (time.time() - start_time_seconds)
            if wait_timeout <= 0:
                return False
            select_result = select.select([], [fd], [], wait_timeout)
            if len(select_result[1]) == 0:
                return False
    return True


def read_to_eof_sync(
    readers, timeout_seconds: Optional[float] = None
) -> Tuple[List[bytes], bool]:
    """
    Reads every reader until EOF, all of them at once, so that a child that
    fills one pipe while we wait on another cannot deadlock. Stops early when
    timeout_seconds elapses. Returns the bytes read from each reader and
    whether every reader reached EOF.
    """
    for reader in readers:
        set_nonblocking(reader)
    deadline = None if timeout_seconds is None else time.time() + timeout_seconds
    bufs: List[List[bytes]] = [[] for _ in readers]
    open_indices = list(range(len(readers)))
    while open_indices:
        wait_timeout = None
        if deadline is not None:
            wait_timeout = deadline - time.time()
            if wait_timeout <= 0:
                break
        ready, _, _ = select.select(
            [readers[i] for i in open_indices], [], [], wait_timeout
        )
        for reader in ready:
            i = readers.index(reader)
            try:
                data = os.read(reader.fileno(), MAX_BYTES_PER_READ)
            except BlockingIOError:
                continue
            if len(data) == 0:
                open_indices.remove(i)
            else:
                bufs[i].append(data)
    return [b"".join(chunks) for chunks in bufs], not open_indices
