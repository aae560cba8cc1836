import asyncio
import logging
import os
import time
from typing import List, Mapping, Optional, Set

from .async_runner import STDERR, STDOUT
from .sync_bridge import OutputAccumulator
from .util import (
    DRAIN_GRACE_SECONDS,
    MAX_BYTES_PER_READ,
    POLL_INTERVAL_SECONDS,
    InvalidExecutable,
    Result,
    describe_error,
    resolve_executable,
)

logger = logging.getLogger(__name__)


async def _pump(stream: str, reader: asyncio.StreamReader, events: asyncio.Queue) -> None:
    """Forwards chunks of one stream, then a None chunk at EOF."""
    while True:
        chunk = await reader.read(MAX_BYTES_PER_READ)
        if len(chunk) == 0:
            break
        await events.put((stream, chunk))
    await events.put((stream, None))


async def _consume(
    events: asyncio.Queue, accumulator: OutputAccumulator, open_streams: Set[str]
) -> None:
    """
    Appends chunk events until every stream has sent its EOF marker. The
    open_streams set is updated in place, so a cancelled consumer can be
    resumed with a new call.
    """
    while open_streams:
        stream, chunk = await events.get()
        if chunk is None:
            open_streams.discard(stream)
        elif stream == STDOUT:
            accumulator.append_stdout(chunk)
        else:
            accumulator.append_stderr(chunk)


async def _wait_for_exit(
    p: asyncio.subprocess.Process, deadline: Optional[float]
) -> Optional[int]:
    """
    Polls the child's exit status. Process.wait() may also wait for the pipes
    to close, which a grandchild can hold open. Returns None if the deadline
    passes first.
    """
    while p.returncode is None:
        if deadline is not None and time.time() >= deadline:
            return None
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
    return p.returncode


async def run_async(
    launch_path: str,
    arguments: Optional[List[str]] = None,
    print_output: bool = False,
    output_prefix: Optional[str] = None,
    environment: Optional[Mapping[str, str]] = None,
    timeout_seconds: Optional[float] = None,
) -> Result:
    """Asynchronous counterpart of run(), with the same result contract."""
    deadline = None if timeout_seconds is None else time.time() + timeout_seconds
    accumulator = OutputAccumulator(print_output=print_output, output_prefix=output_prefix)

    try:
        path = resolve_executable(launch_path)
        p = await asyncio.create_subprocess_exec(
            path,
            *(arguments or []),
            env=dict(environment) if environment is not None else None,
            cwd=os.getcwd(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (InvalidExecutable, OSError, TypeError) as exn:
        logger.debug(f"Could not start {launch_path}: {exn}")
        return Result(stdout=None, stderr=describe_error(exn), exit_code=-1)
    logger.debug(f"Started pid={p.pid} path={path}")

    events: asyncio.Queue = asyncio.Queue()
    open_streams = {STDOUT, STDERR}
    pumps = [
        asyncio.create_task(_pump(STDOUT, p.stdout, events)),
        asyncio.create_task(_pump(STDERR, p.stderr, events)),
    ]
    consumer = asyncio.create_task(_consume(events, accumulator, open_streams))

    try:
        exit_code = await _wait_for_exit(p, deadline)
        is_timeout = exit_code is None
        if is_timeout:
            logger.debug(f"Timed out after {timeout_seconds}s, killing pid={p.pid}")
            try:
                p.kill()
            except ProcessLookupError:
                pass
            await _wait_for_exit(p, None)
        # Exit alone is not enough: wait until both streams hit EOF, but never
        # longer than the grace period, since a grandchild may hold them open.
        try:
            await asyncio.wait_for(asyncio.shield(consumer), DRAIN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.debug(f"Output of pid={p.pid} did not drain, returning what arrived")
    finally:
        for task in (*pumps, consumer):
            if not task.done():
                task.cancel()
        await asyncio.gather(*pumps, consumer, return_exceptions=True)
    accumulator.seal()

    logger.debug(f"Finished pid={p.pid} exit_code={exit_code}")
    return accumulator.result(-1 if is_timeout else exit_code, timeout=is_timeout)
