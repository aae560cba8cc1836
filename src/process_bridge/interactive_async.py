from typeguard import typechecked
from typing import Dict, List, Mapping, Optional, Tuple
import asyncio
import time

from .async_runner import STDERR, STDOUT, AsyncRunner
from .util import DRAIN_GRACE_SECONDS, POLL_INTERVAL_SECONDS


@typechecked
class Interactive:
    """
    Asynchronous interface for a prompt/response session with a subprocess.

    Must be created inside a running event loop. The runner's reader threads
    hand chunks over to the loop, where they are read with read_chunk() or
    read_until().
    """

    def __init__(
        self,
        launch_path: str,
        arguments: Optional[List[str]] = None,
        environment: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._events: asyncio.Queue = asyncio.Queue()
        self._saved: Dict[str, bytes] = {STDOUT: b"", STDERR: b""}
        self._runner = AsyncRunner(
            launch_path,
            arguments=arguments,
            environment=environment,
            on_stdout=lambda chunk: self._forward(STDOUT, chunk),
            on_stderr=lambda chunk: self._forward(STDERR, chunk),
        )
        self._runner.launch()

    def _forward(self, stream: str, chunk: bytes) -> None:
        self._loop.call_soon_threadsafe(self._events.put_nowait, (stream, chunk))

    @property
    def pid(self) -> Optional[int]:
        return self._runner.pid

    async def close(self, nice_timeout_seconds: int) -> int:
        self._runner.close_stdin()
        for _ in range(int(nice_timeout_seconds / POLL_INTERVAL_SECONDS)):
            if self._runner.exit_code is not None:
                break
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
        if self._runner.is_running:
            self._runner.kill()
        exit_code = await self._loop.run_in_executor(None, self._runner.wait)
        await self._loop.run_in_executor(
            None, self._runner.wait_for_drain, DRAIN_GRACE_SECONDS
        )
        self._runner.close()
        return exit_code

    async def write(self, stdin_data: bytes) -> bool:
        # The runner's write may wait for the child to read, so keep it off the loop.
        return await self._loop.run_in_executor(None, self._runner.write, stdin_data)

    async def read_chunk(self, timeout_seconds: float) -> Optional[Tuple[str, bytes]]:
        """
        Returns the next (stream, chunk) pair, or None on timeout or once the
        child closed both output pipes and every chunk was read.
        """
        for stream in (STDOUT, STDERR):
            if len(self._saved[stream]) > 0:
                chunk, self._saved[stream] = self._saved[stream], b""
                return stream, chunk
        return await self._read_event(timeout_seconds)

    async def _read_event(self, timeout_seconds: float) -> Optional[Tuple[str, bytes]]:
        deadline = time.time() + timeout_seconds
        while True:
            drained = self._runner.wait_for_drain(0)
            # Let chunks scheduled by the reader threads reach the queue.
            await asyncio.sleep(0)
            if not self._events.empty():
                return self._events.get_nowait()
            if drained:
                return None
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            try:
                return await asyncio.wait_for(
                    self._events.get(), min(remaining, POLL_INTERVAL_SECONDS)
                )
            except asyncio.TimeoutError:
                continue

    async def read_until(
        self, marker: bytes, stream: str = STDOUT, timeout_seconds: float = 15
    ) -> Optional[bytes]:
        """
        Reads stream up to and including the first occurrence of marker.
        Output of the other stream is kept for later reads. Returns None on
        timeout or end of output.
        """
        deadline = time.time() + timeout_seconds
        while True:
            saved = self._saved[stream]
            index = saved.find(marker)
            if index >= 0:
                end = index + len(marker)
                self._saved[stream] = saved[end:]
                return saved[:end]
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            event = await self._read_event(remaining)
            if event is None:
                return None
            name, chunk = event
            self._saved[name] += chunk
