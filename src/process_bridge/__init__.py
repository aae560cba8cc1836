"""Child process runner with chunked output delivery and a synchronous bridge."""

from .async_runner import AsyncRunner
from .interactive_async import Interactive as InteractiveAsync
from .sync_bridge import OutputAccumulator, run
from .sync_bridge_async import run_async
from .util import SUPPORTS_ASYNC_DELIVERY, InvalidExecutable, Result

__all__ = [
    "run",
    "run_async",
    "AsyncRunner",
    "InteractiveAsync",
    "OutputAccumulator",
    "InvalidExecutable",
    "Result",
    "SUPPORTS_ASYNC_DELIVERY",
]

__version__ = "1.0.0"
