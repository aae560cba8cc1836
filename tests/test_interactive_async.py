"""Interactive session tests, driving the REPL fixture over stdin."""

from __future__ import annotations

import pytest

from process_bridge import InteractiveAsync, InvalidExecutable


class TestInteractive:
    @pytest.mark.asyncio
    async def test_invalid_command_after_prompt(self, python: str, repl_args: list[str]):
        session = InteractiveAsync(python, arguments=repl_args)
        assert await session.read_until(b"repl> ", timeout_seconds=10) == b"repl> "
        assert await session.write(b"foobar\n")
        response = await session.read_until(b"\n", stream="stderr", timeout_seconds=10)
        assert response == b"'foobar' is an invalid command\n"
        assert await session.close(5) == 0

    @pytest.mark.asyncio
    async def test_echo_round_trip(self, python: str, repl_args: list[str]):
        session = InteractiveAsync(python, arguments=repl_args)
        await session.read_until(b"repl> ", timeout_seconds=10)
        await session.write(b"echo ping\n")
        assert await session.read_until(b"ping\n", timeout_seconds=10) == b"ping\n"
        await session.write(b"quit\n")
        assert await session.close(5) == 0

    @pytest.mark.asyncio
    async def test_read_chunk_returns_none_at_end(self, python: str):
        session = InteractiveAsync(python, arguments=["-c", "print('bye')"])
        data = b""
        while True:
            event = await session.read_chunk(10)
            if event is None:
                break
            stream, chunk = event
            assert stream == "stdout"
            data += chunk
        assert data == b"bye\n"
        assert await session.close(5) == 0

    @pytest.mark.asyncio
    async def test_read_until_times_out(self, python: str, repl_args: list[str]):
        session = InteractiveAsync(python, arguments=repl_args)
        assert await session.read_until(b"never printed", timeout_seconds=0.5) is None
        # The prompt read while waiting is still available.
        assert await session.read_chunk(10) == ("stdout", b"repl> ")
        assert await session.close(5) == 0

    @pytest.mark.asyncio
    async def test_close_kills_unresponsive_child(self, python: str):
        session = InteractiveAsync(
            python, arguments=["-c", "import time; time.sleep(30)"]
        )
        assert await session.close(1) != 0

    @pytest.mark.asyncio
    async def test_invalid_executable(self, tmp_path):
        with pytest.raises(InvalidExecutable):
            InteractiveAsync(str(tmp_path / "missing"))
