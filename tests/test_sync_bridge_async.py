"""run_async() tests."""

from __future__ import annotations

import asyncio
import shutil
import time

import pytest

from process_bridge import run_async


class TestRunAsync:
    @pytest.mark.asyncio
    async def test_collects_output(self, python: str):
        code = "import sys; print('hello'); sys.stderr.write('oops'); sys.exit(2)"
        stdout, stderr, exit_code = await run_async(python, arguments=["-c", code])
        assert stdout == "hello\n"
        assert stderr == "oops"
        assert exit_code == 2

    @pytest.mark.asyncio
    async def test_large_output(self, python: str):
        code = "import sys; sys.stdout.write('q' * 300000); sys.stderr.write('r' * 300000)"
        result = await run_async(python, arguments=["-c", code])
        assert result.stdout == "q" * 300000
        assert result.stderr == "r" * 300000

    @pytest.mark.asyncio
    async def test_invalid_executable(self, tmp_path):
        result = await run_async(str(tmp_path / "missing"))
        assert result.stdout is None
        assert "InvalidExecutable" in result.stderr
        assert result.exit_code == -1

    @pytest.mark.asyncio
    async def test_non_string_argument_is_data(self, python: str):
        result = await run_async(python, arguments=["-c", 1])
        assert result.stdout is None
        assert result.stderr.startswith("TypeError: ")
        assert result.exit_code == -1

    @pytest.mark.asyncio
    async def test_blank_stderr_is_none(self, python: str):
        code = "import sys; sys.stderr.write('\\n  \\n')"
        result = await run_async(python, arguments=["-c", code])
        assert result.stderr is None
        assert result.stdout == ""

    @pytest.mark.asyncio
    async def test_prefix(self, python: str):
        code = "import os; os.write(1, b'hi\\n')"
        result = await run_async(python, arguments=["-c", code], output_prefix="x")
        assert result.stdout == "x: hi\n"

    @pytest.mark.asyncio
    async def test_timeout(self, python: str):
        code = "import time; print('started', flush=True); time.sleep(30)"
        start = time.time()
        result = await run_async(python, arguments=["-c", code], timeout_seconds=1)
        assert time.time() - start < 10
        assert result.timeout is True
        assert result.exit_code == -1
        assert result.stdout == "started\n"

    @pytest.mark.asyncio
    async def test_runs_concurrently(self, python: str):
        code = "import time; time.sleep(0.5); print('done')"
        start = time.time()
        results = await asyncio.gather(
            *(run_async(python, arguments=["-c", code]) for _ in range(4))
        )
        assert all(result.stdout == "done\n" for result in results)
        assert time.time() - start < 5

    @pytest.mark.skipif(shutil.which("sh") is None, reason="needs sh(1)")
    @pytest.mark.asyncio
    async def test_background_grandchild_does_not_block(self):
        start = time.time()
        result = await run_async(
            shutil.which("sh"), arguments=["-c", "sleep 5 & echo hi"], timeout_seconds=30
        )
        assert time.time() - start < 4
        assert result.stdout == "hi\n"
        assert result.exit_code == 0
        assert result.timeout is False
