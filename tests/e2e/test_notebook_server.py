"""
E2E tests against a real `jupyter notebook` server launched by kernelbridge.

These tests start an actual server process and a python kernel, so they take
several seconds each. They are skipped when notebook or ipykernel is missing.
"""
import asyncio

import pytest

from kernelbridge import BridgeConfig, CellState, InterruptResult, LaunchOptions, ServerCache


def config(**overrides):
    return BridgeConfig(launch_timeout_ms=60000, kernel_ready_timeout_ms=60000, **overrides)


@pytest.mark.e2e
@pytest.mark.asyncio
async def test_launch_execute_restart(tmp_path):
    """
    Test the full lifecycle on a real server:
    1. Connect launches a server and starts a kernel
    2. Code runs and its value is returned
    3. A restart forgets the namespace but keeps the session
    4. Dispose stops the server process
    """
    cache = ServerCache(config=config())
    try:
        session = await cache.connect(LaunchOptions(working_dir=str(tmp_path)))

        cell = await session.execute_to_completion("a=1\na")
        assert cell.state == CellState.FINISHED
        assert cell.outputs[-1].data["text/plain"] == "1"

        cwd = await session.execute_to_completion("import os\nprint(os.getcwd())")
        assert cwd.text_output().strip() == str(tmp_path)

        await session.restart_kernel(60000)
        after = await session.execute_to_completion("'a' in dir()")
        assert after.outputs[-1].data["text/plain"] == "False"
        assert cache.sessions[LaunchOptions().fingerprint()] is session
    finally:
        await cache.dispose()

    assert session.process.exited


@pytest.mark.e2e
@pytest.mark.asyncio
async def test_output_ceiling_and_interrupt(tmp_path):
    """Long output keeps its tail; an interrupted loop ends with a KeyboardInterrupt error."""
    cache = ServerCache(config=config(text_output_limit=7))
    try:
        session = await cache.connect(LaunchOptions(working_dir=str(tmp_path)))

        cell = await session.execute_to_completion("print('hello\\nworld\\nhow\\nare\\nyou')")
        assert cell.outputs[0].text == "are\nyou"

        running = asyncio.ensure_future(session.execute_to_completion("import time\nwhile True: time.sleep(0.1)"))
        await asyncio.sleep(1.0)
        result = await session.interrupt_kernel(10000)
        interrupted = await running

        assert result == InterruptResult.SUCCESS
        assert interrupted.state == CellState.ERROR
        assert interrupted.outputs[-1].ename == "KeyboardInterrupt"
    finally:
        await cache.dispose()
