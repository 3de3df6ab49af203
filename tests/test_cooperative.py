"""
Tests for the step driver.
"""

import asyncio

from mvr.cooperative import run_steps, run_steps_async


def _counting_steps(log, n):
    for i in range(n):
        log.append(("steps", i))
        yield
    return "done"


def test_run_steps_returns_result():
    """Test the synchronous driver drains the generator and returns its value."""
    log = []
    assert run_steps(_counting_steps(log, 3)) == "done"
    assert len(log) == 3


def test_run_steps_async_interleaves():
    """Test other tasks run between checkpoints."""
    log = []

    async def other():
        for i in range(3):
            log.append(("other", i))
            await asyncio.sleep(0)

    async def main():
        result, _ = await asyncio.gather(run_steps_async(_counting_steps(log, 3)), other())
        return result

    assert asyncio.run(main()) == "done"
    assert log.index(("other", 0)) < log.index(("steps", 2))
