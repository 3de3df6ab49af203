"""
cooperative.py - Run long phases as resumable steps.

Batch encoding, k-means training and graph construction are written as
generators that `yield` at fixed item-count checkpoints and `return` their
result at the end:

    def _encode_steps(items) -> Generator[None, None, np.ndarray]:
        out = np.zeros(...)
        for i, item in enumerate(items):
            out[i] = encode(item)
            if (i + 1) % CHECKPOINT == 0:
                yield
        return out

The same generator is driven two ways:

    run_steps(gen)               drain synchronously, return the result
    await run_steps_async(gen)   hand control back to the event loop at
                                 every checkpoint

The result only exists once the generator finishes, so nothing partial is
ever visible to other tasks while a phase is paused. There is no abort hook;
wrap the coroutine in asyncio.wait_for() and discard the result if you need
a deadline.
"""

from __future__ import annotations

import asyncio
from typing import Generator, TypeVar

T = TypeVar("T")

Steps = Generator[None, None, T]


def run_steps(steps: Steps[T]) -> T:
    while True:
        try:
            next(steps)
        except StopIteration as done:
            return done.value


async def run_steps_async(steps: Steps[T]) -> T:
    while True:
        try:
            next(steps)
        except StopIteration as done:
            return done.value
        await asyncio.sleep(0)
