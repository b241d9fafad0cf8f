"""Ordered frame delivery to the caller's consumer.

The reader pushes decoded frames into a bounded queue; one drain task awaits
the consumer for each frame in turn, so call N+1 never starts before call N
has finished. A full queue applies backpressure to the stdout reader.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from happyclaw.logger import logger
from happyclaw.types import AgentOutput

OnOutput = Callable[[AgentOutput], Awaitable[None]]

_CLOSE = object()


class DeliveryQueue:
    def __init__(self, consumer: OnOutput, *, maxsize: int = 256, run_id: str = "") -> None:
        self._consumer = consumer
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._run_id = run_id
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self.delivered = 0
        self.failures = 0

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._drain(), name=f"deliver-{self._run_id}")

    async def put(self, frame: AgentOutput) -> None:
        if self._closed:
            logger.warning("Frame dropped after delivery closed", run_id=self._run_id)
            return
        await self._queue.put(frame)

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            try:
                await self._consumer(item)  # type: ignore[arg-type]
                self.delivered += 1
            except Exception:
                # A failing consumer never fails the run
                self.failures += 1
                logger.exception("Output consumer raised", run_id=self._run_id)

    def cancel(self) -> None:
        """Drop undelivered frames and stop the drain task (run cancelled)."""
        self._closed = True
        if self._task is not None:
            self._task.cancel()

    async def settle(self, timeout: float) -> bool:
        """Close the queue and wait for every queued frame to be delivered.

        Returns False if *timeout* elapsed first; the drain task is then
        cancelled and the remaining frames are dropped.
        """
        self._closed = True
        self.start()
        assert self._task is not None

        async def _close_and_join() -> None:
            await self._queue.put(_CLOSE)
            await self._task

        try:
            await asyncio.wait_for(_close_and_join(), timeout)
            return True
        except TimeoutError:
            logger.warning(
                "Output delivery did not settle in time",
                run_id=self._run_id,
                timeout_s=timeout,
                pending=self._queue.qsize(),
            )
            self._task.cancel()
            return False
