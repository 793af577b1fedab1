"""任务调度器：在当前事件循环上提交协程任务或延迟执行，替代「每个群一个线程」。

submit 立即创建 Task；after 通过 loop.call_later 在延迟后创建 Task，返回可取消的 TimerHandle。
所有 Task 都保留强引用，避免被 GC 提前回收。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

CoroFactory = Callable[[], Awaitable[None]]


class TaskScheduler:
    """基于 asyncio 的协作式调度：不同群组的任务链互相独立、可交错执行。"""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self._timers: set[asyncio.TimerHandle] = set()

    def submit(self, fn: CoroFactory) -> asyncio.Task:
        """立即在事件循环上启动 fn() 返回的协程。"""
        task = asyncio.get_running_loop().create_task(fn())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def after(self, delay_seconds: float, fn: CoroFactory) -> asyncio.TimerHandle:
        """delay_seconds 秒后再 submit(fn)；返回的句柄可 cancel()。"""
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def _fire() -> None:
            self._timers.discard(handle)
            self.submit(fn)

        handle = loop.call_later(max(delay_seconds, 0.0), _fire)
        self._timers.add(handle)
        return handle

    @property
    def pending(self) -> int:
        """尚未完成的任务与定时器数量。"""
        return len(self._tasks) + len(self._timers)

    async def shutdown(self) -> None:
        """取消所有定时器与进行中的任务，并等待任务结束。"""
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[SCHED] Scheduler shut down: cancelled %d tasks", len(tasks))
