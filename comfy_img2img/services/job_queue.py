import enum
import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Set

from loguru import logger

from comfy_img2img.core.errors import QueueFull
from comfy_img2img.schemas.job import Request


Processor = Callable[[Request], Awaitable[Any]]


class WorkerState(str, enum.Enum):
    IDLE = 'IDLE'
    BUSY = 'BUSY'


class JobQueue:
    """
    Ограниченная FIFO-очередь с одним воркером.

    Очередь и состояние воркера меняются только здесь. Проверка "свободен ли
    воркер" и захват BUSY идут без await между ними, поэтому в пределах одного
    event loop это атомарно относительно enqueue().
    """

    def __init__(self, processor: Processor, capacity: int = 3):
        if capacity < 1:
            raise ValueError('capacity must be >= 1')
        self.capacity = capacity
        self._processor = processor
        self._queue: Deque[Request] = deque()
        self._state = WorkerState.IDLE
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_busy(self) -> bool:
        return self._state is WorkerState.BUSY

    def snapshot(self) -> dict:
        return {
            'state': self._state.value,
            'queued': len(self._queue),
            'capacity': self.capacity,
        }

    def enqueue(self, request: Request) -> int:
        """
        Возвращает позицию в очереди (с 1) или бросает QueueFull.
        """
        if len(self._queue) >= self.capacity:
            raise QueueFull(self.capacity)

        self._queue.append(request)
        logger.info(f'[queue] new request queued, queue length: {len(self._queue)}')
        return len(self._queue)

    def trigger(self) -> Optional[asyncio.Task]:
        """
        Запускает воркер в фоне; лишние вызовы ничего не делают.
        """
        if self.is_busy or not self._queue:
            return None

        task = asyncio.create_task(self.run_worker_loop())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_worker_loop(self) -> None:
        if self.is_busy or not self._queue:
            return

        self._state = WorkerState.BUSY
        try:
            while self._queue:
                request = self._queue.popleft()
                logger.info(
                    f'[queue] processing next request (workflow: {request.profile.alias}), '
                    f'remaining: {len(self._queue)}'
                )
                try:
                    await self._processor(request)
                except Exception as e:
                    logger.exception(f'[queue] unhandled error while processing request: {e}')
                logger.info('[queue] request finished, worker is checking the queue')
        finally:
            self._state = WorkerState.IDLE

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
