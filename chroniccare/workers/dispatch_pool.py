"""Bounded pool of dispatch workers fed from the notification queue."""

import asyncio
from uuid import UUID

import structlog

from chroniccare.core.queue import NotificationQueue, QueueMessage
from chroniccare.workers.notification_dispatcher import NotificationDispatcher

logger = structlog.get_logger(__name__)


class DispatchWorkerPool:
    """
    Runs up to ``concurrency`` dispatches at once.

    A feeder reserves at most ``prefetch`` messages ahead of the workers. A
    message is acked only after its dispatch has committed; an unexpected error
    nacks it so the queue can redeliver or dead-letter it.
    """

    def __init__(
        self,
        queue: NotificationQueue,
        dispatcher: NotificationDispatcher,
        queue_name: str,
        concurrency: int = 10,
        prefetch: int = 10,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.queue_name = queue_name
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._buffer: asyncio.Queue[QueueMessage] = asyncio.Queue(maxsize=prefetch)
        self._stopping = asyncio.Event()

    async def handle(self, message: QueueMessage) -> None:
        """Dispatch one message and settle it with the queue."""
        try:
            notification_id = UUID(str(message.body["notification_id"]))
        except (KeyError, ValueError):
            logger.error("dispatch_message_malformed", message_id=message.id, body=message.body)
            await self.queue.nack(message, requeue=False)
            return

        try:
            outcome = await self.dispatcher.dispatch(notification_id)
        except Exception as e:
            logger.error(
                "dispatch_failed",
                message_id=message.id,
                notification_id=str(notification_id),
                error=str(e),
                exc_info=True,
            )
            await self.queue.nack(message, requeue=True)
            return

        await self.queue.ack(message)
        logger.debug(
            "dispatch_completed",
            notification_id=str(notification_id),
            outcome=outcome.value,
        )

    async def drain_once(self) -> int:
        """Reserve one batch and handle it concurrently; returns the batch size."""
        messages = await self.queue.reserve(self.queue_name, self._buffer.maxsize)
        if not messages:
            return 0
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(message: QueueMessage) -> None:
            async with semaphore:
                await self.handle(message)

        await asyncio.gather(*(bounded(m) for m in messages))
        return len(messages)

    async def _feed(self) -> None:
        while not self._stopping.is_set():
            free = self._buffer.maxsize - self._buffer.qsize()
            messages = await self.queue.reserve(self.queue_name, free) if free > 0 else []
            for message in messages:
                await self._buffer.put(message)
            if not messages:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def _work(self, worker_id: int) -> None:
        while True:
            message = await self._buffer.get()
            try:
                await self.handle(message)
            finally:
                self._buffer.task_done()

    async def run(self) -> None:
        """Consume until :meth:`stop` is called, then finish buffered messages."""
        workers = [asyncio.create_task(self._work(i)) for i in range(self.concurrency)]
        logger.info("dispatch_pool_started", queue=self.queue_name, concurrency=self.concurrency)
        try:
            await self._feed()
            await self._buffer.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("dispatch_pool_stopped", queue=self.queue_name)

    def stop(self) -> None:
        self._stopping.set()
