"""At-least-once job queue with partitions, leases and dead letters.

A dequeued message is leased, not removed. The consumer must ack it before
the lease (visibility timeout) expires, or renew the lease while it works.
An expired lease or a nack puts the message back for redelivery, with
exponential backoff for nacks. After max_deliveries the message moves to
the dead-letter list instead.

Messages carry only the job id and type; the job row is the source of truth.

Usage:
    queue = InMemoryJobQueue(lease_seconds=300)
    await queue.enqueue("media-transform", QueueMessage(job_id=job.id, job_type="media_transform"))

    delivery = await queue.dequeue("media-transform", timeout=5.0)
    if delivery:
        try:
            await handle(delivery.message)
            await queue.ack(delivery)
        except Exception as e:
            await queue.nack(delivery, error=e)

    # or let the queue drive the loop, renewing the lease meanwhile
    await queue.consume("media-transform", handler, stop=stop_event)
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional
import structlog

from mediajobs.config import settings

logger = structlog.get_logger()


@dataclass
class QueueMessage:
    """Reference to a job waiting for a worker."""

    job_id: str
    job_type: str
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    deliveries: int = 0
    available_at: float = 0.0
    last_error: Optional[str] = None


@dataclass
class Delivery:
    """A leased message handed to one consumer."""

    message: QueueMessage
    partition: str
    lease_expires_at: float
    delivery_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def attempt(self) -> int:
        return self.message.deliveries


class JobQueue(ABC):
    """Transport interface used by the lifecycle manager and workers."""

    lease_seconds: float = 300.0

    @abstractmethod
    async def enqueue(self, partition: str, message: QueueMessage) -> None:
        ...

    @abstractmethod
    async def dequeue(self, partition: str, timeout: Optional[float] = None) -> Optional[Delivery]:
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> bool:
        ...

    @abstractmethod
    async def nack(self, delivery: Delivery, error: Optional[Exception] = None) -> bool:
        ...

    @abstractmethod
    async def renew(self, delivery: Delivery) -> bool:
        ...

    async def consume(
        self,
        partition: str,
        handler: Callable[[QueueMessage], Awaitable[None]],
        stop: Optional[asyncio.Event] = None,
        poll_timeout: float = 1.0,
        renew_every: Optional[float] = None,
    ) -> None:
        """
        Deliver messages to handler until stop is set.

        The lease is renewed in the background while the handler runs. A
        handler that returns acks the message; one that raises nacks it.

        Args:
            partition: Partition to read
            handler: Coroutine called with each message
            stop: Event that ends the loop after the current message
            poll_timeout: Seconds to wait per dequeue before re-checking stop
            renew_every: Renewal period (defaults to a third of the lease)
        """
        stop = stop or asyncio.Event()
        while not stop.is_set():
            delivery = await self.dequeue(partition, timeout=poll_timeout)
            if delivery is None:
                continue
            await self.handle_delivery(delivery, handler, renew_every)

    async def handle_delivery(
        self,
        delivery: Delivery,
        handler: Callable[[QueueMessage], Awaitable[None]],
        renew_every: Optional[float] = None,
    ) -> bool:
        """Run handler for one delivery; ack on success, nack on error."""
        renewer = asyncio.create_task(self._keep_leased(delivery, renew_every))
        try:
            await handler(delivery.message)
        except Exception as e:
            logger.warning(
                "Handler failed, nacking",
                partition=delivery.partition,
                job_id=delivery.message.job_id,
                attempt=delivery.attempt,
                error=str(e)[:200],
            )
            await self.nack(delivery, error=e)
            return False
        finally:
            renewer.cancel()
            try:
                await renewer
            except asyncio.CancelledError:
                pass
        await self.ack(delivery)
        return True

    async def _keep_leased(self, delivery: Delivery, renew_every: Optional[float]):
        period = renew_every or max(0.01, self.lease_seconds / 3)
        while True:
            await asyncio.sleep(period)
            if not await self.renew(delivery):
                logger.warning("Lease lost while handling", partition=delivery.partition, job_id=delivery.message.job_id)
                return


class InMemoryJobQueue(JobQueue):
    """
    Single-process queue implementation.

    Attributes:
        lease_seconds: Visibility timeout for a delivery
        max_deliveries: Deliveries before a message is dead-lettered
        backoff_seconds: Base delay before a nacked message is redelivered
    """

    def __init__(
        self,
        lease_seconds: Optional[float] = None,
        max_deliveries: Optional[int] = None,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
    ):
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.queue_lease_seconds
        self.max_deliveries = max_deliveries if max_deliveries is not None else settings.queue_max_deliveries
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

        self._ready: Dict[str, Deque[QueueMessage]] = {}
        self._in_flight: Dict[str, Delivery] = {}
        self._conditions: Dict[str, asyncio.Condition] = {}
        self.dead_letters: List[QueueMessage] = []

    def _clock(self) -> float:
        return time.monotonic()

    def _partition(self, partition: str) -> Deque[QueueMessage]:
        return self._ready.setdefault(partition, deque())

    def _condition(self, partition: str) -> asyncio.Condition:
        if partition not in self._conditions:
            self._conditions[partition] = asyncio.Condition()
        return self._conditions[partition]

    async def _notify(self, partition: str):
        condition = self._condition(partition)
        async with condition:
            condition.notify_all()

    async def enqueue(self, partition: str, message: QueueMessage) -> None:
        self._partition(partition).append(message)
        logger.debug("Message enqueued", partition=partition, job_id=message.job_id)
        await self._notify(partition)

    def _dead_letter(self, message: QueueMessage, partition: str):
        self.dead_letters.append(message)
        logger.error(
            "Message moved to dead letters",
            partition=partition,
            job_id=message.job_id,
            deliveries=message.deliveries,
            last_error=message.last_error,
        )

    def _reclaim_expired(self, now: float):
        for delivery_id, delivery in list(self._in_flight.items()):
            if delivery.lease_expires_at > now:
                continue
            del self._in_flight[delivery_id]
            message = delivery.message
            message.last_error = message.last_error or "lease expired"
            if message.deliveries >= self.max_deliveries:
                self._dead_letter(message, delivery.partition)
                continue
            logger.warning(
                "Lease expired, redelivering",
                partition=delivery.partition,
                job_id=message.job_id,
                deliveries=message.deliveries,
            )
            message.available_at = now
            self._partition(delivery.partition).appendleft(message)

    def _pop_ready(self, partition: str, now: float) -> Optional[QueueMessage]:
        ready = self._partition(partition)
        for message in ready:
            if message.available_at <= now:
                ready.remove(message)
                return message
        return None

    def _next_wakeup(self, partition: str, now: float) -> Optional[float]:
        candidates = [m.available_at - now for m in self._partition(partition)]
        candidates += [
            d.lease_expires_at - now for d in self._in_flight.values() if d.partition == partition
        ]
        if not candidates:
            return None
        return max(0.0, min(candidates))

    async def dequeue(self, partition: str, timeout: Optional[float] = None) -> Optional[Delivery]:
        """
        Lease the next available message.

        Args:
            partition: Partition to read
            timeout: Seconds to wait for a message (None = wait forever)

        Returns:
            Delivery, or None if the timeout elapsed
        """
        deadline = None if timeout is None else self._clock() + timeout
        condition = self._condition(partition)

        async with condition:
            while True:
                now = self._clock()
                self._reclaim_expired(now)
                message = self._pop_ready(partition, now)
                if message is not None:
                    message.deliveries += 1
                    delivery = Delivery(
                        message=message,
                        partition=partition,
                        lease_expires_at=now + self.lease_seconds,
                    )
                    self._in_flight[delivery.delivery_id] = delivery
                    return delivery

                wait = self._next_wakeup(partition, now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)

                try:
                    await asyncio.wait_for(condition.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    async def ack(self, delivery: Delivery) -> bool:
        """Remove a delivered message for good. False if the lease was lost."""
        if self._in_flight.pop(delivery.delivery_id, None) is None:
            logger.warning(
                "Ack for unknown or expired delivery",
                partition=delivery.partition,
                job_id=delivery.message.job_id,
            )
            return False
        return True

    async def nack(self, delivery: Delivery, error: Optional[Exception] = None) -> bool:
        """Return a message for delayed redelivery, or dead-letter it."""
        if self._in_flight.pop(delivery.delivery_id, None) is None:
            return False

        message = delivery.message
        if error is not None:
            message.last_error = str(error)[:500]

        if message.deliveries >= self.max_deliveries:
            self._dead_letter(message, delivery.partition)
            return True

        delay = min(
            self.backoff_seconds * (2 ** (message.deliveries - 1)),
            self.max_backoff_seconds,
        )
        message.available_at = self._clock() + delay
        self._partition(delivery.partition).append(message)
        logger.info(
            "Message nacked, redelivery scheduled",
            partition=delivery.partition,
            job_id=message.job_id,
            deliveries=message.deliveries,
            delay_seconds=round(delay, 2),
        )
        await self._notify(delivery.partition)
        return True

    async def renew(self, delivery: Delivery) -> bool:
        """Extend the lease. False if it already expired and was reclaimed."""
        current = self._in_flight.get(delivery.delivery_id)
        if current is None:
            return False
        current.lease_expires_at = self._clock() + self.lease_seconds
        delivery.lease_expires_at = current.lease_expires_at
        return True

    def depth(self, partition: str) -> int:
        return len(self._partition(partition))

    def in_flight_count(self, partition: Optional[str] = None) -> int:
        return sum(1 for d in self._in_flight.values() if partition is None or d.partition == partition)
