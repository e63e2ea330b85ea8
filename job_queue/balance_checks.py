"""
Balance Check Queue — fire-and-forget work items for the balance worker.

Queue Topology:
  balance-checks   — Redis Stream; one entry per reconciliation tick

Message Schema (field names are shared with the external worker):
  {
      "groupId":    Telegram group whose members should be re-evaluated,
      "timestamp":  epoch milliseconds when the job was created,
      "jobId":      unique job identifier,
  }

No result is correlated back to a job. The worker reports outcomes only by
writing permission records, which the reconciler picks up on a later tick.
Job entries are removed from the stream as soon as they complete or fail,
so the queue holds no history.
"""
from __future__ import annotations

import asyncio
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from config.settings import QueueConfig
from core.errors import ParseError, StoreConnectionError

logger = structlog.get_logger()

BALANCE_CHECK_QUEUE = "balance-checks"
DEFAULT_CONSUMER_GROUP = "balance-workers"


def _now_ms() -> int:
    return int(time.time() * 1000)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class BalanceCheckJob:
    """Ask the balance worker to re-evaluate a group's members."""
    group_id: str
    timestamp: int = field(default_factory=_now_ms)
    job_id: str = ""

    def __post_init__(self):
        self.group_id = str(self.group_id)
        if not self.job_id:
            self.job_id = f"bal_{uuid.uuid4().hex[:12]}"

    def to_dict(self) -> dict[str, str]:
        return {
            "groupId": self.group_id,
            "timestamp": str(self.timestamp),
            "jobId": self.job_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BalanceCheckJob:
        try:
            return cls(
                group_id=str(data["groupId"]),
                timestamp=int(data.get("timestamp") or _now_ms()),
                job_id=str(data.get("jobId", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Invalid balance check job: {e}", BALANCE_CHECK_QUEUE) from e


@dataclass
class JobOptions:
    remove_on_complete: bool = True
    remove_on_fail: bool = True


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class BalanceCheckQueue(ABC):
    """Abstract balance-check queue interface."""

    def __init__(self, name: str = BALANCE_CHECK_QUEUE, options: JobOptions = None,
                 consumer_group: str = DEFAULT_CONSUMER_GROUP):
        self.name = name
        self.options = options or JobOptions()
        self.consumer_group = consumer_group
        self._running = False

    @abstractmethod
    async def connect(self):
        """Prepare the backend (create the stream / consumer group)."""
        ...

    @abstractmethod
    async def close(self):
        """Stop consuming and release resources."""
        ...

    @abstractmethod
    async def enqueue(self, job: BalanceCheckJob) -> str:
        """Submit a job and return its id without waiting for processing."""
        ...

    @abstractmethod
    async def consume(
        self,
        handler: Callable[[BalanceCheckJob], Any],
        consumer_group: Optional[str] = None,
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Consume jobs until close(). Used by worker processes, not by the reconciler.
        consumer_group defaults to the group the queue was configured with.
        """
        ...

    @abstractmethod
    async def queue_length(self) -> int:
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisBalanceCheckQueue(BalanceCheckQueue):
    """
    Production queue backed by a Redis Stream on the shared command connection.

    - XADD with approximate MAXLEN keeps the stream bounded
    - Consumers XACK + XDEL on completion and on failure (per JobOptions)
    """

    def __init__(self, redis: aioredis.Redis, name: str = BALANCE_CHECK_QUEUE,
                 options: JobOptions = None, max_length: int = 10000,
                 consumer_group: str = DEFAULT_CONSUMER_GROUP):
        super().__init__(name, options, consumer_group)
        self._redis = redis
        self.max_length = max_length

    async def connect(self):
        logger.info("balance_queue_ready", queue=self.name, backend="redis")

    async def close(self):
        # The connection is owned by the ConnectionManager
        self._running = False

    async def _ensure_group(self, group: str):
        """Create consumer group if it doesn't exist."""
        try:
            await self._redis.xgroup_create(self.name, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def enqueue(self, job: BalanceCheckJob) -> str:
        try:
            await self._redis.xadd(
                self.name, job.to_dict(),
                maxlen=self.max_length, approximate=True,
            )
        except (RedisError, OSError) as e:
            raise StoreConnectionError(f"Enqueue to {self.name} failed: {e}") from e
        logger.info("balance_check_enqueued",
                    queue=self.name,
                    job_id=job.job_id,
                    group_id=job.group_id)
        return job.job_id

    async def _finish(self, group: str, message_id: str, remove: bool):
        await self._redis.xack(self.name, group, message_id)
        if remove:
            await self._redis.xdel(self.name, message_id)

    async def consume(
        self,
        handler: Callable[[BalanceCheckJob], Any],
        consumer_group: Optional[str] = None,
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        consumer_group = consumer_group or self.consumer_group
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(consumer_group)
        self._running = True
        logger.info("balance_consumer_started",
                    queue=self.name,
                    group=consumer_group,
                    consumer=consumer_name)

        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={self.name: ">"},
                    count=batch_size,
                    block=2000,
                )
                if not messages:
                    continue

                for _stream, stream_messages in messages:
                    for message_id, fields in stream_messages:
                        try:
                            job = BalanceCheckJob.from_dict(fields)
                            await handler(job)
                        except Exception as e:
                            logger.error("balance_job_failed",
                                         message_id=message_id,
                                         error=str(e))
                            await self._finish(consumer_group, message_id, self.options.remove_on_fail)
                        else:
                            await self._finish(consumer_group, message_id, self.options.remove_on_complete)
                            logger.debug("balance_job_completed", job_id=job.job_id)

            except asyncio.CancelledError:
                break
            except (RedisError, OSError) as e:
                logger.error("balance_consumer_error", queue=self.name, error=str(e))
                await asyncio.sleep(1)

    async def queue_length(self) -> int:
        return await self._redis.xlen(self.name)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryBalanceCheckQueue(BalanceCheckQueue):
    """
    Development/test queue backed by asyncio.Queue.
    Single-process only; completed and failed jobs are simply dropped.
    """

    def __init__(self, name: str = BALANCE_CHECK_QUEUE, options: JobOptions = None,
                 consumer_group: str = DEFAULT_CONSUMER_GROUP):
        super().__init__(name, options, consumer_group)
        self._queue: asyncio.Queue = asyncio.Queue()
        self.failed: list[BalanceCheckJob] = []    # kept only when remove_on_fail is off
        self.completed: list[BalanceCheckJob] = []  # kept only when remove_on_complete is off

    async def connect(self):
        logger.info("balance_queue_ready", queue=self.name, backend="memory")

    async def close(self):
        self._running = False

    async def enqueue(self, job: BalanceCheckJob) -> str:
        await self._queue.put(job)
        logger.info("balance_check_enqueued",
                    queue=self.name,
                    job_id=job.job_id,
                    group_id=job.group_id)
        return job.job_id

    async def consume(
        self,
        handler: Callable[[BalanceCheckJob], Any],
        consumer_group: Optional[str] = None,
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        self._running = True
        logger.info("balance_consumer_started",
                    queue=self.name,
                    group=consumer_group or self.consumer_group)

        while self._running:
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=2.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await handler(job)
            except Exception as e:
                logger.error("balance_job_failed", job_id=job.job_id, error=str(e))
                if not self.options.remove_on_fail:
                    self.failed.append(job)
            else:
                if not self.options.remove_on_complete:
                    self.completed.append(job)

    async def queue_length(self) -> int:
        return self._queue.qsize()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_balance_check_queue(config: QueueConfig = None,
                               redis: Optional[aioredis.Redis] = None) -> BalanceCheckQueue:
    """Factory: create the configured queue backend."""
    config = config or QueueConfig()
    options = JobOptions(
        remove_on_complete=config.remove_on_complete,
        remove_on_fail=config.remove_on_fail,
    )

    if config.backend == "redis":
        if redis is None:
            raise ValueError("Redis queue backend needs the command connection")
        return RedisBalanceCheckQueue(redis, name=config.name, options=options,
                                      max_length=config.max_length,
                                      consumer_group=config.consumer_group)
    return InMemoryBalanceCheckQueue(name=config.name, options=options,
                                     consumer_group=config.consumer_group)
