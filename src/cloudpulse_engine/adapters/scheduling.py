"""Scheduler backends that drive the cost cycle on a fixed interval.

RedisQueueBackend is the durable choice: the next-run timestamp lives in
Redis so the schedule survives restarts, and a SET NX EX lock keeps one
cycle in flight across every engine replica. InProcessTimerBackend is the
fallback when Redis is unreachable at startup.

Both backends run the first cycle as soon as they start (or as soon as a
persisted next-run time has passed) and drain the in-flight cycle on stop.
"""

import asyncio
import json
import time
import uuid
from contextlib import suppress
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from cloudpulse_engine.core.interfaces import CycleJob, ISchedulerBackend
from cloudpulse_engine.settings import Settings

logger = structlog.get_logger(__name__)

# Compare-and-delete so a replica never releases a lock it no longer holds.
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


async def _drain(task: asyncio.Task[None] | None, grace_seconds: float, backend: str) -> None:
    """Wait up to ``grace_seconds`` for ``task`` to finish, then cancel it."""
    if task is None or task.done():
        return
    done, _ = await asyncio.wait({task}, timeout=grace_seconds)
    if not done:
        logger.warning("scheduler_drain_timeout", backend=backend, grace_seconds=grace_seconds)
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


class InProcessTimerBackend:
    """Run the job in an asyncio task, sleeping ``fetch_interval_seconds`` between runs."""

    name = "in_process"

    def __init__(self, settings: Settings) -> None:
        self._interval = settings.fetch_interval_seconds
        self._grace = settings.shutdown_grace_seconds
        self._lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def run_once(self, job: CycleJob) -> bool:
        """Run ``job`` unless a run is already in flight. Returns True if it ran."""
        if self._lock.locked():
            logger.info("scheduler_run_skipped", backend=self.name, reason="in_flight")
            return False
        async with self._lock:
            try:
                report = await job()
            except Exception:
                logger.exception("scheduler_cycle_failed", backend=self.name)
            else:
                logger.info("scheduler_cycle_finished", backend=self.name, **report.as_dict())
        return True

    async def _loop(self, job: CycleJob) -> None:
        while not self._stopping.is_set():
            await self.run_once(job)
            with suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)

    async def start(self, job: CycleJob) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(job), name="cloudpulse-cost-cycle")
        logger.info("scheduler_started", backend=self.name, interval_seconds=self._interval)

    async def stop(self) -> None:
        self._stopping.set()
        await _drain(self._task, self._grace, self.name)
        self._task = None
        logger.info("scheduler_stopped", backend=self.name)


class RedisQueueBackend:
    """Durable, replica-safe scheduling on top of Redis.

    Keys (under ``scheduler_key_prefix``):
        <prefix>:next_run  epoch seconds of the next due run
        <prefix>:lock      single-flight lock token, expires after lock TTL
        <prefix>:history   capped list of JSON cycle outcomes, newest first

    Every replica polls; whichever one takes the lock after next_run has
    passed runs the cycle and pushes next_run forward by one interval.
    """

    name = "redis_queue"

    def __init__(self, redis_client: Redis, settings: Settings) -> None:
        self._redis = redis_client
        self._interval = settings.fetch_interval_seconds
        self._poll = settings.scheduler_poll_seconds
        self._lock_ttl = settings.scheduler_lock_ttl_seconds
        self._history_size = settings.scheduler_history_size
        self._grace = settings.shutdown_grace_seconds
        prefix = settings.scheduler_key_prefix
        self.next_run_key = f"{prefix}:next_run"
        self.lock_key = f"{prefix}:lock"
        self.history_key = f"{prefix}:history"
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def _is_due(self, now: float) -> bool:
        next_run = await self._redis.get(self.next_run_key)
        return next_run is None or float(next_run) <= now

    async def _record_history(self, entry: dict[str, Any]) -> None:
        await self._redis.lpush(self.history_key, json.dumps(entry))
        await self._redis.ltrim(self.history_key, 0, self._history_size - 1)

    async def run_due(self, job: CycleJob) -> bool:
        """Run ``job`` if it is due and this replica wins the lock.

        Returns:
            True when the job ran (successfully or not).
        """
        now = time.time()
        if not await self._is_due(now):
            return False

        token = uuid.uuid4().hex
        acquired = await self._redis.set(self.lock_key, token, nx=True, ex=self._lock_ttl)
        if not acquired:
            logger.debug("scheduler_lock_busy", backend=self.name, lock_key=self.lock_key)
            return False

        try:
            # Another replica may have run and rescheduled between the check and the lock.
            if not await self._is_due(now):
                logger.debug("scheduler_run_already_done", backend=self.name)
                return False
            await self._redis.set(self.next_run_key, str(now + self._interval))
            entry: dict[str, Any] = {"started_at": now}
            try:
                report = await job()
            except Exception as exc:
                logger.exception("scheduler_cycle_failed", backend=self.name)
                entry.update(status="failed", error=str(exc) or exc.__class__.__name__)
            else:
                logger.info("scheduler_cycle_finished", backend=self.name, **report.as_dict())
                entry.update(status="completed", **report.as_dict())
            entry["finished_at"] = time.time()
            await self._record_history(entry)
        finally:
            await self._redis.eval(_RELEASE_LOCK_SCRIPT, 1, self.lock_key, token)
        return True

    async def _loop(self, job: CycleJob) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_due(job)
            except RedisError as exc:
                logger.warning("scheduler_redis_error", backend=self.name, error=str(exc))
            with suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll)

    async def history(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Return recorded cycle outcomes, newest first."""
        end = (limit or self._history_size) - 1
        raw = await self._redis.lrange(self.history_key, 0, end)
        return [json.loads(item) for item in raw]

    async def start(self, job: CycleJob) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(job), name="cloudpulse-cost-cycle")
        logger.info(
            "scheduler_started",
            backend=self.name,
            interval_seconds=self._interval,
            poll_seconds=self._poll,
        )

    async def stop(self) -> None:
        self._stopping.set()
        await _drain(self._task, self._grace, self.name)
        self._task = None
        logger.info("scheduler_stopped", backend=self.name)


async def select_scheduler_backend(settings: Settings, redis_client: Redis | None) -> ISchedulerBackend:
    """Pick the durable backend when Redis answers PING, else the in-process timer."""
    if redis_client is None:
        logger.info("scheduler_backend_selected", backend=InProcessTimerBackend.name, reason="no_redis")
        return InProcessTimerBackend(settings)

    try:
        await asyncio.wait_for(redis_client.ping(), timeout=settings.redis_health_check_timeout_seconds)
    except (RedisError, OSError, TimeoutError) as exc:
        logger.warning(
            "scheduler_backend_selected",
            backend=InProcessTimerBackend.name,
            reason="redis_unreachable",
            error=str(exc) or exc.__class__.__name__,
        )
        return InProcessTimerBackend(settings)

    logger.info("scheduler_backend_selected", backend=RedisQueueBackend.name)
    return RedisQueueBackend(redis_client, settings)
