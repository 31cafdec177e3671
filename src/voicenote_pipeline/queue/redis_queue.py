"""
Redis Job Queue

``JobQueue`` backed by ``redis.asyncio``. Every state change that touches
more than one key runs as a Lua script so it is atomic on the server.

Key layout, per job type (``{prefix}:{type}``)::

    :job:{id}     hash    job record
    :seq          string  enqueue counter (FIFO tie-break)
    :ready        zset    due jobs, score = priority * 1e13 + seq
    :delayed      zset    backed-off or delayed jobs, score = available_at ms
    :delivered    zset    reserved but not yet activated, score = reserve ms
    :active       zset    running jobs, score = last heartbeat ms
    :completed    zset    finished jobs, score = completed_at ms
    :failed       zset    failed jobs, score = completed_at ms
    :paused       string  present while the type is paused
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as redis

from voicenote_pipeline.errors import BrokerUnavailableError
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import (
    HealthStatus,
    JobStatus,
    JobStatusView,
    JobType,
    ProcessingJob,
    QueueStats,
    new_id,
)
from voicenote_pipeline.queue.base import JobQueue

logger = get_logger()

# Any token matches; used by the watchdog, which never holds the lease.
ANY_LEASE = "*"

_ENQUEUE = """
local status = redis.call('HGET', KEYS[1], 'status')
if status == 'pending' or status == 'active' then
  return 0
end
redis.call('DEL', KEYS[1])
for i = 4, 6 do
  redis.call('ZREM', KEYS[i], ARGV[1])
end
for i = 5, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if tonumber(ARGV[3]) > tonumber(ARGV[2]) then
  redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
else
  redis.call('ZADD', KEYS[2], ARGV[4], ARGV[1])
end
return 1
"""

_RESERVE = """
if redis.call('EXISTS', KEYS[4]) == 1 then
  return false
end
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, 100)
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  local score = redis.call('HGET', ARGV[2] .. id, 'score')
  if score then
    redis.call('ZADD', KEYS[1], score, id)
  end
end
local head = redis.call('ZRANGE', KEYS[1], 0, 0)
if #head == 0 then
  return false
end
local id = head[1]
redis.call('ZREM', KEYS[1], id)
redis.call('ZADD', KEYS[3], ARGV[1], id)
redis.call('HSET', ARGV[2] .. id, 'delivered_at', ARGV[1])
return id
"""

_ACTIVATE = """
if redis.call('HGET', KEYS[1], 'status') ~= 'pending' then
  return 0
end
local available = tonumber(redis.call('HGET', KEYS[1], 'available_at') or '0')
if available > tonumber(ARGV[2]) then
  return 0
end
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('ZREM', KEYS[5], ARGV[1])
redis.call('HINCRBY', KEYS[1], 'attempts', 1)
redis.call('HSET', KEYS[1], 'status', 'active', 'worker_id', ARGV[3], 'lease_token', ARGV[4],
  'started_at', ARGV[2], 'heartbeat_at', ARGV[2], 'delivered_at', '')
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return 1
"""

_LEASED = """
local function leased(key, token)
  if redis.call('HGET', key, 'status') ~= 'active' then
    return false
  end
  return token == '*' or redis.call('HGET', key, 'lease_token') == token
end
"""

_HEARTBEAT = (
    _LEASED
    + """
if not leased(KEYS[1], ARGV[2]) then
  return 0
end
local progress = tonumber(ARGV[4])
if progress and progress > tonumber(redis.call('HGET', KEYS[1], 'progress') or '0') then
  redis.call('HSET', KEYS[1], 'progress', ARGV[4])
end
redis.call('HSET', KEYS[1], 'heartbeat_at', ARGV[3])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""
)

_FINISH = (
    _LEASED
    + """
if not leased(KEYS[1], ARGV[2]) then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[1], 'status', ARGV[4], 'completed_at', ARGV[3],
  'lease_token', '', 'heartbeat_at', '')
for i = 7, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
local keep = tonumber(ARGV[5])
local count = redis.call('ZCARD', KEYS[3])
if count > keep then
  local old = redis.call('ZRANGE', KEYS[3], 0, count - keep - 1)
  for _, id in ipairs(old) do
    redis.call('DEL', ARGV[6] .. id)
    redis.call('ZREM', KEYS[3], id)
  end
end
return 1
"""
)

_RESCHEDULE = (
    _LEASED
    + """
if not leased(KEYS[1], ARGV[2]) then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[1], 'status', 'pending', 'available_at', ARGV[3], 'last_error', ARGV[4],
  'lease_token', '', 'worker_id', '', 'heartbeat_at', '', 'delivered_at', '')
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
return 1
"""
)

_CANCEL = """
local status = redis.call('HGET', KEYS[1], 'status')
if status == 'pending' then
  redis.call('DEL', KEYS[1])
  for i = 2, 4 do
    redis.call('ZREM', KEYS[i], ARGV[1])
  end
  return 1
end
if status == 'active' then
  redis.call('HSET', KEYS[1], 'cancel_requested', '1')
end
return 0
"""

_REQUEUE_ORPHANS = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local count = 0
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[2] .. id
  if redis.call('HGET', key, 'status') == 'pending' then
    redis.call('HSET', key, 'delivered_at', '')
    redis.call('ZADD', KEYS[2], redis.call('HGET', key, 'score'), id)
    count = count + 1
  end
end
return count
"""

_CLEAN = """
local total = 0
for i = 1, #KEYS do
  local ids = redis.call('ZRANGEBYSCORE', KEYS[i], '-inf', ARGV[1])
  for _, id in ipairs(ids) do
    redis.call('DEL', ARGV[2] .. id)
    redis.call('ZREM', KEYS[i], id)
    total = total + 1
  end
end
return total
"""

PRIORITY_SCALE = 10**13


def _now_ms() -> int:
    return int(time.time() * 1000)


def _from_ms(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, UTC)


class RedisJobQueue(JobQueue):
    """Redis-backed ``JobQueue``; safe to share across processes."""

    def __init__(self, settings=None, client: redis.Redis | None = None):
        super().__init__(settings)
        self.prefix = self.settings.queue_prefix
        self._client = client or redis.from_url(
            self.settings.redis_url, encoding="utf-8", decode_responses=True
        )
        self._enqueue = self._client.register_script(_ENQUEUE)
        self._reserve = self._client.register_script(_RESERVE)
        self._activate = self._client.register_script(_ACTIVATE)
        self._heartbeat = self._client.register_script(_HEARTBEAT)
        self._finish = self._client.register_script(_FINISH)
        self._reschedule = self._client.register_script(_RESCHEDULE)
        self._cancel = self._client.register_script(_CANCEL)
        self._requeue_orphans = self._client.register_script(_REQUEUE_ORPHANS)
        self._clean = self._client.register_script(_CLEAN)

    # -- keys -------------------------------------------------------------

    def _base(self, job_type: JobType | str) -> str:
        return f"{self.prefix}:{JobType(job_type).value}"

    def _key(self, job_type: JobType | str, name: str) -> str:
        return f"{self._base(job_type)}:{name}"

    def _job_prefix(self, job_type: JobType | str) -> str:
        return f"{self._base(job_type)}:job:"

    def _job_key(self, job_type: JobType | str, job_id: str) -> str:
        return self._job_prefix(job_type) + job_id

    async def _run(self, script: Any, keys: list[str], args: list[Any]) -> Any:
        try:
            return await script(keys=keys, args=args)
        except redis.RedisError as exc:
            raise BrokerUnavailableError(f"Redis script failed: {exc}") from exc

    # -- decoding ---------------------------------------------------------

    @staticmethod
    def _decode(data: dict[str, str]) -> ProcessingJob:
        return ProcessingJob(
            id=data["id"],
            type=JobType(data["type"]),
            note_id=data["note_id"],
            payload=json.loads(data.get("payload") or "{}"),
            status=JobStatus(data["status"]),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 0),
            priority=int(data.get("priority") or 0),
            provider=data.get("provider") or "mock",
            generation=int(data.get("generation") or 0),
            correlation_id=data.get("correlation_id") or "",
            progress=int(data.get("progress") or 0),
            created_at=_from_ms(data.get("created_at")),
            available_at=_from_ms(data.get("available_at")),
            started_at=_from_ms(data.get("started_at")),
            completed_at=_from_ms(data.get("completed_at")),
            heartbeat_at=_from_ms(data.get("heartbeat_at")),
            delivered_at=_from_ms(data.get("delivered_at")),
            last_error=data.get("last_error") or None,
            worker_id=data.get("worker_id") or None,
            lease_token=data.get("lease_token") or None,
            cancel_requested=data.get("cancel_requested") == "1",
            result=json.loads(data["result"]) if data.get("result") else None,
        )

    async def _load(self, job_type: JobType | str, job_id: str) -> ProcessingJob | None:
        try:
            data = await self._client.hgetall(self._job_key(job_type, job_id))
        except redis.RedisError as exc:
            raise BrokerUnavailableError(f"Redis read failed: {exc}") from exc
        return self._decode(data) if data else None

    # -- producer side ------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType | str,
        note_id: str,
        payload: dict[str, Any],
        *,
        job_id: str | None = None,
        priority: int | None = None,
        delay: float = 0.0,
        max_attempts: int | None = None,
        provider: str = "mock",
        generation: int = 0,
        correlation_id: str | None = None,
    ) -> str:
        job_type = JobType(job_type)
        policy = self.policy(job_type)
        job_id = job_id or new_id()
        priority = policy.priority if priority is None else priority
        try:
            seq = await self._client.incr(self._key(job_type, "seq"))
        except redis.RedisError as exc:
            raise BrokerUnavailableError(f"Redis enqueue failed: {exc}") from exc

        now = _now_ms()
        available = now + int(max(delay, 0.0) * 1000)
        score = priority * PRIORITY_SCALE + seq
        fields = {
            "id": job_id,
            "type": job_type.value,
            "note_id": note_id,
            "payload": json.dumps(payload),
            "status": JobStatus.PENDING.value,
            "attempts": 0,
            "max_attempts": max_attempts or policy.max_attempts,
            "priority": priority,
            "provider": provider,
            "generation": generation,
            "correlation_id": correlation_id or new_id(),
            "progress": 0,
            "created_at": now,
            "available_at": available,
            "score": score,
            "cancel_requested": "0",
        }
        args: list[Any] = [job_id, now, available, score]
        for name, value in fields.items():
            args.extend([name, value])

        created = await self._run(
            self._enqueue,
            keys=[
                self._job_key(job_type, job_id),
                self._key(job_type, "ready"),
                self._key(job_type, "delayed"),
                self._key(job_type, "delivered"),
                self._key(job_type, "completed"),
                self._key(job_type, "failed"),
            ],
            args=args,
        )
        if created:
            logger.info("job_enqueued", job_type=job_type.value, job_id=job_id, note_id=note_id)
        else:
            logger.info("job_already_enqueued", job_type=job_type.value, job_id=job_id)
        return job_id

    # -- worker side ------------------------------------------------------

    async def reserve(self, job_type: JobType | str, timeout: float = 0.0) -> ProcessingJob | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        poll = self.policy(job_type).poll_interval
        while True:
            job_id = await self._run(
                self._reserve,
                keys=[
                    self._key(job_type, "ready"),
                    self._key(job_type, "delayed"),
                    self._key(job_type, "delivered"),
                    self._key(job_type, "paused"),
                ],
                args=[_now_ms(), self._job_prefix(job_type)],
            )
            if job_id:
                job = await self._load(job_type, job_id)
                if job is not None:
                    return job
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll, remaining))

    async def activate(
        self, job_type: JobType | str, job_id: str, worker_id: str
    ) -> ProcessingJob | None:
        token = new_id()
        activated = await self._run(
            self._activate,
            keys=[
                self._job_key(job_type, job_id),
                self._key(job_type, "active"),
                self._key(job_type, "delivered"),
                self._key(job_type, "ready"),
                self._key(job_type, "delayed"),
            ],
            args=[job_id, _now_ms(), worker_id, token],
        )
        if not activated:
            return None
        return await self._load(job_type, job_id)

    async def _touch(
        self, job_type: JobType | str, job_id: str, lease_token: str, progress: int | str = ""
    ) -> bool:
        touched = await self._run(
            self._heartbeat,
            keys=[self._job_key(job_type, job_id), self._key(job_type, "active")],
            args=[job_id, lease_token, _now_ms(), progress],
        )
        return bool(touched)

    async def heartbeat(self, job_type: JobType | str, job_id: str, lease_token: str) -> bool:
        return await self._touch(job_type, job_id, lease_token)

    async def update_progress(
        self, job_type: JobType | str, job_id: str, lease_token: str, progress: int
    ) -> bool:
        return await self._touch(job_type, job_id, lease_token, min(int(progress), 100))

    async def _finish_job(
        self,
        job_type: JobType | str,
        job_id: str,
        lease_token: str,
        status: JobStatus,
        **fields: Any,
    ) -> bool:
        policy = self.policy(job_type)
        keep = policy.remove_on_complete if status is JobStatus.COMPLETED else policy.remove_on_fail
        args: list[Any] = [
            job_id,
            lease_token,
            _now_ms(),
            status.value,
            keep,
            self._job_prefix(job_type),
        ]
        for name, value in fields.items():
            args.extend([name, value])
        finished = await self._run(
            self._finish,
            keys=[
                self._job_key(job_type, job_id),
                self._key(job_type, "active"),
                self._key(job_type, status.value),
            ],
            args=args,
        )
        return bool(finished)

    async def complete(
        self,
        job_type: JobType | str,
        job_id: str,
        lease_token: str,
        result: dict[str, Any] | None = None,
    ) -> bool:
        return await self._finish_job(
            job_type,
            job_id,
            lease_token,
            JobStatus.COMPLETED,
            progress=100,
            result=json.dumps(result) if result is not None else "",
        )

    async def fail(self, job_type: JobType | str, job_id: str, lease_token: str, error: str) -> bool:
        return await self._finish_job(
            job_type, job_id, lease_token, JobStatus.FAILED, last_error=error
        )

    async def _reschedule_job(
        self, job_type: JobType | str, job_id: str, lease_token: str, error: str, delay: float
    ) -> bool:
        rescheduled = await self._run(
            self._reschedule,
            keys=[
                self._job_key(job_type, job_id),
                self._key(job_type, "active"),
                self._key(job_type, "delayed"),
            ],
            args=[job_id, lease_token, _now_ms() + int(delay * 1000), error],
        )
        return bool(rescheduled)

    async def retry(
        self, job_type: JobType | str, job_id: str, lease_token: str, error: str
    ) -> float | None:
        job = await self._load(job_type, job_id)
        if job is None or job.lease_token != lease_token:
            return None
        delay = self.backoff_delay(job_type, job.attempts)
        if not await self._reschedule_job(job_type, job_id, lease_token, error, delay):
            return None
        return delay

    async def owns(self, job_type: JobType | str, job_id: str, lease_token: str) -> bool:
        try:
            status, token, cancelled = await self._client.hmget(
                self._job_key(job_type, job_id), ["status", "lease_token", "cancel_requested"]
            )
        except redis.RedisError as exc:
            raise BrokerUnavailableError(f"Redis read failed: {exc}") from exc
        return status == JobStatus.ACTIVE.value and token == lease_token and cancelled != "1"

    # -- inspection and control ----------------------------------------------

    async def get_job(self, job_type: JobType | str, job_id: str) -> ProcessingJob | None:
        return await self._load(job_type, job_id)

    async def get_status(self, job_type: JobType | str, job_id: str) -> JobStatusView:
        job = await self._load(job_type, job_id)
        if job is None:
            return JobStatusView.not_found()
        delayed = job.available_at is not None and job.available_at.timestamp() * 1000 > _now_ms()
        return JobStatusView.from_job(job, delayed=delayed)

    async def cancel(self, job_type: JobType | str, job_id: str) -> bool:
        removed = await self._run(
            self._cancel,
            keys=[
                self._job_key(job_type, job_id),
                self._key(job_type, "ready"),
                self._key(job_type, "delayed"),
                self._key(job_type, "delivered"),
            ],
            args=[job_id],
        )
        logger.info("job_cancel", job_id=job_id, removed=bool(removed))
        return bool(removed)

    async def stats(self, job_type: JobType | str) -> QueueStats:
        now = _now_ms()
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.zcard(self._key(job_type, "ready"))
                pipe.zcard(self._key(job_type, "delivered"))
                pipe.zcount(self._key(job_type, "delayed"), "-inf", now)
                pipe.zcount(self._key(job_type, "delayed"), f"({now}", "+inf")
                pipe.zcard(self._key(job_type, "active"))
                pipe.zcard(self._key(job_type, "completed"))
                pipe.zcard(self._key(job_type, "failed"))
                ready, delivered, due, delayed, active, completed, failed = await pipe.execute()
        except redis.RedisError as exc:
            raise BrokerUnavailableError(f"Redis stats failed: {exc}") from exc
        return QueueStats(
            waiting=ready + delivered + due,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
        )

    async def health_check(self) -> HealthStatus:
        start = time.perf_counter()
        try:
            await self._client.ping()
        except redis.RedisError as exc:
            logger.warning("redis_health_check_failed", error=str(exc))
            return HealthStatus(status="error", error=str(exc))
        return HealthStatus(status="ok", latency_ms=round((time.perf_counter() - start) * 1000, 2))

    async def pause(self, job_type: JobType | str) -> None:
        await self._client.set(self._key(job_type, "paused"), "1")
        logger.info("queue_paused", job_type=JobType(job_type).value)

    async def resume(self, job_type: JobType | str) -> None:
        await self._client.delete(self._key(job_type, "paused"))
        logger.info("queue_resumed", job_type=JobType(job_type).value)

    async def is_paused(self, job_type: JobType | str) -> bool:
        return bool(await self._client.exists(self._key(job_type, "paused")))

    # -- recovery ---------------------------------------------------------

    async def find_stalled(self, job_type: JobType | str, older_than: float) -> list[ProcessingJob]:
        cutoff = _now_ms() - int(older_than * 1000)
        ids = await self._client.zrangebyscore(self._key(job_type, "active"), "-inf", f"({cutoff}")
        jobs = []
        for job_id in ids:
            job = await self._load(job_type, job_id)
            if job is not None and job.status is JobStatus.ACTIVE:
                jobs.append(job)
        return jobs

    async def expire_lease(
        self, job_type: JobType | str, job_id: str, error: str
    ) -> ProcessingJob | None:
        job = await self._load(job_type, job_id)
        if job is None or job.status is not JobStatus.ACTIVE:
            return None
        if job.attempts < job.max_attempts and not job.cancel_requested:
            delay = self.backoff_delay(job_type, job.attempts)
            changed = await self._reschedule_job(job_type, job_id, ANY_LEASE, error, delay)
        else:
            changed = await self._finish_job(
                job_type, job_id, ANY_LEASE, JobStatus.FAILED, last_error=error
            )
        if not changed:
            return None
        return await self._load(job_type, job_id) or job

    async def requeue_orphans(self, job_type: JobType | str, older_than: float) -> int:
        cutoff = _now_ms() - int(older_than * 1000)
        count = await self._run(
            self._requeue_orphans,
            keys=[self._key(job_type, "delivered"), self._key(job_type, "ready")],
            args=[f"({cutoff}", self._job_prefix(job_type)],
        )
        return int(count)

    async def clean(self, job_type: JobType | str, older_than: float) -> int:
        cutoff = _now_ms() - int(older_than * 1000)
        removed = await self._run(
            self._clean,
            keys=[self._key(job_type, "completed"), self._key(job_type, "failed")],
            args=[f"({cutoff}", self._job_prefix(job_type)],
        )
        return int(removed)

    async def close(self) -> None:
        await self._client.aclose()
