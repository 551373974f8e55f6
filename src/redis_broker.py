"""
Redis-backed queue broker.

Every state transition runs as one Lua script, so a job is either fully
visible or not at all and two workers can never claim the same job.

Keys per queue (all under the {jobs} hash tag, one cluster slot):
    {jobs}:<queue>:id          - INCR counter for generated job ids
    {jobs}:<queue>:wait        - LIST of ready job ids (LPUSH in, RPOP out)
    {jobs}:<queue>:delayed     - ZSET id -> ready_at ms (backoff / initial delay)
    {jobs}:<queue>:active      - ZSET id -> stall deadline ms
    {jobs}:<queue>:completed   - ZSET id -> finished_at ms (trimmed)
    {jobs}:<queue>:failed      - ZSET id -> finished_at ms, dead-lettered (trimmed)
    {jobs}:<queue>:limiter     - STRING dispatch counter with PEXPIRE window
    {jobs}:<queue>:job:<id>    - HASH job record
"""

import logging
from typing import Dict, List, Optional, Tuple

from config import QUEUE_KEY_PREFIX
from models import ClaimResult, Job, JobStatus, RateLimit
from queue_broker import STALLED_ERROR, slice_range
from utils.cluster_keys import tagged_key

logger = logging.getLogger(__name__)

# Orphaned ids (record trimmed while still listed) are skipped this many times per claim
MAX_ORPHAN_SKIPS = 10


class QueueLuaScripts:
    """
    Container for the broker's Lua scripts.
    Scripts are registered on construction and called as await script(keys, args).
    """

    ADD_JOB = """
    -- KEYS[1]: job hash, KEYS[2]: wait list, KEYS[3]: delayed zset
    -- ARGV[1]: job id, ARGV[2]: ready_at, ARGV[3]: '1' if delayed, ARGV[4..]: field/value pairs
    if redis.call('EXISTS', KEYS[1]) == 1 then
        return 0
    end
    redis.call('HSET', KEYS[1], unpack(ARGV, 4))
    if ARGV[3] == '1' then
        redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
    else
        redis.call('LPUSH', KEYS[2], ARGV[1])
    end
    return 1
    """

    CLAIM_JOB = """
    -- KEYS[1]: wait, KEYS[2]: delayed, KEYS[3]: active, KEYS[4]: limiter
    -- ARGV[1]: now ms, ARGV[2]: job key prefix, ARGV[3]: default max (0 = no limit),
    -- ARGV[4]: default window ms, ARGV[5]: stall ms
    local now = tonumber(ARGV[1])
    local job_prefix = ARGV[2]

    -- Promote delayed jobs whose backoff has elapsed
    local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)
    for _, due_id in ipairs(due) do
        redis.call('ZREM', KEYS[2], due_id)
        redis.call('LPUSH', KEYS[1], due_id)
        redis.call('HSET', job_prefix .. due_id, 'status', 'pending')
    end

    local id = redis.call('LINDEX', KEYS[1], -1)
    if not id then
        return {'', 0}
    end

    local job_key = job_prefix .. id
    if redis.call('EXISTS', job_key) == 0 then
        redis.call('RPOP', KEYS[1])
        return {'', -1}
    end

    -- Shared dispatch gate: one counter per queue, window opened by the first grant
    local max = tonumber(redis.call('HGET', job_key, 'limiter_max') or ARGV[3])
    local window = tonumber(redis.call('HGET', job_key, 'limiter_duration') or ARGV[4])
    if max > 0 then
        local used = tonumber(redis.call('GET', KEYS[4]) or '0')
        if used >= max then
            local ttl = redis.call('PTTL', KEYS[4])
            if ttl < 0 then
                redis.call('PEXPIRE', KEYS[4], window)
                ttl = window
            end
            return {'', ttl}
        end
        if redis.call('INCR', KEYS[4]) == 1 then
            redis.call('PEXPIRE', KEYS[4], window)
        end
    end

    redis.call('RPOP', KEYS[1])
    redis.call('HINCRBY', job_key, 'attempt', 1)
    redis.call('HSET', job_key, 'status', 'active', 'started_at', ARGV[1])
    redis.call('ZADD', KEYS[3], now + tonumber(ARGV[5]), id)
    return {id, 0}
    """

    COMPLETE_JOB = """
    -- KEYS[1]: job hash, KEYS[2]: active, KEYS[3]: completed
    -- ARGV[1]: id, ARGV[2]: now ms, ARGV[3]: result json, ARGV[4]: keep, ARGV[5]: job key prefix
    if redis.call('EXISTS', KEYS[1]) == 0 then
        return 0
    end
    redis.call('ZREM', KEYS[2], ARGV[1])
    redis.call('HSET', KEYS[1], 'status', 'completed', 'finished_at', ARGV[2], 'result', ARGV[3])
    redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])

    local excess = redis.call('ZRANGE', KEYS[3], 0, -(tonumber(ARGV[4]) + 1))
    for _, old_id in ipairs(excess) do
        redis.call('ZREM', KEYS[3], old_id)
        redis.call('DEL', ARGV[5] .. old_id)
    end
    return 1
    """

    RETRY_JOB = """
    -- KEYS[1]: job hash, KEYS[2]: active, KEYS[3]: delayed
    -- ARGV[1]: id, ARGV[2]: ready_at ms, ARGV[3]: error
    if redis.call('EXISTS', KEYS[1]) == 0 then
        return 0
    end
    redis.call('ZREM', KEYS[2], ARGV[1])
    redis.call('HSET', KEYS[1], 'status', 'failed', 'last_error', ARGV[3], 'ready_at', ARGV[2])
    redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
    return 1
    """

    DEAD_LETTER_JOB = """
    -- KEYS[1]: job hash, KEYS[2]: active, KEYS[3]: failed
    -- ARGV[1]: id, ARGV[2]: now ms, ARGV[3]: error, ARGV[4]: keep, ARGV[5]: job key prefix
    if redis.call('EXISTS', KEYS[1]) == 0 then
        return 0
    end
    redis.call('ZREM', KEYS[2], ARGV[1])
    redis.call('HSET', KEYS[1], 'status', 'dead_lettered', 'last_error', ARGV[3], 'finished_at', ARGV[2])
    redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])

    local excess = redis.call('ZRANGE', KEYS[3], 0, -(tonumber(ARGV[4]) + 1))
    for _, old_id in ipairs(excess) do
        redis.call('ZREM', KEYS[3], old_id)
        redis.call('DEL', ARGV[5] .. old_id)
    end
    return 1
    """

    RECOVER_STALLED = """
    -- KEYS[1]: active, KEYS[2]: wait, KEYS[3]: failed
    -- ARGV[1]: now ms, ARGV[2]: job key prefix, ARGV[3]: keep failed, ARGV[4]: stalled error
    local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
    local requeued = {}
    local dead = {}

    for _, id in ipairs(stalled) do
        redis.call('ZREM', KEYS[1], id)
        local job_key = ARGV[2] .. id
        if redis.call('EXISTS', job_key) == 1 then
            local attempt = tonumber(redis.call('HGET', job_key, 'attempt') or '0')
            local max_attempts = tonumber(redis.call('HGET', job_key, 'max_attempts') or '0')
            if attempt > max_attempts then
                redis.call('HSET', job_key, 'status', 'dead_lettered', 'last_error', ARGV[4], 'finished_at', ARGV[1])
                redis.call('ZADD', KEYS[3], ARGV[1], id)
                table.insert(dead, id)
            else
                redis.call('HSET', job_key, 'status', 'pending')
                redis.call('LPUSH', KEYS[2], id)
                table.insert(requeued, id)
            end
        end
    end

    local excess = redis.call('ZRANGE', KEYS[3], 0, -(tonumber(ARGV[3]) + 1))
    for _, old_id in ipairs(excess) do
        redis.call('ZREM', KEYS[3], old_id)
        redis.call('DEL', ARGV[2] .. old_id)
    end
    return {requeued, dead}
    """

    REQUEUE_FAILED = """
    -- KEYS[1]: job hash, KEYS[2]: failed, KEYS[3]: wait
    -- ARGV[1]: id
    if redis.call('ZREM', KEYS[2], ARGV[1]) == 0 then
        return 0
    end
    redis.call('HSET', KEYS[1], 'status', 'pending', 'attempt', '0', 'last_error', '', 'finished_at', '')
    redis.call('LPUSH', KEYS[3], ARGV[1])
    return 1
    """

    def __init__(self, redis_client):
        self.add_job = redis_client.register_script(self.ADD_JOB)
        self.claim_job = redis_client.register_script(self.CLAIM_JOB)
        self.complete_job = redis_client.register_script(self.COMPLETE_JOB)
        self.retry_job = redis_client.register_script(self.RETRY_JOB)
        self.dead_letter_job = redis_client.register_script(self.DEAD_LETTER_JOB)
        self.recover_stalled = redis_client.register_script(self.RECOVER_STALLED)
        self.requeue_failed = redis_client.register_script(self.REQUEUE_FAILED)


class RedisQueueBroker:
    """
    QueueBroker over an async Redis (or RedisCluster) client.

    Args:
        redis_client: redis.asyncio client created with decode_responses=True
        key_prefix: Hash-tagged prefix shared by every queue key
    """

    def __init__(self, redis_client, key_prefix: str = QUEUE_KEY_PREFIX):
        self.client = redis_client
        self.key_prefix = key_prefix
        self.scripts = QueueLuaScripts(redis_client)

    # ------------------------------------------------------------------------
    # Key Generators
    # ------------------------------------------------------------------------

    def _key(self, queue_name: str, name: str) -> str:
        return tagged_key(self.key_prefix, queue_name, name)

    def _job_prefix(self, queue_name: str) -> str:
        return self._key(queue_name, "job") + ":"

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return self._job_prefix(queue_name) + job_id

    def queue_keys(self, queue_name: str) -> List[str]:
        """Every fixed key a queue uses (job hashes share the same prefix)."""
        names = ["id", "wait", "delayed", "active", "completed", "failed", "limiter"]
        return [self._key(queue_name, name) for name in names]

    # ------------------------------------------------------------------------
    # Broker Operations
    # ------------------------------------------------------------------------

    async def next_id(self, queue_name: str) -> str:
        return str(await self.client.incr(self._key(queue_name, "id")))

    async def add(self, job: Job) -> bool:
        fields = []
        for name, value in job.to_record().items():
            fields.extend([name, value])

        delayed = job.ready_at > job.enqueued_at
        added = await self.scripts.add_job(
            keys=[
                self._job_key(job.queue_name, job.id),
                self._key(job.queue_name, "wait"),
                self._key(job.queue_name, "delayed"),
            ],
            args=[job.id, job.ready_at, "1" if delayed else "0", *fields],
        )
        return bool(added)

    async def claim(
        self,
        queue_name: str,
        now_ms: int,
        default_limit: Optional[RateLimit],
        stall_ms: int,
    ) -> ClaimResult:
        keys = [
            self._key(queue_name, "wait"),
            self._key(queue_name, "delayed"),
            self._key(queue_name, "active"),
            self._key(queue_name, "limiter"),
        ]
        args = [
            now_ms,
            self._job_prefix(queue_name),
            default_limit.max if default_limit else 0,
            default_limit.duration_ms if default_limit else 0,
            stall_ms,
        ]

        for _ in range(MAX_ORPHAN_SKIPS):
            job_id, wait_ms = await self.scripts.claim_job(keys=keys, args=args)
            if job_id:
                job = await self.get(queue_name, job_id)
                if job is not None:
                    return ClaimResult(job=job)
                continue
            if int(wait_ms) == -1:
                logger.warning(f"Skipped orphaned job id in {queue_name} wait list")
                continue
            return ClaimResult(job=None, retry_after_ms=int(wait_ms))

        return ClaimResult()

    async def complete(self, job: Job, result, now_ms: int, keep: int) -> bool:
        record = Job(id=job.id, queue_name=job.queue_name, payload=None, result=result)
        done = await self.scripts.complete_job(
            keys=[
                self._job_key(job.queue_name, job.id),
                self._key(job.queue_name, "active"),
                self._key(job.queue_name, "completed"),
            ],
            args=[job.id, now_ms, record.to_record()["result"], keep, self._job_prefix(job.queue_name)],
        )
        return bool(done)

    async def schedule_retry(self, job: Job, error: str, ready_at_ms: int) -> bool:
        done = await self.scripts.retry_job(
            keys=[
                self._job_key(job.queue_name, job.id),
                self._key(job.queue_name, "active"),
                self._key(job.queue_name, "delayed"),
            ],
            args=[job.id, ready_at_ms, error],
        )
        return bool(done)

    async def dead_letter(self, job: Job, error: str, now_ms: int, keep: int) -> bool:
        done = await self.scripts.dead_letter_job(
            keys=[
                self._job_key(job.queue_name, job.id),
                self._key(job.queue_name, "active"),
                self._key(job.queue_name, "failed"),
            ],
            args=[job.id, now_ms, error, keep, self._job_prefix(job.queue_name)],
        )
        return bool(done)

    async def recover_stalled(
        self, queue_name: str, now_ms: int, keep_failed: int
    ) -> Tuple[List[str], List[str]]:
        requeued, dead = await self.scripts.recover_stalled(
            keys=[
                self._key(queue_name, "active"),
                self._key(queue_name, "wait"),
                self._key(queue_name, "failed"),
            ],
            args=[now_ms, self._job_prefix(queue_name), keep_failed, STALLED_ERROR],
        )
        return list(requeued), list(dead)

    async def requeue_failed(self, queue_name: str, job_id: str) -> bool:
        done = await self.scripts.requeue_failed(
            keys=[
                self._job_key(queue_name, job_id),
                self._key(queue_name, "failed"),
                self._key(queue_name, "wait"),
            ],
            args=[job_id],
        )
        return bool(done)

    async def get(self, queue_name: str, job_id: str) -> Optional[Job]:
        record = await self.client.hgetall(self._job_key(queue_name, job_id))
        return Job.from_record(record) if record else None

    async def list_jobs(
        self, queue_name: str, status: JobStatus, start: int = 0, end: int = -1
    ) -> List[Job]:
        if status == JobStatus.PENDING:
            ids = list(reversed(await self.client.lrange(self._key(queue_name, "wait"), 0, -1)))
            ids = slice_range(ids, start, end)
        elif status == JobStatus.ACTIVE:
            ids = await self.client.zrange(self._key(queue_name, "active"), start, end)
        elif status == JobStatus.FAILED:
            ids = await self.client.zrange(self._key(queue_name, "delayed"), 0, -1)
        elif status == JobStatus.COMPLETED:
            ids = await self.client.zrevrange(self._key(queue_name, "completed"), start, end)
        else:
            ids = await self.client.zrevrange(self._key(queue_name, "failed"), start, end)

        if not ids:
            return []

        pipe = self.client.pipeline(transaction=False)
        for job_id in ids:
            pipe.hgetall(self._job_key(queue_name, job_id))
        records = await pipe.execute()

        jobs = [Job.from_record(record) for record in records if record]
        if status == JobStatus.FAILED:
            # Delayed also holds first-run jobs with an initial delay
            jobs = slice_range([job for job in jobs if job.status == JobStatus.FAILED], start, end)
        return jobs

    async def counts(self, queue_name: str) -> Dict[str, int]:
        pipe = self.client.pipeline(transaction=False)
        pipe.llen(self._key(queue_name, "wait"))
        pipe.zcard(self._key(queue_name, "delayed"))
        pipe.zcard(self._key(queue_name, "active"))
        pipe.zcard(self._key(queue_name, "completed"))
        pipe.zcard(self._key(queue_name, "failed"))
        pending, delayed, active, completed, failed = await pipe.execute()
        return {
            "pending": pending,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "dead_lettered": failed,
        }
