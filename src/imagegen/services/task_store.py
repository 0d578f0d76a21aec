"""Task metadata store -- one JSON document per provider task in Redis.

Every conditional mutation (mark processing, claim, finalize) runs as a
single Lua script so concurrent callback and poll handlers observe a
consistent document.

Status moves only forward: pending -> processing -> completed | failed.
Terminal documents are never rewritten.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Protocol

from redis.asyncio import Redis

from imagegen.config import settings

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

KEY_PREFIX = "generation_task:"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class GenerationTask:
    task_id: str
    status: str = STATUS_PENDING
    prompt: str = ""
    user_id: str | None = None
    image_id: str | None = None
    image_type: str = "generation"
    result_urls: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    consume_credits: int | None = None
    cost_time_ms: int | None = None
    claim_token: str | None = None
    claim_expires_at: float | None = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_live_claim(self, now: float | None = None) -> bool:
        if not self.claim_token or self.claim_expires_at is None:
            return False
        return self.claim_expires_at > (now if now is not None else time.time())

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "GenerationTask":
        data = json.loads(raw)
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in data.items() if k in known}
        # Lua's cjson encodes an empty list as {}
        urls = data.get("result_urls")
        data["result_urls"] = list(urls) if isinstance(urls, list) else []
        return cls(**data)


class TaskMetadataStore(Protocol):
    async def save(self, task: GenerationTask) -> bool: ...

    async def get(self, task_id: str) -> GenerationTask | None: ...

    async def mark_processing(self, task_id: str) -> bool: ...

    async def claim(self, task_id: str, token: str, ttl_seconds: int) -> bool: ...

    async def finalize(
        self,
        task_id: str,
        token: str,
        *,
        status: str,
        result_urls: list[str] | None = None,
        error: str | None = None,
        error_code: str | None = None,
        consume_credits: int | None = None,
        cost_time_ms: int | None = None,
    ) -> GenerationTask | None: ...


# ---------------------------------------------------------------------------
# Lua scripts
# ---------------------------------------------------------------------------

_MARK_PROCESSING_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then return -1 end
local task = cjson.decode(raw)
if task.status ~= 'pending' then return 0 end
task.status = 'processing'
task.updated_at = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(task), 'KEEPTTL')
return 1
"""

_CLAIM_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then return -1 end
local task = cjson.decode(raw)
if task.status == 'completed' or task.status == 'failed' then return 0 end
local now = tonumber(ARGV[2])
local expires = tonumber(task.claim_expires_at)
if task.claim_token ~= nil and task.claim_token ~= cjson.null
   and expires ~= nil and expires > now then
  return 0
end
task.claim_token = ARGV[1]
task.claim_expires_at = now + tonumber(ARGV[3])
task.updated_at = ARGV[4]
redis.call('SET', KEYS[1], cjson.encode(task), 'KEEPTTL')
return 1
"""

_FINALIZE_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
local task = cjson.decode(raw)
if task.status == 'completed' or task.status == 'failed' then return false end
if task.claim_token ~= ARGV[1] then return false end
local patch = cjson.decode(ARGV[2])
for k, v in pairs(patch) do task[k] = v end
task.claim_token = cjson.null
task.claim_expires_at = cjson.null
local encoded = cjson.encode(task)
redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
return encoded
"""


class RedisTaskMetadataStore:
    """``TaskMetadataStore`` backed by Redis strings and server-side scripts."""

    def __init__(self, redis: Redis, ttl_seconds: int | None = None) -> None:
        self._redis = redis
        self._ttl = ttl_seconds or settings.TASK_METADATA_TTL_SECONDS
        self._mark_processing = redis.register_script(_MARK_PROCESSING_LUA)
        self._claim = redis.register_script(_CLAIM_LUA)
        self._finalize = redis.register_script(_FINALIZE_LUA)

    @staticmethod
    def key(task_id: str) -> str:
        return f"{KEY_PREFIX}{task_id}"

    async def save(self, task: GenerationTask) -> bool:
        """Create the document. Returns False if the task already exists."""
        created = await self._redis.set(
            self.key(task.task_id), task.to_json(), nx=True, ex=self._ttl
        )
        return bool(created)

    async def get(self, task_id: str) -> GenerationTask | None:
        raw = await self._redis.get(self.key(task_id))
        if raw is None:
            return None
        return GenerationTask.from_json(raw)

    async def mark_processing(self, task_id: str) -> bool:
        result = await self._mark_processing(keys=[self.key(task_id)], args=[_now_iso()])
        return int(result) == 1

    async def claim(self, task_id: str, token: str, ttl_seconds: int) -> bool:
        result = await self._claim(
            keys=[self.key(task_id)],
            args=[token, time.time(), ttl_seconds, _now_iso()],
        )
        return int(result) == 1

    async def finalize(
        self,
        task_id: str,
        token: str,
        *,
        status: str,
        result_urls: list[str] | None = None,
        error: str | None = None,
        error_code: str | None = None,
        consume_credits: int | None = None,
        cost_time_ms: int | None = None,
    ) -> GenerationTask | None:
        """Write the terminal state if ``token`` still holds the claim."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"finalize requires a terminal status, got {status!r}")
        now = _now_iso()
        patch: dict[str, Any] = {
            "status": status,
            "result_urls": list(result_urls or []),
            "error": error,
            "error_code": error_code,
            "updated_at": now,
            "completed_at": now,
        }
        if consume_credits is not None:
            patch["consume_credits"] = consume_credits
        if cost_time_ms is not None:
            patch["cost_time_ms"] = cost_time_ms
        encoded = await self._finalize(
            keys=[self.key(task_id)], args=[token, json.dumps(patch)]
        )
        if not encoded:
            return None
        return GenerationTask.from_json(encoded)
