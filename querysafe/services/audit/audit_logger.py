"""Audit trail for security incidents and query history.

Entries are written in the background; a failing sink is logged and never
affects the request that produced the entry.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import ujson
from redis.exceptions import RedisError

from querysafe.cache.redis_client import RedisClient
from querysafe.config import settings
from querysafe.logging import get_logger

logger = get_logger(__name__)

SECURITY_STREAM = "security_logs"
QUERY_HISTORY_STREAM = "query_history"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SecurityEvent:
    user_id: str
    event_type: str
    severity: str
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str = field(default_factory=_utcnow_iso)


@dataclass
class QueryHistoryEntry:
    user_id: str
    connection_id: Optional[str]
    generated_sql: str
    nl_query: Optional[str] = None
    executed: bool = False
    execution_time_ms: Optional[float] = None
    row_count: Optional[int] = None
    error_message: Optional[str] = None
    created_at: str = field(default_factory=_utcnow_iso)


class AuditSink(ABC):
    @abstractmethod
    async def write(self, stream: str, entry: Dict[str, Any]) -> None:
        pass


class LogAuditSink(AuditSink):
    async def write(self, stream: str, entry: Dict[str, Any]) -> None:
        logger.info("Audit entry", stream=stream, entry=entry)


class RedisStreamAuditSink(AuditSink):
    """Appends entries to capped Redis streams."""

    def __init__(self, redis_client: RedisClient, maxlen: Optional[int] = None) -> None:
        self.redis_client = redis_client
        self.maxlen = maxlen if maxlen is not None else settings.AUDIT_STREAM_MAXLEN

    async def write(self, stream: str, entry: Dict[str, Any]) -> None:
        redis = await self.redis_client.get()
        if redis is None:
            logger.info("Audit entry", stream=stream, entry=entry)
            return
        fields = {key: ujson.dumps(value, default=str) for key, value in entry.items() if value is not None}
        await redis.xadd(stream, fields, maxlen=self.maxlen, approximate=True)


class AuditLogger:
    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    async def _write(self, stream: str, entry: Dict[str, Any]) -> None:
        try:
            await self.sink.write(stream, entry)
        except (RedisError, OSError) as e:
            logger.error("Failed to write audit entry", stream=stream, error=str(e))

    def _submit(self, stream: str, entry: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._write(stream, entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def log_security_event(self, event: SecurityEvent) -> None:
        logger.warning(
            "Security event",
            user_id=event.user_id,
            event_type=event.event_type,
            severity=event.severity,
        )
        self._submit(SECURITY_STREAM, asdict(event))

    def log_query_history(self, entry: QueryHistoryEntry) -> None:
        self._submit(QUERY_HISTORY_STREAM, asdict(entry))

    async def flush(self) -> None:
        """Wait for in-flight writes; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def create_audit_logger(redis_client: RedisClient) -> AuditLogger:
    if settings.AUDIT_SINK == "redis" and redis_client.configured:
        return AuditLogger(RedisStreamAuditSink(redis_client))
    return AuditLogger(LogAuditSink())
