import ujson
from redis.exceptions import ConnectionError as RedisConnectionError

from querysafe.cache.redis_client import RedisClient
from querysafe.services.audit.audit_logger import (
    QUERY_HISTORY_STREAM,
    SECURITY_STREAM,
    AuditLogger,
    AuditSink,
    LogAuditSink,
    QueryHistoryEntry,
    RedisStreamAuditSink,
    SecurityEvent,
    create_audit_logger,
)
from tests.conftest import USER_ID


class FakeRedis:
    def __init__(self):
        self.calls = []

    async def xadd(self, stream, fields, maxlen=None, approximate=False):
        self.calls.append((stream, fields, maxlen, approximate))
        return b"1-0"


class FakeRedisClient(RedisClient):
    def __init__(self, redis):
        super().__init__(url="redis://fake:6379/0")
        self.redis = redis

    async def get(self):
        return self.redis


class FailingSink(AuditSink):
    async def write(self, stream, entry):
        raise RedisConnectionError("Error 111 connecting to redis:6379")


class TestAuditLogger:
    async def test_security_event_reaches_sink(self, audit_sink):
        logger = AuditLogger(audit_sink)

        logger.log_security_event(
            SecurityEvent(user_id=USER_ID, event_type="prompt_injection", severity="critical", ip_address="10.0.0.7")
        )
        await logger.flush()

        [entry] = audit_sink.stream(SECURITY_STREAM)
        assert entry["event_type"] == "prompt_injection"
        assert entry["ip_address"] == "10.0.0.7"
        assert entry["created_at"]

    async def test_query_history_reaches_sink(self, audit_sink):
        logger = AuditLogger(audit_sink)

        logger.log_query_history(
            QueryHistoryEntry(user_id=USER_ID, connection_id="c1", generated_sql="SELECT 1", executed=True, row_count=1)
        )
        await logger.flush()

        [entry] = audit_sink.stream(QUERY_HISTORY_STREAM)
        assert entry["generated_sql"] == "SELECT 1"
        assert entry["row_count"] == 1

    async def test_failing_sink_does_not_raise(self):
        logger = AuditLogger(FailingSink())

        logger.log_query_history(QueryHistoryEntry(user_id=USER_ID, connection_id=None, generated_sql="SELECT 1"))
        await logger.flush()

        assert not logger._pending


class TestRedisStreamAuditSink:
    async def test_writes_capped_stream_entry(self):
        redis = FakeRedis()
        sink = RedisStreamAuditSink(FakeRedisClient(redis), maxlen=500)

        await sink.write(QUERY_HISTORY_STREAM, {"user_id": USER_ID, "row_count": 3, "error_message": None})

        [(stream, fields, maxlen, approximate)] = redis.calls
        assert stream == QUERY_HISTORY_STREAM
        assert maxlen == 500
        assert approximate
        assert ujson.loads(fields["row_count"]) == 3
        assert "error_message" not in fields

    async def test_unconfigured_redis_falls_back_to_log(self):
        sink = RedisStreamAuditSink(RedisClient(url=""))

        await sink.write(SECURITY_STREAM, {"user_id": USER_ID})


def test_log_sink_without_redis():
    logger = create_audit_logger(RedisClient(url=""))

    assert isinstance(logger.sink, LogAuditSink)
