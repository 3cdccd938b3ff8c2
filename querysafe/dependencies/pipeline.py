"""Application-scoped services and their FastAPI dependencies.

The lifespan builds one ``ServiceContainer`` and stores it on
``app.state``; routes receive individual services through the ``*Dep``
aliases below.
"""

from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Request

from querysafe.cache.redis_client import RedisClient
from querysafe.cache.schema_cache import SchemaCache
from querysafe.data_connectors.factory import create_connector
from querysafe.data_connectors.types import ConnectionConfig
from querysafe.logging import get_logger
from querysafe.services.audit.audit_logger import AuditLogger, create_audit_logger
from querysafe.services.connections.health import HealthMonitor
from querysafe.services.connections.lifecycle import AdapterFactory, AdapterLifecycleManager
from querysafe.services.connections.manager import ConnectionService
from querysafe.services.connections.schema import SchemaService
from querysafe.services.connections.store import ConnectionStore, create_connection_store
from querysafe.services.knowledge.store import KnowledgeStore, create_knowledge_store
from querysafe.services.ratelimit.rate_limiter import RateLimiter, create_rate_limiter
from querysafe.services.sql.generation import GenerationService, SQLGenerator, langchain_generator
from querysafe.services.sql.orchestrator import ExecutionOrchestrator

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    redis_client: RedisClient
    store: ConnectionStore
    knowledge: KnowledgeStore
    health_monitor: HealthMonitor
    lifecycle: AdapterLifecycleManager
    rate_limiter: RateLimiter
    schema_cache: SchemaCache
    audit: AuditLogger
    connections: ConnectionService
    schema: SchemaService
    orchestrator: ExecutionOrchestrator
    generation: GenerationService


def build_container(
    store: Optional[ConnectionStore] = None,
    redis_client: Optional[RedisClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
    audit: Optional[AuditLogger] = None,
    health_monitor: Optional[HealthMonitor] = None,
    adapter_factory: AdapterFactory = create_connector,
    generator: SQLGenerator = langchain_generator,
    knowledge: Optional[KnowledgeStore] = None,
) -> ServiceContainer:
    """Wire the pipeline; every collaborator can be replaced, which tests rely on."""
    redis_client = redis_client or RedisClient()
    store = store or create_connection_store()
    knowledge = knowledge or create_knowledge_store()
    health_monitor = health_monitor or HealthMonitor()
    rate_limiter = rate_limiter or create_rate_limiter(redis_client)
    audit = audit or create_audit_logger(redis_client)
    schema_cache = SchemaCache(redis_client)

    async def load_config(user_id: str, connection_id: str) -> Optional[ConnectionConfig]:
        return await connections.load_config(user_id, connection_id)

    lifecycle = AdapterLifecycleManager(load_config, health_monitor, adapter_factory=adapter_factory)
    connections = ConnectionService(
        store,
        lifecycle,
        health_monitor,
        rate_limiter,
        schema_cache=schema_cache,
        adapter_factory=adapter_factory,
    )
    schema = SchemaService(store, lifecycle, rate_limiter, schema_cache)

    return ServiceContainer(
        redis_client=redis_client,
        store=store,
        knowledge=knowledge,
        health_monitor=health_monitor,
        lifecycle=lifecycle,
        rate_limiter=rate_limiter,
        schema_cache=schema_cache,
        audit=audit,
        connections=connections,
        schema=schema,
        orchestrator=ExecutionOrchestrator(store, lifecycle, rate_limiter, audit),
        generation=GenerationService(schema, rate_limiter, audit, generator=generator, knowledge=knowledge),
    )


async def close_container(container: ServiceContainer) -> None:
    """Close adapters, flush audit writes and release clients."""
    await container.lifecycle.shutdown()
    await container.audit.flush()
    await container.store.close()
    await container.knowledge.close()
    await container.redis_client.close()
    logger.info("Services shut down")


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_orchestrator(request: Request) -> ExecutionOrchestrator:
    return get_container(request).orchestrator


def get_generation_service(request: Request) -> GenerationService:
    return get_container(request).generation


def get_connection_service(request: Request) -> ConnectionService:
    return get_container(request).connections


def get_schema_service(request: Request) -> SchemaService:
    return get_container(request).schema


def get_knowledge_store(request: Request) -> KnowledgeStore:
    return get_container(request).knowledge


OrchestratorDep = Annotated[ExecutionOrchestrator, Depends(get_orchestrator)]
GenerationServiceDep = Annotated[GenerationService, Depends(get_generation_service)]
ConnectionServiceDep = Annotated[ConnectionService, Depends(get_connection_service)]
SchemaServiceDep = Annotated[SchemaService, Depends(get_schema_service)]
KnowledgeStoreDep = Annotated[KnowledgeStore, Depends(get_knowledge_store)]
