"""Connection management routes."""

from typing import Annotated, List

from fastapi import APIRouter, Depends, Response, status

from querysafe.api.v1.schemas.connection import (
    CacheClearedResponse,
    ConnectionCreate,
    ConnectionHealthResponse,
    ConnectionResponse,
    ConnectionTest,
    ConnectionTestResponse,
    ConnectionUpdate,
)
from querysafe.dependencies.pipeline import ConnectionServiceDep
from querysafe.logging import get_logger
from querysafe.security.auth import get_current_user_id

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/connections", tags=["Connections"])

UserId = Annotated[str, Depends(get_current_user_id)]


@router.get("", response_model=List[ConnectionResponse], summary="List connections")
async def list_connections(user_id: UserId, connections: ConnectionServiceDep) -> List[ConnectionResponse]:
    records = await connections.list_connections(user_id)
    return [ConnectionResponse.model_validate(record.public_dict()) for record in records]


@router.post(
    "",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a connection",
    description="Store a connection; the password is encrypted before it leaves this service.",
)
async def create_connection(
    body: ConnectionCreate, user_id: UserId, connections: ConnectionServiceDep
) -> ConnectionResponse:
    record = await connections.create_connection(user_id, body.to_payload())
    return ConnectionResponse.model_validate(record.public_dict())


@router.post(
    "/test",
    response_model=ConnectionTestResponse,
    summary="Test connection settings",
    responses={status.HTTP_400_BAD_REQUEST: {"model": ConnectionTestResponse}},
)
async def test_connection(
    body: ConnectionTest, response: Response, user_id: UserId, connections: ConnectionServiceDep
) -> ConnectionTestResponse:
    result = await connections.test_connection(user_id, body.to_payload())
    if result.rate_limit is not None:
        response.headers.update(result.rate_limit.headers())
    if not result.success:
        response.status_code = status.HTTP_400_BAD_REQUEST
    return ConnectionTestResponse(
        success=result.success,
        message=result.message,
        error=result.error,
        attempts=result.attempts,
        latency_ms=result.latency_ms,
        provider=result.provider,
    )


@router.post("/clear-cache", response_model=CacheClearedResponse, summary="Close this user's cached adapters")
async def clear_cache(user_id: UserId, connections: ConnectionServiceDep) -> CacheClearedResponse:
    return CacheClearedResponse(**await connections.clear_cache(user_id))


@router.get("/health", response_model=ConnectionHealthResponse, summary="Health of this user's connections")
async def connection_health(user_id: UserId, connections: ConnectionServiceDep) -> ConnectionHealthResponse:
    stats = connections.lifecycle.stats()
    own = [adapter for adapter in stats["adapters"] if adapter["userId"] == user_id]
    return ConnectionHealthResponse(
        connections=await connections.health(user_id),
        cache={"size": len(own), "adapters": own},
    )


@router.post("/{connection_id}/activate", response_model=ConnectionResponse, summary="Activate a connection")
async def activate_connection(
    connection_id: str, user_id: UserId, connections: ConnectionServiceDep
) -> ConnectionResponse:
    record = await connections.activate(user_id, connection_id)
    return ConnectionResponse.model_validate(record.public_dict())


@router.put("/{connection_id}", response_model=ConnectionResponse, summary="Update a connection")
async def update_connection(
    connection_id: str, body: ConnectionUpdate, user_id: UserId, connections: ConnectionServiceDep
) -> ConnectionResponse:
    record = await connections.update(user_id, connection_id, body.to_payload())
    return ConnectionResponse.model_validate(record.public_dict())


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a connection")
async def delete_connection(connection_id: str, user_id: UserId, connections: ConnectionServiceDep) -> Response:
    await connections.delete(user_id, connection_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{connection_id}/metrics", summary="Connection attempt metrics and provider info")
async def connection_metrics(connection_id: str, user_id: UserId, connections: ConnectionServiceDep) -> dict:
    return await connections.metrics(user_id, connection_id)
