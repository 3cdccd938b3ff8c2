"""Connection record store.

Connection records (host, database, user, encrypted password) live in the
platform microservice; ``PlatformConnectionStore`` talks to it over HTTP.
``InMemoryConnectionStore`` serves development and tests. Stores never
decrypt passwords; that happens in the connection service.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel, ConfigDict, Field

from querysafe.config import settings
from querysafe.data_connectors.types import DatabaseType, SSLOptions
from querysafe.exceptions.base import ExternalServiceError, NotFoundError
from querysafe.logging import get_logger

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "db_type", "host", "port", "database", "username", "password_encrypted", "ssl"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionRecord(BaseModel):
    """Stored connection; ``password_encrypted`` never leaves the service."""

    id: str
    user_id: str
    name: str
    db_type: DatabaseType
    host: Optional[str] = None
    port: Optional[int] = None
    database: str
    username: Optional[str] = None
    password_encrypted: Optional[str] = Field(default=None, repr=False)
    ssl: bool | SSLOptions | None = None
    is_active: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True)

    def public_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"password_encrypted"})


class ConnectionStore(ABC):
    @abstractmethod
    async def list_connections(self, user_id: str) -> List[ConnectionRecord]:
        pass

    @abstractmethod
    async def get(self, user_id: str, connection_id: str) -> Optional[ConnectionRecord]:
        pass

    @abstractmethod
    async def get_active(self, user_id: str) -> Optional[ConnectionRecord]:
        pass

    @abstractmethod
    async def create(self, user_id: str, data: Dict[str, Any]) -> ConnectionRecord:
        pass

    @abstractmethod
    async def set_active(self, user_id: str, connection_id: str) -> ConnectionRecord:
        """Mark one connection active and deactivate the user's others.

        Raises:
            NotFoundError: If the connection does not belong to the user

        """

    @abstractmethod
    async def update(self, user_id: str, connection_id: str, changes: Dict[str, Any]) -> ConnectionRecord:
        """Apply ``changes`` to a connection.

        Raises:
            NotFoundError: If the connection does not belong to the user

        """

    @abstractmethod
    async def delete(self, user_id: str, connection_id: str) -> bool:
        pass

    async def close(self) -> None:
        return None


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, ConnectionRecord]] = {}
        self._lock = asyncio.Lock()

    def _user_records(self, user_id: str) -> Dict[str, ConnectionRecord]:
        return self._records.setdefault(user_id, {})

    def _require(self, user_id: str, connection_id: str) -> ConnectionRecord:
        record = self._user_records(user_id).get(connection_id)
        if record is None:
            raise NotFoundError("Connection not found", resource_type="connection", resource_id=connection_id)
        return record

    async def list_connections(self, user_id: str) -> List[ConnectionRecord]:
        return sorted(self._user_records(user_id).values(), key=lambda record: record.created_at, reverse=True)

    async def get(self, user_id: str, connection_id: str) -> Optional[ConnectionRecord]:
        return self._user_records(user_id).get(connection_id)

    async def get_active(self, user_id: str) -> Optional[ConnectionRecord]:
        return next((record for record in self._user_records(user_id).values() if record.is_active), None)

    async def create(self, user_id: str, data: Dict[str, Any]) -> ConnectionRecord:
        async with self._lock:
            record = ConnectionRecord(**{"id": str(uuid4()), **data, "user_id": user_id})
            self._user_records(user_id)[record.id] = record
            return record

    async def set_active(self, user_id: str, connection_id: str) -> ConnectionRecord:
        async with self._lock:
            self._require(user_id, connection_id)
            records = self._user_records(user_id)
            for record_id, record in list(records.items()):
                should_be_active = record_id == connection_id
                if record.is_active != should_be_active:
                    records[record_id] = record.model_copy(update={"is_active": should_be_active, "updated_at": _utcnow()})
            return records[connection_id]

    async def update(self, user_id: str, connection_id: str, changes: Dict[str, Any]) -> ConnectionRecord:
        async with self._lock:
            record = self._require(user_id, connection_id)
            allowed = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS}
            updated = ConnectionRecord(**{**record.model_dump(), **allowed, "updated_at": _utcnow()})
            self._user_records(user_id)[connection_id] = updated
            return updated

    async def delete(self, user_id: str, connection_id: str) -> bool:
        async with self._lock:
            return self._user_records(user_id).pop(connection_id, None) is not None


class PlatformClient:
    """HTTP access to the platform microservice, scoped by the ``X-User-ID`` header."""

    SERVICE_LABEL = "Platform service"

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url or settings.PLATFORM_SERVICE_URL
        self.timeout = settings.PLATFORM_SERVICE_TIMEOUT
        self.retry_attempts = max(1, settings.PLATFORM_SERVICE_RETRY_ATTEMPTS)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, user_id: str, **kwargs: Any) -> Optional[httpx.Response]:
        """Send a request with exponential backoff on transport errors and 5xx.

        Returns:
            The response, or None on 404

        Raises:
            ExternalServiceError: If the platform is unreachable or keeps failing

        """
        headers = {"X-User-ID": user_id, "Content-Type": "application/json"}
        client = self._get_client()

        for attempt in range(self.retry_attempts):
            try:
                response = await client.request(method, url, headers=headers, **kwargs)
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                logger.error(
                    "HTTP error from platform service",
                    extra={"store": self.SERVICE_LABEL, "url": url, "status_code": status_code, "attempt": attempt + 1},
                )
                if status_code < 500 or attempt == self.retry_attempts - 1:
                    raise ExternalServiceError(
                        f"{self.SERVICE_LABEL} request failed",
                        service_name="platform",
                        status_code=status_code,
                    ) from e

            except httpx.RequestError as e:
                logger.error(
                    "Error reaching platform service",
                    extra={"store": self.SERVICE_LABEL, "url": url, "error": str(e), "attempt": attempt + 1},
                )
                if attempt == self.retry_attempts - 1:
                    raise ExternalServiceError(f"{self.SERVICE_LABEL} unavailable", service_name="platform") from e

            await asyncio.sleep(2**attempt)  # Exponential backoff

        raise ExternalServiceError(f"{self.SERVICE_LABEL} unavailable", service_name="platform")


class PlatformConnectionStore(PlatformClient, ConnectionStore):
    """Client for connection records held by the platform microservice."""

    SERVICE_LABEL = "Connection store"

    @staticmethod
    def _not_found(connection_id: str) -> NotFoundError:
        return NotFoundError("Connection not found", resource_type="connection", resource_id=connection_id)

    async def list_connections(self, user_id: str) -> List[ConnectionRecord]:
        response = await self._request("GET", "/connections", user_id)
        if response is None:
            return []
        return [ConnectionRecord(**item) for item in response.json()]

    async def get(self, user_id: str, connection_id: str) -> Optional[ConnectionRecord]:
        response = await self._request("GET", f"/connections/{connection_id}", user_id)
        return ConnectionRecord(**response.json()) if response is not None else None

    async def get_active(self, user_id: str) -> Optional[ConnectionRecord]:
        response = await self._request("GET", "/connections/active", user_id)
        return ConnectionRecord(**response.json()) if response is not None else None

    async def create(self, user_id: str, data: Dict[str, Any]) -> ConnectionRecord:
        response = await self._request("POST", "/connections", user_id, json=data)
        if response is None:
            raise ExternalServiceError("Connection store rejected create", service_name="platform", status_code=404)
        return ConnectionRecord(**response.json())

    async def set_active(self, user_id: str, connection_id: str) -> ConnectionRecord:
        response = await self._request("POST", f"/connections/{connection_id}/activate", user_id)
        if response is None:
            raise self._not_found(connection_id)
        return ConnectionRecord(**response.json())

    async def update(self, user_id: str, connection_id: str, changes: Dict[str, Any]) -> ConnectionRecord:
        payload = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS}
        response = await self._request("PATCH", f"/connections/{connection_id}", user_id, json=payload)
        if response is None:
            raise self._not_found(connection_id)
        return ConnectionRecord(**response.json())

    async def delete(self, user_id: str, connection_id: str) -> bool:
        response = await self._request("DELETE", f"/connections/{connection_id}", user_id)
        return response is not None


def create_connection_store() -> ConnectionStore:
    if settings.CONNECTION_STORE_BACKEND == "memory":
        return InMemoryConnectionStore()
    return PlatformConnectionStore()
