"""Pydantic schemas for the connection API.

Field presence is checked by the connection service so users get its
field-level messages; the models here only shape the payload. Passwords
are accepted on input and never appear in a response model.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from querysafe.data_connectors.types import SSLOptions


class ConnectionFields(BaseModel):
    model_config = ConfigDict(hide_input_in_errors=True)

    name: Optional[str] = Field(default=None, max_length=255)
    db_type: Optional[str] = Field(default=None, description="postgresql, mysql, sqlite or sqlserver")
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    ssl: bool | SSLOptions | None = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ConnectionCreate(ConnectionFields):
    pass


class ConnectionTest(ConnectionFields):
    id: Optional[str] = Field(default=None, description="Existing connection id, for metrics")


class ConnectionUpdate(ConnectionFields):
    pass


class ConnectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    db_type: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: str
    username: Optional[str] = None
    ssl: bool | SSLOptions | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ConnectionTestResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    attempts: int
    latency_ms: float = Field(serialization_alias="latencyMs")
    provider: Optional[str] = None


class CacheClearedResponse(BaseModel):
    message: str
    evicted: int


class ConnectionHealthResponse(BaseModel):
    connections: List[Dict[str, Any]]
    cache: Dict[str, Any]
