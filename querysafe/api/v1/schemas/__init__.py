from .connection import (
    CacheClearedResponse,
    ConnectionCreate,
    ConnectionHealthResponse,
    ConnectionResponse,
    ConnectionTest,
    ConnectionTestResponse,
    ConnectionUpdate,
)
from .knowledge import (
    GlossaryListResponse,
    GlossaryTermCreate,
    GlossaryTermResponse,
    GoldenQueryCreate,
    GoldenQueryResponse,
    GoldenQuerySearchResponse,
)
from .query import ExecuteRequest, ExecuteResponse, GenerateRequest, GenerateResponse, PipelineErrorResponse

__all__ = [
    "CacheClearedResponse",
    "ConnectionCreate",
    "ConnectionHealthResponse",
    "ConnectionResponse",
    "ConnectionTest",
    "ConnectionTestResponse",
    "ConnectionUpdate",
    "ExecuteRequest",
    "ExecuteResponse",
    "GlossaryListResponse",
    "GlossaryTermCreate",
    "GlossaryTermResponse",
    "GoldenQueryCreate",
    "GoldenQueryResponse",
    "GoldenQuerySearchResponse",
    "GenerateRequest",
    "GenerateResponse",
    "PipelineErrorResponse",
]
