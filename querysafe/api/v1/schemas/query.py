"""Pydantic schemas for the query API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecuteRequest(BaseModel):
    sql: str = Field(..., min_length=1, description="SQL statement to run against the active connection")
    nl_query: Optional[str] = Field(default=None, description="Question the statement was generated from")


class GenerateRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=10000, description="Natural-language question")


class SafetyInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    limit_applied: bool = Field(alias="limitApplied")
    max_rows: int = Field(alias="maxRows")
    timeout_seconds: int = Field(alias="timeoutSeconds")
    complexity: str
    warnings: List[str] = Field(default_factory=list)


class ExecuteResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    results: List[Dict[str, Any]]
    row_count: int = Field(alias="rowCount")
    execution_time: float = Field(alias="executionTime", description="Milliseconds")
    fields: List[str]
    safety: SafetyInfo


class GenerateResponse(BaseModel):
    sql: str
    confidence: float
    attempts: int
    warnings: List[str] = Field(default_factory=list)
    validation: Dict[str, Any]


class PipelineErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    error: str
    code: str
    retry_after: Optional[int] = Field(default=None, alias="retryAfter")
