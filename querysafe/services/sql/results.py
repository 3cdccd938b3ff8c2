"""Tagged results returned by the query pipelines."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from querysafe.services.sql.validator import ValidationResult


class ErrorKind(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    NO_ACTIVE_CONNECTION = "NO_ACTIVE_CONNECTION"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    VALIDATION = "VALIDATION"
    SYNTAX = "SYNTAX"
    TIMEOUT = "TIMEOUT"
    EXECUTION = "EXECUTION"
    INTERNAL = "INTERNAL"
    SECURITY_INCIDENT = "SECURITY_INCIDENT"
    GENERATION_FAILED = "GENERATION_FAILED"

    @property
    def status_code(self) -> int:
        return ERROR_STATUS_CODES[self]


ERROR_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.NO_ACTIVE_CONNECTION: 400,
    ErrorKind.CONNECTION_FAILED: 503,
    ErrorKind.VALIDATION: 400,
    ErrorKind.SYNTAX: 400,
    ErrorKind.TIMEOUT: 408,
    ErrorKind.EXECUTION: 400,
    ErrorKind.INTERNAL: 500,
    ErrorKind.SECURITY_INCIDENT: 403,
    ErrorKind.GENERATION_FAILED: 400,
}


@dataclass(frozen=True)
class PipelineFailure:
    """A pipeline step stopped the request. ``message`` is always safe to show."""

    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    retry_after: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    success = False

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.kind.value}
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        body.update(self.details)
        return body


@dataclass(frozen=True)
class ExecutionSuccess:
    results: List[Dict[str, Any]]
    row_count: int
    execution_time_ms: float
    fields: List[str]
    validation: ValidationResult
    max_rows: int
    headers: Dict[str, str] = field(default_factory=dict)

    success = True

    @property
    def safety(self) -> Dict[str, Any]:
        return {
            "limitApplied": self.validation.limit_applied,
            "maxRows": self.max_rows,
            "timeoutSeconds": self.validation.recommended_timeout_seconds,
            "complexity": self.validation.complexity,
            "warnings": list(self.validation.warnings),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": self.results,
            "rowCount": self.row_count,
            "executionTime": self.execution_time_ms,
            "fields": self.fields,
            "safety": self.safety,
        }


@dataclass(frozen=True)
class GenerationSuccess:
    sql: str
    validation: ValidationResult
    confidence: float
    attempts: int
    warnings: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)

    success = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sql": self.sql,
            "confidence": self.confidence,
            "attempts": self.attempts,
            "warnings": list(self.warnings),
            "validation": self.validation.to_dict(),
        }


ExecutionOutcome = Union[ExecutionSuccess, PipelineFailure]
GenerationOutcome = Union[GenerationSuccess, PipelineFailure]
