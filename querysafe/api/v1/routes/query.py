"""Query execution and generation routes."""

from typing import Annotated, Union

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from querysafe.api.metrics import api_requests_total
from querysafe.api.v1.schemas.query import (
    ExecuteRequest,
    ExecuteResponse,
    GenerateRequest,
    GenerateResponse,
    PipelineErrorResponse,
)
from querysafe.dependencies.pipeline import GenerationServiceDep, OrchestratorDep
from querysafe.logging import get_logger
from querysafe.security.auth import get_current_user_id
from querysafe.services.sql.results import PipelineFailure

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/query", tags=["Query"])

ERROR_RESPONSES = {
    code: {"model": PipelineErrorResponse}
    for code in (
        status.HTTP_400_BAD_REQUEST,
        status.HTTP_403_FORBIDDEN,
        status.HTTP_408_REQUEST_TIMEOUT,
        status.HTTP_429_TOO_MANY_REQUESTS,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        status.HTTP_503_SERVICE_UNAVAILABLE,
    )
}


def failure_response(failure: PipelineFailure) -> JSONResponse:
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict(), headers=failure.headers or None)


@router.post(
    "/execute",
    response_model=ExecuteResponse,
    responses=ERROR_RESPONSES,
    summary="Execute a SQL statement",
    description="Validate a statement, cap its rows and timeout, and run it against the active connection.",
)
async def execute_query(
    body: ExecuteRequest,
    response: Response,
    user_id: Annotated[str, Depends(get_current_user_id)],
    orchestrator: OrchestratorDep,
) -> Union[ExecuteResponse, JSONResponse]:
    outcome = await orchestrator.execute(user_id, body.sql, nl_query=body.nl_query)

    if isinstance(outcome, PipelineFailure):
        api_requests_total.labels(resource="query", operation="execute", status=outcome.kind.value).inc()
        return failure_response(outcome)

    api_requests_total.labels(resource="query", operation="execute", status="success").inc()
    response.headers.update(outcome.headers)
    return ExecuteResponse.model_validate(outcome.to_dict())


@router.post(
    "/generate",
    response_model=GenerateResponse,
    responses=ERROR_RESPONSES,
    summary="Generate SQL from a question",
    description="Turn a natural-language question into a validated SELECT for the active connection. "
    "The statement is not executed.",
)
async def generate_query(
    request: Request,
    body: GenerateRequest,
    response: Response,
    user_id: Annotated[str, Depends(get_current_user_id)],
    generation: GenerationServiceDep,
) -> Union[GenerateResponse, JSONResponse]:
    outcome = await generation.generate(
        user_id,
        body.query,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )

    if isinstance(outcome, PipelineFailure):
        api_requests_total.labels(resource="query", operation="generate", status=outcome.kind.value).inc()
        return failure_response(outcome)

    api_requests_total.labels(resource="query", operation="generate", status="success").inc()
    response.headers.update(outcome.headers)
    return GenerateResponse.model_validate(outcome.to_dict())
