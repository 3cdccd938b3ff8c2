"""Schema route."""

from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends, Query, Response

from querysafe.dependencies.pipeline import SchemaServiceDep
from querysafe.security.auth import get_current_user_id

router = APIRouter(prefix="/v1/schema", tags=["Schema"])


@router.get("", summary="Schema of the active connection")
async def get_schema(
    response: Response,
    user_id: Annotated[str, Depends(get_current_user_id)],
    schema_service: SchemaServiceDep,
    refresh: Annotated[bool, Query(description="Bypass the cache; counts against the schema refresh limit")] = False,
) -> Dict[str, Any]:
    result = await schema_service.get_schema(user_id, force_refresh=refresh)
    rate_limit = result.pop("rateLimit")
    if rate_limit is not None:
        response.headers.update(rate_limit.headers())
    return result
