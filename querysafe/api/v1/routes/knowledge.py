"""Business glossary and golden query routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from querysafe.api.v1.schemas.knowledge import (
    GlossaryListResponse,
    GlossaryTermCreate,
    GlossaryTermResponse,
    GoldenQueryCreate,
    GoldenQueryResponse,
    GoldenQuerySearchResponse,
)
from querysafe.dependencies.pipeline import KnowledgeStoreDep
from querysafe.security.auth import get_current_user_id

router = APIRouter(prefix="/v1", tags=["Knowledge"])

UserId = Annotated[str, Depends(get_current_user_id)]


@router.get("/glossary", response_model=GlossaryListResponse, summary="List or search glossary terms")
async def list_glossary(
    user_id: UserId,
    knowledge: KnowledgeStoreDep,
    query: Annotated[Optional[str], Query(description="Only terms that appear in this text")] = None,
) -> GlossaryListResponse:
    if query:
        terms = await knowledge.find_glossary_terms(user_id, query)
    else:
        terms = await knowledge.list_glossary_terms(user_id)
    return GlossaryListResponse(terms=[GlossaryTermResponse.model_validate(term) for term in terms])


@router.post(
    "/glossary",
    response_model=GlossaryTermResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Define a business term",
)
async def create_glossary_term(
    body: GlossaryTermCreate, user_id: UserId, knowledge: KnowledgeStoreDep
) -> GlossaryTermResponse:
    term = await knowledge.add_glossary_term(user_id, body.term, body.definition, body.sql_logic)
    return GlossaryTermResponse.model_validate(term)


@router.delete("/glossary/{term_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a glossary term")
async def delete_glossary_term(term_id: str, user_id: UserId, knowledge: KnowledgeStoreDep) -> Response:
    await knowledge.delete_glossary_term(user_id, term_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/golden-queries",
    response_model=GoldenQueryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Save a verified question and its SQL",
)
async def create_golden_query(
    body: GoldenQueryCreate, user_id: UserId, knowledge: KnowledgeStoreDep
) -> GoldenQueryResponse:
    golden = await knowledge.add_golden_query(user_id, body.natural_query, body.sql_query, body.metadata)
    return GoldenQueryResponse.model_validate(golden)


@router.get("/golden-queries", response_model=GoldenQuerySearchResponse, summary="Find verified queries for a question")
async def search_golden_queries(
    user_id: UserId,
    knowledge: KnowledgeStoreDep,
    query: Annotated[str, Query(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=10)] = 3,
) -> GoldenQuerySearchResponse:
    examples = await knowledge.find_golden_queries(user_id, query, limit=limit)
    return GoldenQuerySearchResponse(examples=[GoldenQueryResponse.model_validate(golden) for golden in examples])
