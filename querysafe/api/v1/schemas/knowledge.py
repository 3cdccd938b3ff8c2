"""Pydantic schemas for the glossary and golden query API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GlossaryTermCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    term: str = Field(..., min_length=1, max_length=200)
    definition: str = Field(..., min_length=1, max_length=2000)
    sql_logic: Optional[str] = Field(default=None, alias="sqlLogic", description="SQL expressing the term")


class GlossaryTermResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    term: str
    definition: str
    sql_logic: Optional[str] = None
    created_at: datetime


class GlossaryListResponse(BaseModel):
    terms: List[GlossaryTermResponse]


class GoldenQueryCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    natural_query: str = Field(..., min_length=1, max_length=10000, alias="naturalQuery")
    sql_query: str = Field(..., min_length=1, alias="sqlQuery")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GoldenQueryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    natural_query: str
    sql_query: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class GoldenQuerySearchResponse(BaseModel):
    examples: List[GoldenQueryResponse]
