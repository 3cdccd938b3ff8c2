"""Business glossary and golden queries.

Both give SQL generation user-curated context: glossary terms define what a
business word means (optionally with the SQL that expresses it), and golden
queries are verified question/SQL pairs offered to the model as examples for
similar questions. Records live in the platform microservice next to the
connection records; ``InMemoryKnowledgeStore`` serves development and tests.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, Field

from querysafe.config import settings
from querysafe.exceptions.base import ExternalServiceError, NotFoundError
from querysafe.services.connections.store import PlatformClient

DEFAULT_EXAMPLE_LIMIT = 3

_WORD = re.compile(r"[a-z0-9_]+")

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "by", "do", "does", "each", "for", "from", "how", "in", "is", "list",
        "many", "me", "of", "on", "or", "show", "the", "to", "was", "were", "what", "which", "who", "with",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _words(text: str) -> Set[str]:
    return {word for word in _WORD.findall(text.lower()) if word not in STOP_WORDS}


class GlossaryTerm(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    term: str
    definition: str
    sql_logic: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class GoldenQuery(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    natural_query: str
    sql_query: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class KnowledgeStore(ABC):
    @abstractmethod
    async def list_glossary_terms(self, user_id: str) -> List[GlossaryTerm]:
        pass

    @abstractmethod
    async def find_glossary_terms(self, user_id: str, question: str) -> List[GlossaryTerm]:
        """Terms that appear in ``question``."""

    @abstractmethod
    async def add_glossary_term(
        self, user_id: str, term: str, definition: str, sql_logic: Optional[str] = None
    ) -> GlossaryTerm:
        pass

    @abstractmethod
    async def delete_glossary_term(self, user_id: str, term_id: str) -> None:
        """Remove a term.

        Raises:
            NotFoundError: If the term does not belong to the user

        """

    @abstractmethod
    async def find_golden_queries(
        self, user_id: str, question: str, limit: int = DEFAULT_EXAMPLE_LIMIT
    ) -> List[GoldenQuery]:
        """Verified queries whose questions best match ``question``."""

    @abstractmethod
    async def add_golden_query(
        self, user_id: str, natural_query: str, sql_query: str, metadata: Optional[Dict[str, Any]] = None
    ) -> GoldenQuery:
        pass

    async def close(self) -> None:
        return None


class InMemoryKnowledgeStore(KnowledgeStore):
    """Word-overlap search over process-local records."""

    def __init__(self) -> None:
        self._terms: Dict[str, Dict[str, GlossaryTerm]] = {}
        self._golden: Dict[str, List[GoldenQuery]] = {}
        self._lock = asyncio.Lock()

    async def list_glossary_terms(self, user_id: str) -> List[GlossaryTerm]:
        return sorted(self._terms.get(user_id, {}).values(), key=lambda term: term.term.lower())

    async def find_glossary_terms(self, user_id: str, question: str) -> List[GlossaryTerm]:
        question_words = _WORD.findall(question.lower())
        matches = []
        for term in await self.list_glossary_terms(user_id):
            term_words = _WORD.findall(term.term.lower())
            # Prefix match so "customer" also finds "customers"
            if term_words and all(any(word.startswith(part) for word in question_words) for part in term_words):
                matches.append(term)
        return matches

    async def add_glossary_term(
        self, user_id: str, term: str, definition: str, sql_logic: Optional[str] = None
    ) -> GlossaryTerm:
        async with self._lock:
            record = GlossaryTerm(user_id=user_id, term=term, definition=definition, sql_logic=sql_logic)
            self._terms.setdefault(user_id, {})[record.id] = record
            return record

    async def delete_glossary_term(self, user_id: str, term_id: str) -> None:
        async with self._lock:
            if self._terms.get(user_id, {}).pop(term_id, None) is None:
                raise NotFoundError("Glossary term not found", resource_type="glossary_term", resource_id=term_id)

    async def find_golden_queries(
        self, user_id: str, question: str, limit: int = DEFAULT_EXAMPLE_LIMIT
    ) -> List[GoldenQuery]:
        wanted = _words(question)
        scored = []
        for index, golden in enumerate(self._golden.get(user_id, [])):
            overlap = len(wanted & _words(golden.natural_query))
            if overlap:
                scored.append((-overlap, index, golden))
        scored.sort(key=lambda item: item[:2])
        return [golden for _, _, golden in scored[:limit]]

    async def add_golden_query(
        self, user_id: str, natural_query: str, sql_query: str, metadata: Optional[Dict[str, Any]] = None
    ) -> GoldenQuery:
        async with self._lock:
            record = GoldenQuery(
                user_id=user_id, natural_query=natural_query, sql_query=sql_query, metadata=metadata or {}
            )
            self._golden.setdefault(user_id, []).append(record)
            return record


class PlatformKnowledgeStore(PlatformClient, KnowledgeStore):
    """Glossary and golden queries held by the platform microservice."""

    SERVICE_LABEL = "Knowledge store"

    async def list_glossary_terms(self, user_id: str) -> List[GlossaryTerm]:
        response = await self._request("GET", "/glossary", user_id)
        if response is None:
            return []
        return [GlossaryTerm(**item) for item in response.json().get("terms", [])]

    async def find_glossary_terms(self, user_id: str, question: str) -> List[GlossaryTerm]:
        response = await self._request("GET", "/glossary", user_id, params={"query": question})
        if response is None:
            return []
        return [GlossaryTerm(**item) for item in response.json().get("terms", [])]

    async def add_glossary_term(
        self, user_id: str, term: str, definition: str, sql_logic: Optional[str] = None
    ) -> GlossaryTerm:
        payload = {"term": term, "definition": definition, "sql_logic": sql_logic}
        response = await self._request("POST", "/glossary", user_id, json=payload)
        if response is None:
            raise ExternalServiceError("Knowledge store rejected create", service_name="platform", status_code=404)
        return GlossaryTerm(**response.json()["term"])

    async def delete_glossary_term(self, user_id: str, term_id: str) -> None:
        response = await self._request("DELETE", f"/glossary/{term_id}", user_id)
        if response is None:
            raise NotFoundError("Glossary term not found", resource_type="glossary_term", resource_id=term_id)

    async def find_golden_queries(
        self, user_id: str, question: str, limit: int = DEFAULT_EXAMPLE_LIMIT
    ) -> List[GoldenQuery]:
        response = await self._request(
            "GET", "/golden-queries", user_id, params={"query": question, "limit": limit}
        )
        if response is None:
            return []
        return [GoldenQuery(**{"user_id": user_id, **item}) for item in response.json().get("examples", [])][:limit]

    async def add_golden_query(
        self, user_id: str, natural_query: str, sql_query: str, metadata: Optional[Dict[str, Any]] = None
    ) -> GoldenQuery:
        payload = {"natural_query": natural_query, "sql_query": sql_query, "metadata": metadata or {}}
        response = await self._request("POST", "/golden-queries", user_id, json=payload)
        if response is None:
            raise ExternalServiceError("Knowledge store rejected create", service_name="platform", status_code=404)
        return GoldenQuery(**response.json()["data"])


def create_knowledge_store() -> KnowledgeStore:
    if settings.CONNECTION_STORE_BACKEND == "memory":
        return InMemoryKnowledgeStore()
    return PlatformKnowledgeStore()
