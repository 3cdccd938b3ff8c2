from .store import (
    GlossaryTerm,
    GoldenQuery,
    InMemoryKnowledgeStore,
    KnowledgeStore,
    PlatformKnowledgeStore,
    create_knowledge_store,
)

__all__ = [
    "GlossaryTerm",
    "GoldenQuery",
    "InMemoryKnowledgeStore",
    "KnowledgeStore",
    "PlatformKnowledgeStore",
    "create_knowledge_store",
]
