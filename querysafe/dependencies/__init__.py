from .pipeline import (
    ConnectionServiceDep,
    GenerationServiceDep,
    OrchestratorDep,
    SchemaServiceDep,
    ServiceContainer,
    build_container,
    close_container,
)

__all__ = [
    "ConnectionServiceDep",
    "GenerationServiceDep",
    "OrchestratorDep",
    "SchemaServiceDep",
    "ServiceContainer",
    "build_container",
    "close_container",
]
