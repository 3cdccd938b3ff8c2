from fastapi import APIRouter

from querysafe.api.v1.routes.connections import router as connections_router
from querysafe.api.v1.routes.knowledge import router as knowledge_router
from querysafe.api.v1.routes.query import router as query_router
from querysafe.api.v1.routes.schema import router as schema_router

api_router = APIRouter()

api_router.include_router(query_router)
api_router.include_router(connections_router)
api_router.include_router(schema_router)
api_router.include_router(knowledge_router)


__all__ = ["api_router"]
