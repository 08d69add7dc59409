"""HTTP routers exposed by the service."""

from .documents import router as documents_router
from .query import router as query_router

__all__ = ["documents_router", "query_router"]
