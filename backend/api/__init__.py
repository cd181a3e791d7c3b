"""
API routers package - exports all FastAPI routers.
"""

from api.chat import router as chat_router
from api.threads import router as threads_router

__all__ = [
    "chat_router",
    "threads_router",
]
