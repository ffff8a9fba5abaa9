from .broadcasts import router as broadcasts_router
from .health import router as health_router

__all__ = [
    "broadcasts_router",
    "health_router",
]
