"""Route modules."""

from .completions import router as completions_router
from .generations import router as generations_router
from .internal import router as internal_router

__all__ = ["completions_router", "generations_router", "internal_router"]
