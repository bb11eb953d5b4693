"""
API v1 package initialization.
"""

from orderflow.api.v1.orders import router as orders_router
from orderflow.api.v1.progress import router as progress_router

__all__ = ["orders_router", "progress_router"]
