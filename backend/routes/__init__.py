"""FastAPI routers.

Endpoints split out of app.py.
"""

from .health import router as health_router
from .signaling import router as signaling_router

__all__ = [
    "health_router",
    "signaling_router",
]
