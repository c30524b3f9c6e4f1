"""
app/api/routers package marker.
"""

from app.api.routers.dead_letters import router as dead_letters_router
from app.api.routers.stats import router as stats_router

__all__ = [
    "dead_letters_router",
    "stats_router",
]
