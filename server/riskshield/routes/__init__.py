from .dashboard import router as dashboard_router
from .jobs import router as jobs_router

__all__ = [
    "dashboard_router",
    "jobs_router",
]
