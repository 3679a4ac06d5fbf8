"""API route modules for the Runnermatch web application."""

from runnermatch.web.routes.events import create_events_router
from runnermatch.web.routes.health import create_health_router
from runnermatch.web.routes.offers import create_offers_router
from runnermatch.web.routes.tasks import create_tasks_router

__all__ = [
    "create_events_router",
    "create_health_router",
    "create_offers_router",
    "create_tasks_router",
]
