"""Database query functions for Runnermatch.

This module provides async query functions for all database entities:
- Task creation, listing and compare-and-set status updates
- Performer registration, location updates and pool lookup
- Offer recording and compare-and-set resolution
"""

from runnermatch.database.queries.offer import (
    create_offer,
    get_offer,
    get_pending_offer,
    list_offers,
    list_overdue_offers,
    resolve_offer,
)
from runnermatch.database.queries.performer import (
    create_performer,
    get_performer,
    list_available_performers_in_box,
    list_performers,
    set_performer_availability,
    update_performer_location,
)
from runnermatch.database.queries.task import (
    assign_task,
    complete_task,
    create_task,
    get_completed_task_categories,
    get_task,
    list_tasks,
    mark_cancelled,
    mark_unfulfilled,
    transition_task_status,
)

__all__ = [
    # Task queries
    "create_task",
    "get_task",
    "list_tasks",
    "transition_task_status",
    "assign_task",
    "mark_unfulfilled",
    "mark_cancelled",
    "complete_task",
    "get_completed_task_categories",
    # Performer queries
    "create_performer",
    "get_performer",
    "update_performer_location",
    "set_performer_availability",
    "list_available_performers_in_box",
    "list_performers",
    # Offer queries
    "create_offer",
    "get_offer",
    "list_offers",
    "get_pending_offer",
    "resolve_offer",
    "list_overdue_offers",
]
