"""ORM Models - SQLAlchemy declarative models for all persisted entities.

Invariants:
    - All models inherit from Base (db/base.py)
    - Event is the parent of ticket types, orders and tickets

Design Decisions:
    - One file per entity for locality
    - All models imported here so SQLAlchemy resolves string-based relationship()
      references before any query runs
"""

from boxoffice.models.event import Event  # noqa: F401
from boxoffice.models.ticket_type import TicketType  # noqa: F401
from boxoffice.models.order import Order  # noqa: F401
from boxoffice.models.ticket import Ticket  # noqa: F401
from boxoffice.models.webhook_event import WebhookEvent  # noqa: F401
