"""Outbound domain events.

Services queue events on the session while a transaction is open. They are
handed to subscribers only after the transaction commits, and dropped when
it rolls back, so a subscriber never sees an event for state that was not
persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable
import logging

from sqlalchemy.orm import Session


logger = logging.getLogger(__name__)

_PENDING_KEY = "stockledger_pending_events"


@dataclass(frozen=True)
class CriticalStockOpened:
    item_id: int
    quantity: Decimal
    critical_level: Decimal


@dataclass(frozen=True)
class CriticalStockClosed:
    item_id: int
    quantity: Decimal
    critical_level: Decimal


@dataclass(frozen=True)
class MovementPosted:
    movement_id: int
    item_id: int
    item_tier: str
    movement_type: str
    quantity_delta: Decimal
    before_quantity: Decimal
    after_quantity: Decimal
    source: str
    correlation_id: str
    created_at: datetime | None = None
    extra: dict = field(default_factory=dict)


_subscribers: dict[type, list[Callable]] = {}


def subscribe(event_type: type, handler: Callable) -> None:
    _subscribers.setdefault(event_type, []).append(handler)


def clear_subscribers() -> None:
    _subscribers.clear()


def queue_event(db: Session, event) -> None:
    db.info.setdefault(_PENDING_KEY, []).append(event)


def discard_pending(db: Session) -> None:
    db.info.pop(_PENDING_KEY, None)


def dispatch_pending(db: Session) -> list:
    events = db.info.pop(_PENDING_KEY, [])
    for event in events:
        for handler in list(_subscribers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                # Delivery is outside the ledger's transaction; the commit already happened.
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)
    return events
