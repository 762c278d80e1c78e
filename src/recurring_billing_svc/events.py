"""
Typed domain events and a small synchronous event bus.

Collaborators (the scheduler, gateways, notifications) subscribe once at
composition time; nothing is registered globally.
"""
import datetime
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type


@dataclass
class DomainEvent:
    occurred_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc), kw_only=True
    )


@dataclass
class DateUpdated(DomainEvent):
    record: Any
    date_type: str
    value: datetime.datetime


@dataclass
class DateDeleted(DomainEvent):
    record: Any
    date_type: str


@dataclass
class StatusUpdated(DomainEvent):
    record: Any
    new_status: str
    old_status: str


@dataclass
class UnableToUpdateStatus(DomainEvent):
    record: Any
    new_status: str
    old_status: str


@dataclass
class PaymentComplete(DomainEvent):
    record: Any


@dataclass
class PaymentFailed(DomainEvent):
    record: Any
    new_status: str


@dataclass
class RenewalPaymentComplete(DomainEvent):
    record: Any
    order: Any


@dataclass
class ScheduledPaymentDue(DomainEvent):
    order: Any
    payment_method: str
    subscription_id: Optional[int] = None


@dataclass
class TrialEnded(DomainEvent):
    subscription_id: int


@dataclass
class ManualRenewalOrderGenerated(DomainEvent):
    record: Any
    order: Any


Handler = Callable[[DomainEvent], None]


class EventBus:
    """
    Dispatches events to the handlers subscribed for their exact type.

    A failing handler is logged and does not prevent delivery to the rest.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    def publish(self, event: DomainEvent) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception as e:
                logging.error(f"Error handling {type(event).__name__}: {e}", exc_info=True)

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)
