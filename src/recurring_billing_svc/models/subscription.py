import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from recurring_billing_svc.dates import DateInput, format_utc, normalize_period, parse_utc, to_utc
from recurring_billing_svc.events import DateDeleted, DateUpdated, DomainEvent
from recurring_billing_svc.exceptions import InvalidArgument
from recurring_billing_svc.models.order import SUBSCRIPTION_TYPE, Order

DRAFT = 'draft'
AUTO_DRAFT = 'auto_draft'
PENDING = 'pending'
PENDING_PAYMENT = 'pending_payment'
ACTIVE = 'active'
ON_HOLD = 'on_hold'
PENDING_CANCEL = 'pending_cancel'
CANCELLED = 'cancelled'
EXPIRED = 'expired'
SWITCHED = 'switched'
TRASH = 'trash'
DELETED = 'deleted'

STATUSES = (
    DRAFT, AUTO_DRAFT, PENDING, PENDING_PAYMENT, ACTIVE, ON_HOLD,
    PENDING_CANCEL, CANCELLED, EXPIRED, SWITCHED, TRASH, DELETED,
)

STATUS_LABELS = {
    DRAFT: 'Draft',
    AUTO_DRAFT: 'Draft',
    PENDING: 'Pending',
    PENDING_PAYMENT: 'Pending payment',
    ACTIVE: 'Active',
    ON_HOLD: 'On hold',
    PENDING_CANCEL: 'Pending Cancellation',
    CANCELLED: 'Cancelled',
    EXPIRED: 'Expired',
    SWITCHED: 'Switched',
    TRASH: 'Trash',
    DELETED: 'Deleted',
}

ENDED_STATUSES = (CANCELLED, TRASH, EXPIRED, SWITCHED, PENDING_CANCEL, DELETED)

# Order-level names some callers (gateways, webhooks) use for subscription statuses.
STATUS_ALIASES = {
    PENDING_PAYMENT: PENDING,
    'completed': ACTIVE,
    'failed': ON_HOLD,
    'auto-draft': AUTO_DRAFT,
    'pending-cancel': PENDING_CANCEL,
    'on-hold': ON_HOLD,
}

DATE_TYPES = (
    'start_date',
    'trial_end_date',
    'next_payment_date',
    'last_payment_date',
    'cancelled_date',
    'end_date',
    'payment_retry_date',
)

RELATION_TYPES = ('renewal', 'resubscribe', 'switch')

END_DATE_SHADOW_KEY = 'end_date_pre_cancellation'
TRIAL_END_SHADOW_KEY = 'trial_end_pre_cancellation'

SCALAR_META_KEYS = (
    'trial',
    'trial_days',
    'payment_duration',
    'payment_duration_type',
    'requires_manual_renewal',
    'suspension_count',
)

INTERNAL_META_KEYS = frozenset(DATE_TYPES + SCALAR_META_KEYS + (END_DATE_SHADOW_KEY, TRIAL_END_SHADOW_KEY))


def normalize_status(status: str) -> str:
    return STATUS_ALIASES.get(status, status)


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def _to_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _to_uint(value, default: int = 0) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Read-only view of a subscription at one point in time."""
    id: Optional[int]
    customer_id: Optional[int]
    parent_order_id: Optional[int]
    payment_method_id: Optional[str]
    status: str
    currency: str
    total: Decimal
    start_date: Optional[datetime.datetime]
    trial_end_date: Optional[datetime.datetime]
    next_payment_date: Optional[datetime.datetime]
    last_payment_date: Optional[datetime.datetime]
    cancelled_date: Optional[datetime.datetime]
    end_date: Optional[datetime.datetime]
    payment_retry_date: Optional[datetime.datetime]
    trial: bool
    trial_days: int
    payment_duration: int
    payment_duration_type: str
    requires_manual_renewal: bool
    suspension_count: int


class SubscriptionRecord:
    """
    A subscription: a generic order row plus typed schedule fields.

    All mutation goes through explicit setters operating on raw UTC values.
    Date changes queue ``DateUpdated``/``DateDeleted`` events that are
    dispatched only after the record has been persisted.
    """

    def __init__(
        self,
        order: Optional[Order] = None,
        *,
        trial: bool = False,
        trial_days: int = 0,
        payment_duration: int = 1,
        payment_duration_type: str = 'month',
        requires_manual_renewal: bool = False,
        suspension_count: int = 0,
        completed_payment_count: int = 0,
        **dates: DateInput,
    ) -> None:
        self.order = order if order is not None else Order(type=SUBSCRIPTION_TYPE, status=PENDING)
        self._dates: Dict[str, Optional[datetime.datetime]] = {date_type: None for date_type in DATE_TYPES}
        for date_type, value in dates.items():
            self._check_date_type(date_type)
            self._dates[date_type] = to_utc(value)
        self.trial = bool(trial)
        self.trial_days = _to_uint(trial_days)
        self.payment_duration = max(1, _to_uint(payment_duration, 1))
        self.payment_duration_type = normalize_period(payment_duration_type)
        self.requires_manual_renewal = bool(requires_manual_renewal)
        self.suspension_count = _to_uint(suspension_count)
        self.completed_payment_count = _to_uint(completed_payment_count)
        self.related_order_ids: Dict[str, List[int]] = {}
        self.pending_events: List[DomainEvent] = []

    # Loading and dumping the persisted layout

    @classmethod
    def from_order(cls, order: Order, completed_payment_count: int = 0) -> 'SubscriptionRecord':
        if not order.is_type(SUBSCRIPTION_TYPE):
            raise InvalidArgument(f"Order {order.id} is not a subscription", 'invalid-subscription-id')
        record = cls(
            order,
            trial=_to_bool(order.get_meta('trial', '')),
            trial_days=_to_uint(order.get_meta('trial_days')),
            payment_duration=_to_uint(order.get_meta('payment_duration'), 1),
            payment_duration_type=order.get_meta('payment_duration_type', 'month'),
            requires_manual_renewal=_to_bool(order.get_meta('requires_manual_renewal', '')),
            suspension_count=_to_uint(order.get_meta('suspension_count')),
            completed_payment_count=completed_payment_count,
        )
        for date_type in DATE_TYPES:
            record._dates[date_type] = parse_utc(order.get_meta(date_type) or '')
        return record

    def write_to_order(self) -> Order:
        """Copy typed fields into the order's meta rows; one row per field."""
        for date_type, value in self._dates.items():
            if value is None:
                self.order.delete_meta(date_type)
            else:
                self.order.update_meta(date_type, format_utc(value))
        self.order.update_meta('trial', 'true' if self.trial else 'false')
        self.order.update_meta('trial_days', self.trial_days)
        self.order.update_meta('payment_duration', self.payment_duration)
        self.order.update_meta('payment_duration_type', self.payment_duration_type)
        self.order.update_meta('requires_manual_renewal', 'true' if self.requires_manual_renewal else 'false')
        self.order.update_meta('suspension_count', self.suspension_count)
        return self.order

    # Order-backed fields

    @property
    def id(self) -> Optional[int]:
        return self.order.id

    @property
    def customer_id(self) -> Optional[int]:
        return self.order.customer_id

    @property
    def parent_order_id(self) -> Optional[int]:
        return self.order.parent_order_id

    @parent_order_id.setter
    def parent_order_id(self, value: Optional[int]) -> None:
        self.order.parent_order_id = value

    @property
    def payment_method_id(self) -> Optional[str]:
        return self.order.payment_method

    @payment_method_id.setter
    def payment_method_id(self, value: Optional[str]) -> None:
        self.order.payment_method = value or None
        if not value:
            self.requires_manual_renewal = True

    @property
    def status(self) -> str:
        return self.order.status

    @property
    def total(self) -> Decimal:
        return Decimal(self.order.total or 0)

    def has_status(self, *statuses: str) -> bool:
        return self.status in statuses

    def add_note(self, content: str, is_customer_note: bool = False, added_by_user: bool = False):
        return self.order.add_note(content, is_customer_note=is_customer_note, added_by_user=added_by_user)

    # Dates

    @staticmethod
    def _check_date_type(date_type: str) -> None:
        if date_type not in DATE_TYPES:
            raise InvalidArgument(f"Unknown subscription date type: {date_type}")

    def get_date(self, date_type: str) -> Optional[datetime.datetime]:
        self._check_date_type(date_type)
        return self._dates[date_type]

    def set_date(self, date_type: str, value: DateInput) -> Optional[datetime.datetime]:
        self._check_date_type(date_type)
        normalized = to_utc(value)
        self._dates[date_type] = normalized
        if normalized is None:
            self.pending_events.append(DateDeleted(record=self, date_type=date_type))
        else:
            self.pending_events.append(DateUpdated(record=self, date_type=date_type, value=normalized))
        return normalized

    def delete_date(self, date_type: str) -> None:
        self.set_date(date_type, None)

    start_date = property(lambda self: self._dates['start_date'])
    trial_end_date = property(lambda self: self._dates['trial_end_date'])
    next_payment_date = property(lambda self: self._dates['next_payment_date'])
    last_payment_date = property(lambda self: self._dates['last_payment_date'])
    cancelled_date = property(lambda self: self._dates['cancelled_date'])
    end_date = property(lambda self: self._dates['end_date'])
    payment_retry_date = property(lambda self: self._dates['payment_retry_date'])

    # Scalars

    def set_suspension_count(self, value: int) -> None:
        self.suspension_count = _to_uint(value)

    def set_payment_duration(self, value: int) -> None:
        self.payment_duration = max(1, _to_uint(value, 1))

    def set_payment_duration_type(self, value: str) -> None:
        self.payment_duration_type = normalize_period(value)

    def set_trial(self, value, trial_days: Optional[int] = None) -> None:
        self.trial = _to_bool(value)
        if trial_days is not None:
            self.trial_days = _to_uint(trial_days)

    def set_requires_manual_renewal(self, value) -> None:
        self.requires_manual_renewal = _to_bool(value)

    # Pre-cancellation shadow

    def store_cancellation_shadow(self) -> None:
        self.order.update_meta(END_DATE_SHADOW_KEY, format_utc(self.end_date))
        self.order.update_meta(TRIAL_END_SHADOW_KEY, format_utc(self.trial_end_date))

    def cancellation_shadow(self) -> Dict[str, Optional[datetime.datetime]]:
        return {
            'end_date': parse_utc(self.order.get_meta(END_DATE_SHADOW_KEY) or ''),
            'trial_end_date': parse_utc(self.order.get_meta(TRIAL_END_SHADOW_KEY) or ''),
        }

    # Snapshots

    def snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            id=self.id,
            customer_id=self.customer_id,
            parent_order_id=self.parent_order_id,
            payment_method_id=self.payment_method_id,
            status=self.status,
            currency=self.order.currency,
            total=self.total,
            trial=self.trial,
            trial_days=self.trial_days,
            payment_duration=self.payment_duration,
            payment_duration_type=self.payment_duration_type,
            requires_manual_renewal=self.requires_manual_renewal,
            suspension_count=self.suspension_count,
            **self._dates,
        )

    def restore(self, snapshot: SubscriptionSnapshot) -> None:
        """Roll in-memory state back to ``snapshot`` and drop queued events."""
        self.order.status = snapshot.status
        for date_type in DATE_TYPES:
            self._dates[date_type] = getattr(snapshot, date_type)
        self.suspension_count = snapshot.suspension_count
        self.pending_events = []

    def pop_events(self) -> List[DomainEvent]:
        events, self.pending_events = self.pending_events, []
        return events

    def __repr__(self) -> str:
        return f"<SubscriptionRecord(id={self.id}, status={self.status})>"
