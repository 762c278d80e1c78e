"""
Presentation helpers. The only place instants are converted out of UTC.
"""
import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from recurring_billing_svc.dates import utcnow
from recurring_billing_svc.models.subscription import ACTIVE, DATE_TYPES, SubscriptionSnapshot, status_label

DISPLAY_FORMAT = '%B %d, %Y'
NEAR_WINDOW = datetime.timedelta(weeks=1)

EMPTY_DATE_LABELS = {
    'end_date': 'Not yet ended',
    'cancelled_date': 'Not cancelled',
}


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def human_time_diff(delta: datetime.timedelta) -> str:
    seconds = abs(int(delta.total_seconds()))
    if seconds < 3600:
        return _plural(max(1, seconds // 60), 'min')
    if seconds < 86400:
        return _plural(seconds // 3600, 'hour')
    return _plural(seconds // 86400, 'day')


def _visible_date(snapshot: SubscriptionSnapshot, date_type: str) -> Optional[datetime.datetime]:
    if date_type == 'next_payment_date' and snapshot.status != ACTIVE:
        return None
    return getattr(snapshot, date_type)


def date_to_display(
    snapshot: SubscriptionSnapshot,
    date_type: str,
    tz: str = 'UTC',
    now: Optional[datetime.datetime] = None,
) -> str:
    """
    Human readable form of one schedule date.

    Dates within a week of ``now`` are relative ("In 3 days", "2 hours ago");
    others are shown as a calendar date in ``tz``. The next payment is only
    shown while the subscription is active.
    """
    value = _visible_date(snapshot, date_type)
    if value is None:
        return EMPTY_DATE_LABELS.get(date_type, '-')

    now = now or utcnow()
    delta = value - now
    if datetime.timedelta(0) < delta < NEAR_WINDOW:
        return f"In {human_time_diff(delta)}"
    if -NEAR_WINDOW < delta < datetime.timedelta(0):
        return f"{human_time_diff(delta)} ago"
    return value.astimezone(ZoneInfo(tz)).strftime(DISPLAY_FORMAT)


def snapshot_to_dict(snapshot: SubscriptionSnapshot, tz: str = 'UTC', now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    zone = ZoneInfo(tz)
    dates = {}
    for date_type in DATE_TYPES:
        value = _visible_date(snapshot, date_type)
        dates[date_type] = value.astimezone(zone).isoformat() if value is not None else None

    return {
        'id': snapshot.id,
        'status': snapshot.status,
        'status_label': status_label(snapshot.status),
        'customer_id': snapshot.customer_id,
        'parent_order_id': snapshot.parent_order_id,
        'payment_method': snapshot.payment_method_id,
        'requires_manual_renewal': snapshot.requires_manual_renewal,
        'currency': snapshot.currency,
        'total': str(snapshot.total),
        'billing_interval': snapshot.payment_duration,
        'billing_period': snapshot.payment_duration_type,
        'trial': snapshot.trial,
        'trial_days': snapshot.trial_days,
        'suspension_count': snapshot.suspension_count,
        'dates': dates,
        'dates_display': {date_type: date_to_display(snapshot, date_type, tz, now) for date_type in DATE_TYPES},
    }
