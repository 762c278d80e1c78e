import datetime
from decimal import Decimal

from conftest import NOW
from recurring_billing_svc.formatting import date_to_display, human_time_diff, snapshot_to_dict
from recurring_billing_svc.models.order import Order
from recurring_billing_svc.models.subscription import SubscriptionRecord

DAY = datetime.timedelta(days=1)


def snapshot(status='active', **dates):
    order = Order(type='subscription', status=status, payment_method='fake', total=Decimal('10.00'), customer_id=3)
    return SubscriptionRecord(order, payment_duration=2, payment_duration_type='week', **dates).snapshot()


def test_human_time_diff():
    assert human_time_diff(datetime.timedelta(seconds=30)) == '1 min'
    assert human_time_diff(datetime.timedelta(minutes=5)) == '5 mins'
    assert human_time_diff(datetime.timedelta(minutes=90)) == '1 hour'
    assert human_time_diff(-datetime.timedelta(hours=5)) == '5 hours'
    assert human_time_diff(datetime.timedelta(days=3, hours=2)) == '3 days'


def test_near_dates_are_relative():
    view = snapshot(start_date=NOW - datetime.timedelta(hours=2), next_payment_date=NOW + 3 * DAY)

    assert date_to_display(view, 'start_date', now=NOW) == '2 hours ago'
    assert date_to_display(view, 'next_payment_date', now=NOW) == 'In 3 days'


def test_far_dates_use_the_requested_timezone():
    view = snapshot(end_date=NOW + 60 * DAY)

    assert date_to_display(view, 'end_date', now=NOW) == 'May 09, 2024'
    assert date_to_display(view, 'end_date', tz='Pacific/Auckland', now=NOW) == 'May 10, 2024'


def test_empty_dates_have_labels():
    view = snapshot()
    assert date_to_display(view, 'end_date', now=NOW) == 'Not yet ended'
    assert date_to_display(view, 'cancelled_date', now=NOW) == 'Not cancelled'
    assert date_to_display(view, 'trial_end_date', now=NOW) == '-'


def test_next_payment_hidden_unless_active():
    view = snapshot(status='on_hold', next_payment_date=NOW + 3 * DAY)
    assert date_to_display(view, 'next_payment_date', now=NOW) == '-'
    assert snapshot_to_dict(view, now=NOW)['dates']['next_payment_date'] is None


def test_snapshot_to_dict():
    view = snapshot(start_date=NOW - 30 * DAY, next_payment_date=NOW + 3 * DAY)

    data = snapshot_to_dict(view, tz='UTC', now=NOW)

    assert data['status'] == 'active'
    assert data['status_label'] == 'Active'
    assert data['customer_id'] == 3
    assert data['payment_method'] == 'fake'
    assert data['total'] == '10.00'
    assert data['billing_interval'] == 2
    assert data['billing_period'] == 'week'
    assert data['dates']['start_date'] == '2024-02-09T12:00:00+00:00'
    assert data['dates']['end_date'] is None
    assert data['dates_display']['start_date'] == 'February 09, 2024'
    assert data['dates_display']['next_payment_date'] == 'In 3 days'
