import datetime
import logging

import pytest

from conftest import ALL_FEATURES, NOW, FakeGateway
from recurring_billing_svc.events import ManualRenewalOrderGenerated, ScheduledPaymentDue, TrialEnded
from recurring_billing_svc.exceptions import InvalidArgument, OrderCreationError, RenewalOrderCreationError
from recurring_billing_svc.gateways import GATEWAY_SCHEDULED_PAYMENTS, GatewayRegistry
from recurring_billing_svc.container import build_container
from recurring_billing_svc.scheduler import (
    SCHEDULE_END_OF_PREPAID_TERM,
    SCHEDULE_EXPIRATION,
    SCHEDULE_PAYMENT_RETRY,
    SCHEDULE_TRIAL_END,
    SCHEDULED_PAYMENT,
)

DAY = datetime.timedelta(days=1)
UTC = datetime.timezone.utc


def ts(value):
    return int(value.timestamp())


def collect(bus, *event_types):
    seen = []
    for event_type in event_types:
        bus.subscribe(event_type, seen.append)
    return seen


# Reconciling dates

def test_hook_for_date_types(make_subscription, container):
    scheduler = container.scheduler
    active = make_subscription(status='active')
    pending_cancel = make_subscription(status='pending_cancel')
    on_hold = make_subscription(status='on_hold')

    assert scheduler.hook_for(active, 'next_payment_date') == SCHEDULED_PAYMENT
    assert scheduler.hook_for(active, 'payment_retry_date') == SCHEDULE_PAYMENT_RETRY
    assert scheduler.hook_for(active, 'trial_end_date') == SCHEDULE_TRIAL_END
    assert scheduler.hook_for(active, 'end_date') == SCHEDULE_EXPIRATION
    assert scheduler.hook_for(pending_cancel, 'end_date') == SCHEDULE_END_OF_PREPAID_TERM
    assert scheduler.hook_for(on_hold, 'end_date') is None
    assert scheduler.hook_for(active, 'start_date') is None
    assert scheduler.hook_for(active, 'cancelled_date') is None


def test_date_change_schedules_one_task(make_subscription, container, queue):
    record = make_subscription(status='active', next_payment_date=NOW + 5 * DAY)

    container.scheduler.on_date_changed(record, 'next_payment_date', record.next_payment_date)
    assert queue.mutations == [('schedule', SCHEDULED_PAYMENT, ts(NOW + 5 * DAY))]

    container.scheduler.on_date_changed(record, 'next_payment_date', record.next_payment_date)
    assert len(queue.mutations) == 1
    assert len(queue.search(SCHEDULED_PAYMENT, {'subscription_id': record.id}, 'pending')) == 1


def test_moving_a_date_replaces_the_task(make_subscription, container, queue):
    record = make_subscription(status='active', next_payment_date=NOW + 5 * DAY)
    container.scheduler.on_date_changed(record, 'next_payment_date', record.next_payment_date)

    container.scheduler.on_date_changed(record, 'next_payment_date', NOW + 6 * DAY)

    assert queue.mutations[1:] == [('cancel', SCHEDULED_PAYMENT), ('schedule', SCHEDULED_PAYMENT, ts(NOW + 6 * DAY))]
    assert queue.scheduled(SCHEDULED_PAYMENT, record.id) == ts(NOW + 6 * DAY)


def test_past_or_deleted_dates_only_cancel(make_subscription, container, queue):
    record = make_subscription(status='active', next_payment_date=NOW + 5 * DAY)
    container.scheduler.on_date_changed(record, 'next_payment_date', record.next_payment_date)

    container.scheduler.on_date_changed(record, 'next_payment_date', NOW - DAY)
    assert queue.scheduled(SCHEDULED_PAYMENT, record.id) is None

    container.scheduler.on_date_changed(record, 'next_payment_date', None)
    assert queue.mutations == [('schedule', SCHEDULED_PAYMENT, ts(NOW + 5 * DAY)), ('cancel', SCHEDULED_PAYMENT)]


def test_inactive_subscriptions_only_schedule_retries(make_subscription, container, queue):
    record = make_subscription(status='on_hold')

    container.scheduler.on_date_changed(record, 'next_payment_date', NOW + DAY)
    container.scheduler.on_date_changed(record, 'trial_end_date', NOW + DAY)
    assert queue.mutations == []

    container.scheduler.on_date_changed(record, 'payment_retry_date', NOW + DAY)
    assert queue.scheduled(SCHEDULE_PAYMENT_RETRY, record.id) == ts(NOW + DAY)


def test_end_date_hook_depends_on_status(make_subscription, container, queue):
    active = make_subscription(status='active')
    pending_cancel = make_subscription(status='pending_cancel')

    container.scheduler.on_date_changed(active, 'end_date', NOW + 30 * DAY)
    container.scheduler.on_date_changed(pending_cancel, 'end_date', NOW + 3 * DAY)

    assert queue.scheduled(SCHEDULE_EXPIRATION, active.id) == ts(NOW + 30 * DAY)
    assert queue.scheduled(SCHEDULE_END_OF_PREPAID_TERM, pending_cancel.id) == ts(NOW + 3 * DAY)
    assert queue.scheduled(SCHEDULE_EXPIRATION, pending_cancel.id) is None


def test_date_events_reach_the_scheduler_after_save(make_subscription, container, queue):
    record = make_subscription(status='active')
    record.set_date('trial_end_date', NOW + 7 * DAY)
    record.set_date('end_date', NOW + 60 * DAY)

    container.state_machine.save(record)

    assert queue.scheduled(SCHEDULE_TRIAL_END, record.id) == ts(NOW + 7 * DAY)
    assert queue.scheduled(SCHEDULE_EXPIRATION, record.id) == ts(NOW + 60 * DAY)


# Reconciling statuses

def test_activation_schedules_every_tracked_date_once(make_subscription, container, queue):
    record = make_subscription(
        status='active',
        trial_end_date=NOW + 7 * DAY,
        next_payment_date=NOW + 7 * DAY,
        end_date=NOW + 90 * DAY,
    )

    container.scheduler.on_status_changed(record, 'active', 'pending')
    scheduled = sorted(hook for kind, hook, *_ in queue.mutations if kind == 'schedule')
    assert scheduled == sorted([SCHEDULE_TRIAL_END, SCHEDULED_PAYMENT, SCHEDULE_EXPIRATION])

    before = list(queue.mutations)
    container.scheduler.on_status_changed(record, 'active', 'pending')
    assert queue.mutations == before


def test_activation_cancels_end_of_prepaid_term(make_subscription, container, queue):
    record = make_subscription(status='active', next_payment_date=NOW + 7 * DAY)
    queue.schedule_single(ts(NOW + 7 * DAY), SCHEDULE_END_OF_PREPAID_TERM, {'subscription_id': record.id})

    container.scheduler.on_status_changed(record, 'active', 'pending_cancel')

    assert queue.scheduled(SCHEDULE_END_OF_PREPAID_TERM, record.id) is None
    assert queue.scheduled(SCHEDULED_PAYMENT, record.id) == ts(NOW + 7 * DAY)


@pytest.mark.parametrize("status", ['on_hold', 'cancelled', 'switched', 'expired', 'trash'])
def test_inactive_statuses_clear_the_queue(make_subscription, container, queue, status):
    record = make_subscription(status='active', trial_end_date=NOW + DAY, next_payment_date=NOW + DAY, end_date=NOW + 9 * DAY)
    container.scheduler.on_status_changed(record, 'active')
    record.order.status = status

    container.scheduler.on_status_changed(record, status, 'active')

    assert queue.search(args={'subscription_id': record.id}, status='pending') == []
    before = list(queue.mutations)
    container.scheduler.on_status_changed(record, status, 'active')
    assert queue.mutations == before


def test_pending_cancel_keeps_only_the_end_of_prepaid_term(make_subscription, container, queue):
    record = make_subscription(status='active', next_payment_date=NOW + 4 * DAY, end_date=NOW + 40 * DAY)
    container.scheduler.on_status_changed(record, 'active')
    record.order.status = 'pending_cancel'
    record.set_date('end_date', NOW + 4 * DAY)

    container.scheduler.on_status_changed(record, 'pending_cancel', 'active')

    pending = queue.search(args={'subscription_id': record.id}, status='pending')
    assert [(task.hook, task.scheduled_at) for task in pending] == [(SCHEDULE_END_OF_PREPAID_TERM, ts(NOW + 4 * DAY))]


def test_one_failing_hook_does_not_stop_the_others(make_subscription, container, queue, monkeypatch, caplog):
    record = make_subscription(status='active', trial_end_date=NOW + DAY, next_payment_date=NOW + DAY)
    schedule_single = queue.schedule_single

    def flaky_schedule(timestamp, hook, args):
        if hook == SCHEDULED_PAYMENT:
            raise RuntimeError('queue unavailable')
        return schedule_single(timestamp, hook, args)

    monkeypatch.setattr(queue, 'schedule_single', flaky_schedule)

    with caplog.at_level(logging.ERROR):
        container.scheduler.on_status_changed(record, 'active')

    assert queue.scheduled(SCHEDULE_TRIAL_END, record.id) == ts(NOW + DAY)
    assert queue.scheduled(SCHEDULED_PAYMENT, record.id) is None
    assert f"Failed to reconcile {SCHEDULED_PAYMENT} for subscription {record.id}" in caplog.text


# Due tasks

def test_dispatch_rejects_unknown_hooks_and_subscriptions(container):
    with pytest.raises(InvalidArgument):
        container.scheduler.dispatch('woocommerce_scheduled_subscription_payment', {'subscription_id': 1})

    with pytest.raises(InvalidArgument) as excinfo:
        container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': 999})
    assert excinfo.value.code == 'invalid-subscription-id'

    with pytest.raises(InvalidArgument):
        container.scheduler.dispatch(SCHEDULE_EXPIRATION, {})


def test_scheduled_payment_renews_and_charges(make_subscription, container, gateway, queue):
    record = make_subscription(status='active', start_date=NOW - 31 * DAY, next_payment_date=NOW)

    container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': record.id})

    renewal = container.orders.get_last_order(container.subscriptions.get(record.id), ('renewal',))
    assert renewal is not None
    assert gateway.charged == [renewal.id]
    assert renewal.status == 'completed'
    assert renewal.payment_method == 'fake'
    assert renewal.payment_method_title == 'Fake gateway'

    reloaded = container.subscriptions.get(record.id)
    assert reloaded.status == 'active'
    assert reloaded.next_payment_date == datetime.datetime(2024, 4, 10, 12, tzinfo=UTC)
    assert reloaded.suspension_count == 0
    assert queue.scheduled(SCHEDULED_PAYMENT, record.id) == ts(reloaded.next_payment_date)


def test_declined_scheduled_payment_leaves_subscription_on_hold(db_session, clock, queue, make_subscription):
    declining = FakeGateway(succeed=False)
    container = build_container(db_session, gateways=GatewayRegistry([declining]), queue=queue, clock=clock)
    record = make_subscription(status='active', start_date=NOW - 31 * DAY, next_payment_date=NOW)

    container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': record.id})

    reloaded = container.subscriptions.get(record.id)
    renewal = container.orders.get_last_order(reloaded, ('renewal',))
    assert reloaded.status == 'on_hold'
    assert reloaded.suspension_count == 1
    assert renewal.status == 'failed'


def test_manual_renewal_waits_for_the_customer(make_subscription, container, gateway):
    record = make_subscription(status='active', requires_manual_renewal=True, start_date=NOW - 31 * DAY, next_payment_date=NOW)
    events = collect(container.bus, ManualRenewalOrderGenerated, ScheduledPaymentDue)

    container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': record.id})

    reloaded = container.subscriptions.get(record.id)
    assert reloaded.status == 'on_hold'
    assert gateway.charged == []
    assert [type(event) for event in events] == [ManualRenewalOrderGenerated]
    assert events[0].order.needs_payment()
    assert any(note.content == 'Manual renewal order awaiting customer payment.' for note in events[0].order.notes)


def test_free_renewal_is_marked_paid(make_subscription, container, gateway):
    record = make_subscription(status='active', total='0.00', start_date=NOW - 31 * DAY, next_payment_date=NOW)

    container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': record.id})

    reloaded = container.subscriptions.get(record.id)
    renewal = container.orders.get_last_order(reloaded, ('renewal',))
    assert renewal.date_paid is not None
    assert reloaded.status == 'active'
    assert gateway.charged == []


def test_gateway_scheduled_payments_skip_renewal_creation(db_session, clock, queue, make_subscription):
    scheduling_gateway = FakeGateway(ALL_FEATURES | {GATEWAY_SCHEDULED_PAYMENTS})
    container = build_container(db_session, gateways=GatewayRegistry([scheduling_gateway]), queue=queue, clock=clock)
    record = make_subscription(status='active', start_date=NOW - 31 * DAY, next_payment_date=NOW)

    container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': record.id})

    reloaded = container.subscriptions.get(record.id)
    assert reloaded.status == 'active'
    assert container.orders.get_last_order(reloaded, ('renewal',)) is None
    assert scheduling_gateway.charged == []


def test_renewal_order_failing_twice_raises(make_subscription, container, monkeypatch):
    record = make_subscription(status='active', start_date=NOW - 31 * DAY, next_payment_date=NOW)
    attempts = []

    def failing_renewal(r):
        attempts.append(r.id)
        raise OrderCreationError('disk full')

    monkeypatch.setattr(container.renewals, 'create_renewal_order', failing_renewal)

    with pytest.raises(RenewalOrderCreationError) as excinfo:
        container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': record.id})

    assert attempts == [record.id, record.id]
    assert 'Unable to create renewal order' in str(excinfo.value)


def test_renewal_order_retried_once(make_subscription, container, monkeypatch):
    record = make_subscription(status='active', requires_manual_renewal=True, start_date=NOW - 31 * DAY, next_payment_date=NOW)
    create = container.renewals.create_renewal_order
    attempts = []

    def flaky_renewal(r):
        attempts.append(r.id)
        if len(attempts) == 1:
            raise OrderCreationError('deadlock')
        return create(r)

    monkeypatch.setattr(container.renewals, 'create_renewal_order', flaky_renewal)

    container.scheduler.dispatch(SCHEDULED_PAYMENT, {'subscription_id': record.id})

    assert len(attempts) == 2
    assert container.orders.get_last_order(container.subscriptions.get(record.id), ('renewal',)) is not None


def test_payment_retry_charges_the_failed_order(make_subscription, container, gateway):
    record = make_subscription(status='on_hold', start_date=NOW - 31 * DAY, next_payment_date=NOW - DAY)
    renewal = container.renewals.create_renewal_order(record)
    renewal.set_status('failed')
    container.orders.save(renewal)

    container.scheduler.dispatch(SCHEDULE_PAYMENT_RETRY, {'subscription_id': record.id})

    assert gateway.charged == [renewal.id]
    assert container.subscriptions.get(record.id).status == 'active'


def test_payment_retry_without_unpaid_order_does_nothing(make_subscription, container):
    record = make_subscription(status='on_hold')
    events = collect(container.bus, ScheduledPaymentDue)

    container.scheduler.dispatch(SCHEDULE_PAYMENT_RETRY, {'subscription_id': record.id})

    assert events == []


def test_trial_end_announces_event(make_subscription, container):
    record = make_subscription(status='active', trial=True, trial_days=7, trial_end_date=NOW)
    events = collect(container.bus, TrialEnded)

    container.scheduler.dispatch(SCHEDULE_TRIAL_END, {'subscription_id': record.id})

    assert [event.subscription_id for event in events] == [record.id]


def test_end_of_prepaid_term_cancels(make_subscription, container):
    record = make_subscription(status='pending_cancel', cancelled_date=NOW - 10 * DAY, end_date=NOW)

    container.scheduler.dispatch(SCHEDULE_END_OF_PREPAID_TERM, {'subscription_id': record.id})

    reloaded = container.subscriptions.get(record.id)
    assert reloaded.status == 'cancelled'
    assert reloaded.end_date == NOW
    assert reloaded.cancelled_date == NOW - 10 * DAY


def test_expiration_expires(make_subscription, container, queue):
    record = make_subscription(status='active', start_date=NOW - 90 * DAY, next_payment_date=NOW + DAY, end_date=NOW)

    container.scheduler.dispatch(SCHEDULE_EXPIRATION, {'subscription_id': record.id})

    reloaded = container.subscriptions.get(record.id)
    assert reloaded.status == 'expired'
    assert reloaded.next_payment_date is None
    assert reloaded.end_date == NOW
