import datetime
import logging
from typing import Any, Callable, Dict, Optional

from recurring_billing_svc.dates import to_timestamp
from recurring_billing_svc.events import (
    DateDeleted,
    DateUpdated,
    EventBus,
    ManualRenewalOrderGenerated,
    ScheduledPaymentDue,
    StatusUpdated,
    TrialEnded,
)
from recurring_billing_svc.exceptions import InvalidArgument, InvalidTransition, OrderCreationError, RenewalOrderCreationError
from recurring_billing_svc.gateways import GATEWAY_SCHEDULED_PAYMENTS
from recurring_billing_svc.models.subscription import (
    ACTIVE,
    CANCELLED,
    ENDED_STATUSES,
    EXPIRED,
    ON_HOLD,
    PENDING_CANCEL,
    SWITCHED,
    TRASH,
    SubscriptionRecord,
)

SCHEDULED_PAYMENT = 'scheduled_payment'
SCHEDULE_PAYMENT_RETRY = 'schedule_payment_retry'
SCHEDULE_TRIAL_END = 'schedule_trial_end'
SCHEDULE_END_OF_PREPAID_TERM = 'schedule_end_of_prepaid_term'
SCHEDULE_EXPIRATION = 'schedule_expiration'

HOOKS = (SCHEDULED_PAYMENT, SCHEDULE_PAYMENT_RETRY, SCHEDULE_TRIAL_END, SCHEDULE_END_OF_PREPAID_TERM, SCHEDULE_EXPIRATION)

TRACKED_DATE_TYPES = ('trial_end_date', 'next_payment_date', 'end_date', 'payment_retry_date')

RENEWAL_DUE_NOTE = 'Subscription renewal payment due:'


class Scheduler:
    """
    Keeps the task queue in step with subscription dates and statuses, and
    runs the due tasks.

    Reconciliation always reads the record's current field values and
    compares them with what the queue already holds, so replaying it is a
    no-op against the queue.
    """

    def __init__(
        self,
        queue,
        subscriptions,
        orders,
        state_machine,
        renewals,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self.queue = queue
        self.subscriptions = subscriptions
        self.orders = orders
        self.state_machine = state_machine
        self.renewals = renewals
        self.bus = bus or state_machine.bus
        self.clock = clock or state_machine.clock

    def register(self, bus: Optional[EventBus] = None) -> None:
        bus = bus or self.bus
        bus.subscribe(DateUpdated, self._on_date_event)
        bus.subscribe(DateDeleted, self._on_date_event)
        bus.subscribe(StatusUpdated, self._on_status_event)

    def _on_date_event(self, event) -> None:
        self.on_date_changed(event.record, event.date_type, event.record.get_date(event.date_type))

    def _on_status_event(self, event: StatusUpdated) -> None:
        self.on_status_changed(event.record, event.record.status, event.old_status)

    # Reconciliation

    @staticmethod
    def hook_for(record: SubscriptionRecord, date_type: str) -> Optional[str]:
        if date_type == 'next_payment_date':
            return SCHEDULED_PAYMENT
        if date_type == 'payment_retry_date':
            return SCHEDULE_PAYMENT_RETRY
        if date_type == 'trial_end_date':
            return SCHEDULE_TRIAL_END
        if date_type == 'end_date':
            if record.has_status(CANCELLED, PENDING_CANCEL):
                return SCHEDULE_END_OF_PREPAID_TERM
            if record.has_status(ACTIVE):
                return SCHEDULE_EXPIRATION
        return None

    @staticmethod
    def action_args(record: SubscriptionRecord) -> Dict[str, Any]:
        return {'subscription_id': record.id}

    def _now_ts(self) -> int:
        return to_timestamp(self.clock())

    def _cancel(self, hook: str, args: Dict[str, Any]) -> None:
        if self.queue.get_next(hook, args) is not None:
            self.queue.cancel_all(hook, args)

    def _reconcile(self, hook: str, args: Dict[str, Any], timestamp: Optional[int], eligible: bool) -> None:
        scheduled = self.queue.get_next(hook, args)
        if scheduled == timestamp:
            return
        if scheduled is not None:
            self.queue.cancel_all(hook, args)
        if timestamp is None or timestamp <= self._now_ts():
            return
        if eligible:
            self.queue.schedule_single(timestamp, hook, args)

    def on_date_changed(self, record: SubscriptionRecord, date_type: str, value: Optional[datetime.datetime] = None) -> None:
        """
        Make the queue hold exactly one task at ``value`` for the hook of ``date_type``.

        A task is only scheduled for a future date while the subscription is
        active, for a payment retry, or for the end date of a subscription
        pending cancellation.
        """
        hook = self.hook_for(record, date_type)
        if hook is None:
            return
        eligible = (
            date_type == 'payment_retry_date'
            or record.has_status(ACTIVE)
            or (record.has_status(PENDING_CANCEL) and date_type == 'end_date')
        )
        self._reconcile(hook, self.action_args(record), to_timestamp(value), eligible)

    def on_status_changed(self, record: SubscriptionRecord, new_status: str, old_status: str = '') -> None:
        args = self.action_args(record)

        if new_status == ACTIVE:
            self._best_effort(record, SCHEDULE_END_OF_PREPAID_TERM, lambda: self._cancel(SCHEDULE_END_OF_PREPAID_TERM, args))
            for date_type in TRACKED_DATE_TYPES:
                if date_type == 'payment_retry_date' and record.payment_retry_date is None:
                    continue
                hook = self.hook_for(record, date_type)
                if hook is None:
                    continue
                self._best_effort(
                    record, hook,
                    lambda hook=hook, date_type=date_type: self._reconcile(
                        hook, args, to_timestamp(record.get_date(date_type)), True
                    ),
                )

        elif new_status == PENDING_CANCEL:
            for hook in (SCHEDULED_PAYMENT, SCHEDULE_PAYMENT_RETRY, SCHEDULE_TRIAL_END, SCHEDULE_EXPIRATION):
                self._best_effort(record, hook, lambda hook=hook: self._cancel(hook, args))
            self._best_effort(
                record, SCHEDULE_END_OF_PREPAID_TERM,
                lambda: self._reconcile(SCHEDULE_END_OF_PREPAID_TERM, args, to_timestamp(record.end_date), True),
            )

        elif new_status in (ON_HOLD, CANCELLED, SWITCHED, EXPIRED, TRASH):
            hooks = [self.hook_for(record, date_type) for date_type in TRACKED_DATE_TYPES]
            hooks += [SCHEDULE_EXPIRATION, SCHEDULE_END_OF_PREPAID_TERM]
            for hook in hooks:
                if hook is not None:
                    self._best_effort(record, hook, lambda hook=hook: self._cancel(hook, args))

    @staticmethod
    def _best_effort(record: SubscriptionRecord, hook: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as e:
            logging.error(f"Failed to reconcile {hook} for subscription {record.id}: {e}", exc_info=True)

    # Due tasks

    def dispatch(self, hook: str, args: Dict[str, Any]) -> None:
        handlers = {
            SCHEDULED_PAYMENT: self.handle_payment,
            SCHEDULE_PAYMENT_RETRY: self.handle_payment_retry,
            SCHEDULE_TRIAL_END: self.handle_trial_end,
            SCHEDULE_END_OF_PREPAID_TERM: self.handle_end_of_prepaid_term,
            SCHEDULE_EXPIRATION: self.handle_expiration,
        }
        if hook not in handlers:
            raise InvalidArgument(f"Unknown scheduled hook: {hook}", 'invalid-hook')
        handlers[hook]((args or {}).get('subscription_id'))

    def _load(self, subscription_id) -> SubscriptionRecord:
        try:
            record_id = int(subscription_id)
        except (TypeError, ValueError):
            record_id = 0
        record = self.subscriptions.get(record_id) if record_id > 0 else None
        if record is None:
            raise InvalidArgument(
                f"Subscription doesn't exist in scheduled action: {subscription_id}", 'invalid-subscription-id'
            )
        return record

    def handle_payment(self, subscription_id) -> None:
        """
        A renewal payment is due.

        Subscriptions the engine bills itself are put on hold and get a renewal
        order; the payment gateway is then asked to charge the latest unpaid
        renewal order.

        :raises RenewalOrderCreationError: if the renewal order cannot be created twice in a row.
        """
        record = self._load(subscription_id)
        state_machine = self.state_machine
        is_manual = state_machine.is_manual(record)

        if record.has_status(ACTIVE) and (
            record.total <= 0
            or is_manual
            or not record.payment_method_id
            or not state_machine.payment_method_supports(record, GATEWAY_SCHEDULED_PAYMENTS)
        ):
            try:
                state_machine.update_status(record, ON_HOLD, RENEWAL_DUE_NOTE)
            except InvalidTransition as e:
                logging.warning(f"Subscription {record.id} could not be put on hold before renewal: {e}")

            renewal_order = self._create_renewal_order(record)

            if renewal_order.total <= 0:
                renewal_order.mark_paid(self.clock())
                renewal_order.add_note('Payment not needed.')
                self.orders.save(renewal_order)
                state_machine.payment_complete(record, renewal_order)
            else:
                if is_manual:
                    renewal_order.add_note('Manual renewal order awaiting customer payment.')
                    self.orders.save(renewal_order)
                    self.bus.publish(ManualRenewalOrderGenerated(record=record, order=renewal_order))
                else:
                    gateway = state_machine.gateways.get(record.payment_method_id)
                    renewal_order.payment_method = record.payment_method_id
                    renewal_order.payment_method_title = gateway.title if gateway is not None else ''
                    self.orders.save(renewal_order)

        if not is_manual and not record.has_status(*ENDED_STATUSES):
            renewal_order = self.orders.get_last_order(record, ('renewal',))
            if renewal_order is not None and renewal_order.payment_method and renewal_order.needs_payment():
                self.bus.publish(ScheduledPaymentDue(
                    order=renewal_order, payment_method=renewal_order.payment_method, subscription_id=record.id
                ))

    def _create_renewal_order(self, record: SubscriptionRecord):
        try:
            return self.renewals.create_renewal_order(record)
        except OrderCreationError as e:
            logging.warning(f"Renewal order creation failed for subscription {record.id}, retrying: {e}")
        try:
            return self.renewals.create_renewal_order(record)
        except OrderCreationError as e:
            logging.error(f"Renewal order creation failed again for subscription {record.id}: {e}", exc_info=True)
            raise RenewalOrderCreationError(
                f'Error: Unable to create renewal order with note "{RENEWAL_DUE_NOTE}"'
            ) from e

    def handle_payment_retry(self, subscription_id) -> None:
        record = self._load(subscription_id)
        last_order = self.orders.get_last_order(record)
        if last_order is None or not last_order.needs_payment():
            return
        last_order.set_status('pending_payment')
        self.orders.save(last_order)
        self.bus.publish(ScheduledPaymentDue(
            order=last_order, payment_method=last_order.payment_method, subscription_id=record.id
        ))

    def handle_trial_end(self, subscription_id) -> None:
        record = self._load(subscription_id)
        self.bus.publish(TrialEnded(subscription_id=record.id))

    def handle_end_of_prepaid_term(self, subscription_id) -> None:
        self.state_machine.update_status(self._load(subscription_id), CANCELLED)

    def handle_expiration(self, subscription_id) -> None:
        self.state_machine.update_status(self._load(subscription_id), EXPIRED)
