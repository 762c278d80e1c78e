import datetime
import logging
from typing import Callable, Optional

from recurring_billing_svc.date_calculator import DateCalculator
from recurring_billing_svc.dates import utcnow
from recurring_billing_svc.events import (
    EventBus,
    PaymentComplete,
    PaymentFailed,
    RenewalPaymentComplete,
    StatusUpdated,
    UnableToUpdateStatus,
)
from recurring_billing_svc.exceptions import BillingError, InvalidTransition, PersistenceError
from recurring_billing_svc.gateways import (
    GATEWAY_SCHEDULED_PAYMENTS,
    SUBSCRIPTION_CANCELLATION,
    SUBSCRIPTION_DATE_CHANGES,
    SUBSCRIPTION_REACTIVATION,
    SUBSCRIPTION_SUSPENSION,
    GatewayRegistry,
)
from recurring_billing_svc.models.subscription import (
    ACTIVE,
    AUTO_DRAFT,
    CANCELLED,
    DELETED,
    DRAFT,
    ENDED_STATUSES,
    EXPIRED,
    ON_HOLD,
    PENDING,
    PENDING_CANCEL,
    STATUSES,
    SWITCHED,
    TRASH,
    SubscriptionRecord,
    normalize_status,
    status_label,
)
from recurring_billing_svc.policies import EligibilityPolicy

# A payment captured this long after the subscription was created restarts its schedule.
START_DATE_RESET_OFFSET = datetime.timedelta(hours=1)

ALL_ORDER_TYPES = ('parent', 'renewal', 'resubscribe', 'switch')


class StateMachine:
    """
    Validates and applies subscription status transitions.

    Every accepted transition applies its side effects, persists the record
    and then publishes the queued date events followed by ``StatusUpdated``.
    A rejected or failed transition leaves the record as it was and raises.
    """

    def __init__(
        self,
        subscriptions,
        orders,
        gateways: Optional[GatewayRegistry] = None,
        bus: Optional[EventBus] = None,
        calculator: Optional[DateCalculator] = None,
        policy: Optional[EligibilityPolicy] = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.subscriptions = subscriptions
        self.orders = orders
        self.gateways = gateways or GatewayRegistry()
        self.bus = bus or EventBus()
        self.calculator = calculator or DateCalculator(clock=clock)
        self.policy = policy or EligibilityPolicy()
        self.clock = clock

    # Payment method capabilities

    def is_manual(self, record: SubscriptionRecord) -> bool:
        return record.requires_manual_renewal or self.gateways.get(record.payment_method_id) is None

    def payment_method_supports(self, record: SubscriptionRecord, feature: str) -> bool:
        """Manual subscriptions support every feature; otherwise the gateway decides."""
        if self.is_manual(record):
            return True
        return self.gateways.get(record.payment_method_id).supports(feature)

    def needs_payment(self, record: SubscriptionRecord) -> bool:
        """True while the most recent parent or renewal order is still unpaid."""
        last_order = self.orders.get_last_order(record)
        return last_order is not None and last_order.needs_payment()

    # Transitions

    def can_transition(self, record: SubscriptionRecord, new_status: str) -> bool:
        new_status = normalize_status(new_status)

        if new_status == PENDING:
            return record.has_status(AUTO_DRAFT, DRAFT)

        if new_status == ACTIVE:
            if record.has_status(PENDING):
                return True
            if record.has_status(ON_HOLD):
                return self.payment_method_supports(record, SUBSCRIPTION_REACTIVATION)
            if record.has_status(PENDING_CANCEL):
                end = record.end_date
                if end is None or end <= self.clock():
                    return False
                return self.is_manual(record) or (
                    not self.payment_method_supports(record, GATEWAY_SCHEDULED_PAYMENTS)
                    and self.payment_method_supports(record, SUBSCRIPTION_DATE_CHANGES)
                    and self.payment_method_supports(record, SUBSCRIPTION_REACTIVATION)
                )
            return False

        if new_status == ON_HOLD:
            return record.has_status(ACTIVE, PENDING) and self.payment_method_supports(record, SUBSCRIPTION_SUSPENSION)

        if new_status == CANCELLED:
            if record.has_status(PENDING_CANCEL):
                return True
            return not record.has_status(*ENDED_STATUSES) and self.payment_method_supports(record, SUBSCRIPTION_CANCELLATION)

        if new_status == PENDING_CANCEL:
            if record.has_status(ACTIVE):
                return True
            return record.has_status(CANCELLED, ON_HOLD) and not self.needs_payment(record)

        if new_status == EXPIRED:
            return not record.has_status(CANCELLED, TRASH, SWITCHED)

        if new_status == TRASH:
            return record.has_status(*ENDED_STATUSES) or self.can_transition(record, CANCELLED)

        if new_status == DELETED:
            return record.has_status(TRASH)

        return self.policy.allow_transition(record, new_status)

    def update_status(self, record: SubscriptionRecord, new_status: str, note: str = '', manual: bool = False) -> bool:
        """
        Move ``record`` to ``new_status``.

        :param record: The subscription to update.
        :param new_status: Target status; order-level aliases are accepted.
        :param note: Optional note prefixed to the status change note.
        :param manual: Whether the change was requested by a person; a person cannot reactivate a subscription that still needs payment.
        :return: False if the subscription already had the status, True otherwise.
        :raises InvalidTransition: if the transition is not allowed.
        :raises PersistenceError: if the record could not be saved; the record keeps its previous state.
        """
        new_status = normalize_status(new_status)
        old_status = record.status
        if new_status == old_status and old_status in STATUSES:
            return False

        message = None
        if not self.can_transition(record, new_status):
            message = f'Unable to change subscription status to "{status_label(new_status)}".'
        elif manual and new_status == ACTIVE and self.needs_payment(record):
            message = 'You can not reactivate that subscription until paying to renew it.'
        if message is not None:
            record.add_note(message)
            self._save_note(record)
            self.bus.publish(UnableToUpdateStatus(record=record, new_status=new_status, old_status=old_status))
            raise InvalidTransition(message, record.id, old_status, new_status)

        snapshot = record.snapshot()
        now = self.clock()
        status_note = None
        try:
            record.order.status = new_status
            self._apply_side_effects(record, new_status, old_status, now)
            status_note = record.add_note(
                f"{note} Status changed from {status_label(old_status)} to {status_label(new_status)}.".strip(),
                added_by_user=manual,
            )
            self.subscriptions.save(record)
        except Exception as e:
            logging.error(f"Failed to change subscription {record.id} status to {new_status}: {e}", exc_info=True)
            record.restore(snapshot)
            if status_note is not None and status_note in record.order.notes:
                record.order.notes.remove(status_note)
            record.add_note(f'Unable to change subscription status to "{status_label(new_status)}". Exception: {e}')
            self._save_note(record)
            self.bus.publish(UnableToUpdateStatus(record=record, new_status=new_status, old_status=old_status))
            if isinstance(e, BillingError):
                raise
            raise PersistenceError(f"Failed to save subscription {record.id}: {e}") from e

        logging.info(f"Subscription {record.id} status changed from {old_status} to {new_status}.")
        self.bus.publish_all(record.pop_events())
        self.bus.publish(StatusUpdated(record=record, new_status=new_status, old_status=old_status))
        return True

    def _apply_side_effects(self, record: SubscriptionRecord, new_status: str, old_status: str, now: datetime.datetime) -> None:
        if new_status == PENDING_CANCEL:
            record.store_cancellation_shadow()
            end = self._end_of_prepaid_term(record, now)
            if end is None or end < now:
                end = now
            self._clear(record, 'trial_end_date')
            self._clear(record, 'next_payment_date')
            record.set_date('cancelled_date', now)
            record.set_date('end_date', end)

        elif new_status == ACTIVE and old_status == PENDING_CANCEL:
            paid_through = record.end_date
            shadow = record.cancellation_shadow()
            self._clear(record, 'cancelled_date')
            record.set_date('end_date', shadow['end_date'])
            record.set_date('trial_end_date', shadow['trial_end_date'])
            record.set_date('next_payment_date', paid_through)

        elif new_status == ACTIVE:
            self._refresh_next_payment(record, now)

        elif new_status == ON_HOLD:
            record.set_suspension_count(record.suspension_count + 1)

        elif new_status in (CANCELLED, SWITCHED, EXPIRED):
            self._clear(record, 'trial_end_date')
            self._clear(record, 'next_payment_date')
            if record.end_date is None or record.end_date > now:
                record.set_date('end_date', now)
            if new_status == CANCELLED and record.cancelled_date is None:
                record.set_date('cancelled_date', record.end_date)

    def _end_of_prepaid_term(self, record: SubscriptionRecord, now: datetime.datetime) -> Optional[datetime.datetime]:
        # An open-ended subscription is paid up to its next scheduled payment.
        if record.end_date is None and record.next_payment_date is not None and record.next_payment_date > now:
            return record.next_payment_date
        return self.calculator.calculate_end_of_prepaid_term_date(record, now)

    def _refresh_next_payment(self, record: SubscriptionRecord, now: datetime.datetime) -> None:
        stored = record.next_payment_date
        if stored is not None and stored >= now + self.calculator.policy.next_payment_threshold:
            return
        calculated = self.calculator.calculate_next_payment_date(record, now)
        if calculated is not None:
            record.set_date('next_payment_date', calculated)
        elif stored is not None and stored < now:
            record.delete_date('next_payment_date')

    @staticmethod
    def _clear(record: SubscriptionRecord, date_type: str) -> None:
        if record.get_date(date_type) is not None:
            record.delete_date(date_type)

    def _save_note(self, record: SubscriptionRecord) -> None:
        if record.id is None:
            return
        try:
            self.orders.save(record.order)
        except PersistenceError as e:
            logging.error(f"Could not record note on subscription {record.id}: {e}", exc_info=True)

    def save(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Persist direct edits to a record and dispatch its queued date events."""
        self.subscriptions.save(record)
        self.bus.publish_all(record.pop_events())
        return record

    def cancel(self, record: SubscriptionRecord, note: str = '') -> None:
        """
        Cancel on behalf of the customer.

        A subscription with a prepaid term left goes to pending cancellation
        first; one already pending cancellation is cancelled for real.
        """
        now = self.clock()
        prepaid_term = self._end_of_prepaid_term(record, now)
        has_prepaid_term = prepaid_term is not None and prepaid_term > now
        if has_prepaid_term and (record.has_status(ACTIVE) or (record.has_status(ON_HOLD) and not self.needs_payment(record))):
            self.update_status(record, PENDING_CANCEL, note)
        elif not self.can_transition(record, CANCELLED):
            if note:
                record.add_note(note)
                self._save_note(record)
        else:
            self.update_status(record, CANCELLED, note)

    # Payment outcomes

    def payment_complete(self, record: SubscriptionRecord, order=None) -> None:
        """
        Record a completed payment for ``order`` (default: the most recent related order).

        Resets the suspension count and reactivates the subscription. A payment
        that lands after the subscription was cancelled reopens its prepaid
        term as pending cancellation instead.
        """
        now = self.clock()
        if order is None:
            order = self.orders.get_last_order(record, ALL_ORDER_TYPES)
            if order is not None and order.needs_payment():
                order.mark_paid(now)
                self.orders.save(order)

        record.set_suspension_count(0)
        paid_at = now
        if order is not None and order.date_paid is not None:
            paid_at = order.date_paid
        record.set_date('last_payment_date', paid_at)
        record.completed_payment_count = self.orders.count_completed_payments(record)
        record.add_note('Payment status marked complete.')

        if record.has_status(CANCELLED) and self.can_transition(record, PENDING_CANCEL):
            self._reopen_prepaid_term(record, now)
        elif record.has_status(ACTIVE):
            self._refresh_next_payment(record, now)
            self.save(record)
        elif record.has_status(*ENDED_STATUSES):
            self.save(record)
        else:
            if record.has_status(PENDING) and record.start_date is not None and now - record.start_date > START_DATE_RESET_OFFSET:
                self._restart_schedule(record, now)
            try:
                self.update_status(record, ACTIVE)
            except InvalidTransition as e:
                logging.warning(f"Payment completed but subscription {record.id} could not be activated: {e}")
                self.save(record)

        self.bus.publish(PaymentComplete(record=record))
        if order is not None and order.meta_exists('subscription_renewal'):
            self.bus.publish(RenewalPaymentComplete(record=record, order=order))

    @staticmethod
    def _restart_schedule(record: SubscriptionRecord, now: datetime.datetime) -> None:
        # Every scheduled date moves by the delay between creation and payment.
        offset = now - record.start_date
        for date_type in ('trial_end_date', 'next_payment_date', 'end_date'):
            value = record.get_date(date_type)
            if value is not None:
                record.set_date(date_type, value + offset)
        record.set_date('start_date', now)

    def _reopen_prepaid_term(self, record: SubscriptionRecord, now: datetime.datetime) -> None:
        cancelled_date = record.cancelled_date
        record.delete_date('cancelled_date')
        record.delete_date('end_date')
        record.set_date('next_payment_date', self.calculator.calculate_next_payment_date(record, now))
        self.update_status(record, PENDING_CANCEL, 'Payment completed on order after subscription was cancelled.')
        if cancelled_date is not None:
            record.set_date('cancelled_date', cancelled_date)
            self.save(record)

    def payment_failed(self, record: SubscriptionRecord, fallback_status: str = ON_HOLD, order=None) -> None:
        """
        Record a failed payment and move the subscription to ``fallback_status``.

        When the eligibility policy reports that too many payments failed the
        subscription is cancelled instead. An ineligible transition is logged
        and otherwise ignored.
        """
        fallback_status = normalize_status(fallback_status)
        if order is None:
            order = self.orders.get_last_order(record, ALL_ORDER_TYPES)
        if order is not None and order.status != 'failed':
            order.set_status('failed')
            self.orders.save(order)

        record.add_note('Payment failed.')
        changed = False
        if fallback_status == CANCELLED or self.policy.max_failed_payments_exceeded(record):
            fallback_status, status_note = CANCELLED, 'Subscription Cancelled: maximum number of failed payments reached.'
        else:
            status_note = ''
        try:
            if self.can_transition(record, fallback_status):
                changed = self.update_status(record, fallback_status, status_note)
            else:
                logging.warning(
                    f"Payment failed for subscription {record.id}; cannot move from {record.status} to {fallback_status}."
                )
        except InvalidTransition as e:
            logging.warning(f"Payment failed for subscription {record.id}; status not changed: {e}")
        if not changed:
            self.save(record)

        self.bus.publish(PaymentFailed(record=record, new_status=fallback_status))
