import datetime
import logging
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from recurring_billing_svc.date_calculator import DateCalculator
from recurring_billing_svc.dates import add_period, utcnow
from recurring_billing_svc.events import EventBus
from recurring_billing_svc.exceptions import OrderCreationError
from recurring_billing_svc.gateways import SUBSCRIPTIONS, GatewayRegistry
from recurring_billing_svc.models.order import ORDER_TYPE, SUBSCRIPTION_TYPE, Order
from recurring_billing_svc.models.subscription import INTERNAL_META_KEYS, PENDING, SubscriptionRecord

ORDER_KINDS = ('renewal', 'resubscribe', 'parent')

COPIED_FIELDS = (
    'customer_id',
    'customer_note',
    'currency',
    'total',
    'cart_tax',
    'shipping_total',
    'shipping_tax',
    'discount_total',
    'discount_tax',
    'prices_include_tax',
    'payment_method',
    'payment_method_title',
)


class RenewalOrderFactory:
    """
    Builds orders mirroring a subscription (and subscriptions mirroring a checkout order).

    Each build runs in its own short transaction: the order, its meta and its
    items are committed together or not at all.
    """

    def __init__(
        self,
        db: Session,
        orders,
        subscriptions,
        calculator: Optional[DateCalculator] = None,
        gateways: Optional[GatewayRegistry] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.db = db
        self.orders = orders
        self.subscriptions = subscriptions
        self.calculator = calculator or DateCalculator(clock=clock)
        self.gateways = gateways or GatewayRegistry()
        self.bus = bus
        self.clock = clock

    def create_order_from_subscription(self, record: SubscriptionRecord, kind: str, extra_meta: Optional[Dict[str, object]] = None) -> Order:
        """
        Create a ``pending_payment`` order copying the subscription's totals,
        addresses, non-internal meta and items.

        :param record: The subscription to copy.
        :param kind: One of ``renewal``, ``resubscribe`` or ``parent``.
        :param extra_meta: Meta written on the new order in the same transaction.
        :raises OrderCreationError: if the kind is unknown or the order could not be saved.
        """
        if kind not in ORDER_KINDS:
            raise OrderCreationError(f'"{kind}" is not a valid new order type.', 'invalid-subscription-order-type')

        source = record.write_to_order()
        try:
            order = Order(
                type=ORDER_TYPE,
                status='pending_payment',
                created_via='subscription',
                billing=dict(source.billing) if source.billing else None,
                shipping=dict(source.shipping) if source.shipping else None,
                **{name: getattr(source, name) for name in COPIED_FIELDS},
            )
            for row in source.meta:
                if row.meta_key not in INTERNAL_META_KEYS:
                    order.add_meta(row.meta_key, row.meta_value)
            for key, value in (extra_meta or {}).items():
                order.update_meta(key, value)
            for item in source.get_items():
                order.add_item(item.clone())
            self.db.add(order)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logging.error(f"Failed to create {kind} order for subscription {record.id}: {e}", exc_info=True)
            raise OrderCreationError(str(e)) from e

        logging.info(f"Created {kind} order {order.id} for subscription {record.id}.")
        return order

    def create_renewal_order(self, record: SubscriptionRecord) -> Order:
        order = self.create_order_from_subscription(
            record, 'renewal', {'subscription_id': record.id, 'subscription_renewal': record.id}
        )
        self.orders.add_related_order(record, 'renewal', order.id)
        return order

    def create_resubscribe_order(self, record: SubscriptionRecord) -> Order:
        order = self.create_order_from_subscription(
            record, 'resubscribe', {'subscription_id': record.id, 'subscription_resubscribe': record.id}
        )
        self.orders.add_related_order(record, 'resubscribe', order.id)
        return order

    def create_parent_order(self, record: SubscriptionRecord) -> Order:
        order = self.create_order_from_subscription(record, 'parent')
        record.parent_order_id = order.id
        self.subscriptions.save(record)
        return order

    def create_subscription(
        self,
        parent_order: Order,
        payment_duration: int = 1,
        payment_duration_type: str = 'month',
        trial_days: int = 0,
        length: int = 0,
        total: Optional[Decimal] = None,
    ) -> SubscriptionRecord:
        """
        Create a pending subscription for a checkout order and seed its schedule.

        :param parent_order: The order that bought the subscription.
        :param payment_duration: Number of periods between payments.
        :param payment_duration_type: ``day``, ``week``, ``month`` or ``year``.
        :param trial_days: Free trial length; 0 for none.
        :param length: Number of periods before the subscription expires; 0 never expires.
        :param total: Recurring total; defaults to the parent order total.
        :raises OrderCreationError: if the subscription could not be saved.
        """
        now = self.clock()
        subscription_order = Order(
            type=SUBSCRIPTION_TYPE,
            status=PENDING,
            parent_order_id=parent_order.id,
            created_via=parent_order.created_via or 'checkout',
            billing=dict(parent_order.billing) if parent_order.billing else None,
            shipping=dict(parent_order.shipping) if parent_order.shipping else None,
            **{name: getattr(parent_order, name) for name in COPIED_FIELDS},
        )
        if total is not None:
            subscription_order.total = Decimal(total)
        for row in parent_order.meta:
            subscription_order.add_meta(row.meta_key, row.meta_value)
        for item in parent_order.get_items():
            subscription_order.add_item(item.clone())

        record = SubscriptionRecord(
            subscription_order,
            trial=trial_days > 0,
            trial_days=trial_days,
            payment_duration=payment_duration,
            payment_duration_type=payment_duration_type,
        )
        gateway = self.gateways.get(parent_order.payment_method)
        record.set_requires_manual_renewal(
            record.total <= 0 or gateway is None or not gateway.supports(SUBSCRIPTIONS)
        )

        dates = self.calculator.calculate_initial_dates(record, now)
        for date_type, value in dates.items():
            if value is not None:
                record.set_date(date_type, value)
        if length > 0:
            record.set_date('end_date', add_period(dates['trial_end_date'] or dates['start_date'], length, record.payment_duration_type))

        try:
            self.subscriptions.save(record)
        except Exception as e:
            logging.error(f"Failed to create subscription for order {parent_order.id}: {e}", exc_info=True)
            raise OrderCreationError(str(e)) from e

        if self.bus is not None:
            self.bus.publish_all(record.pop_events())
        logging.info(f"Created subscription {record.id} for order {parent_order.id}.")
        return record
