import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional

from recurring_billing_svc.events import EventBus, ScheduledPaymentDue

SUBSCRIPTIONS = 'subscriptions'
SUBSCRIPTION_SUSPENSION = 'subscription_suspension'
SUBSCRIPTION_REACTIVATION = 'subscription_reactivation'
SUBSCRIPTION_CANCELLATION = 'subscription_cancellation'
SUBSCRIPTION_DATE_CHANGES = 'subscription_date_changes'
SUBSCRIPTION_AMOUNT_CHANGES = 'subscription_amount_changes'
GATEWAY_SCHEDULED_PAYMENTS = 'gateway_scheduled_payments'


@dataclass
class PaymentResult:
    success: bool
    transaction_id: Optional[str] = None
    message: str = ''


class PaymentGateway(ABC):
    """
    A payment method able to charge orders.

    ``supported_features`` lists the subscription capabilities the gateway
    offers (suspension, reactivation, cancellation, date changes, ...).
    """

    id: str = ''
    title: str = ''
    supported_features: FrozenSet[str] = frozenset()

    def supports(self, feature: str) -> bool:
        return feature in self.supported_features

    @abstractmethod
    def process_payment(self, order) -> PaymentResult:
        """Charge ``order.total``. Must not raise for a declined payment."""


class GatewayRegistry:

    def __init__(self, gateways: Iterable[PaymentGateway] = ()) -> None:
        self._gateways: Dict[str, PaymentGateway] = {}
        for gateway in gateways:
            self.register(gateway)

    def register(self, gateway: PaymentGateway) -> None:
        self._gateways[gateway.id] = gateway

    def get(self, gateway_id: Optional[str]) -> Optional[PaymentGateway]:
        if not gateway_id:
            return None
        return self._gateways.get(gateway_id)

    def __contains__(self, gateway_id: str) -> bool:
        return gateway_id in self._gateways


class ScheduledPaymentProcessor:
    """
    Charges renewal orders when the scheduler announces a payment is due and
    feeds the outcome back into the state machine.
    """

    def __init__(self, gateways: GatewayRegistry, subscriptions, orders, state_machine) -> None:
        self.gateways = gateways
        self.subscriptions = subscriptions
        self.orders = orders
        self.state_machine = state_machine

    def register(self, bus: EventBus) -> None:
        bus.subscribe(ScheduledPaymentDue, self.on_scheduled_payment)

    def on_scheduled_payment(self, event: ScheduledPaymentDue) -> None:
        order = event.order
        gateway = self.gateways.get(event.payment_method)
        if gateway is None:
            logging.warning(f"No gateway '{event.payment_method}' registered for order {order.id}; payment skipped.")
            return
        if not order.needs_payment():
            logging.info(f"Order {order.id} does not need payment; skipping scheduled charge.")
            return

        record = self.subscriptions.get_for_order(order)
        result = gateway.process_payment(order)

        if result.success:
            order.mark_paid(self.state_machine.clock(), result.transaction_id)
            self.orders.save(order)
            if record is not None:
                self.state_machine.payment_complete(record, order)
            logging.info(f"Scheduled payment for order {order.id} succeeded via {gateway.id}.")
        else:
            order.add_note(f"Payment failed: {result.message}".strip())
            if record is not None:
                self.state_machine.payment_failed(record, order=order)
            else:
                order.set_status('failed')
                self.orders.save(order)
            logging.warning(f"Scheduled payment for order {order.id} failed via {gateway.id}: {result.message}")
