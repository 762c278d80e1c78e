import time
import uuid
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from recurring_billing_svc import config
from recurring_billing_svc.gateways import (
    GATEWAY_SCHEDULED_PAYMENTS,
    SUBSCRIPTION_AMOUNT_CHANGES,
    SUBSCRIPTION_CANCELLATION,
    SUBSCRIPTION_DATE_CHANGES,
    SUBSCRIPTION_REACTIVATION,
    SUBSCRIPTION_SUSPENSION,
    SUBSCRIPTIONS,
    PaymentGateway,
    PaymentResult,
)

# Currencies Stripe expects in whole units rather than cents.
ZERO_DECIMAL_CURRENCIES = frozenset({
    'BIF', 'CLP', 'DJF', 'GNF', 'JPY', 'KMF', 'KRW', 'MGA', 'PYG', 'RWF', 'UGX', 'VND', 'VUV', 'XAF', 'XOF', 'XPF',
})


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal('1')))
    return int((Decimal(amount) * 100).quantize(Decimal('1')))


class StripeIntegration(PaymentGateway):
    """
    Stripe payment gateway. Renewal orders are charged off-session with a
    PaymentIntent against the customer's saved payment method; the renewal
    schedule itself stays with the billing engine, so Stripe never schedules
    payments on its own.
    """

    id = 'stripe'
    title = 'Credit card (Stripe)'
    supported_features = frozenset({
        SUBSCRIPTIONS,
        SUBSCRIPTION_SUSPENSION,
        SUBSCRIPTION_REACTIVATION,
        SUBSCRIPTION_CANCELLATION,
        SUBSCRIPTION_DATE_CHANGES,
        SUBSCRIPTION_AMOUNT_CHANGES,
    })

    def __init__(self, api_key: Optional[str] = None, max_retries: int = 3, retry_delay: float = 1.0) -> None:
        api_key = api_key or config.STRIPE_API_KEY
        if not api_key:
            raise EnvironmentError('Stripe API key (STRIPE_API_KEY) not set in environment variables.')
        stripe.api_key = api_key
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def supports(self, feature: str) -> bool:
        if feature == GATEWAY_SCHEDULED_PAYMENTS:
            return False
        return super().supports(feature)

    def process_payment(self, order) -> PaymentResult:
        """
        Charge an order off-session using the customer and payment method stored in its meta.

        :param order: The order to charge; needs ``stripe_customer_id`` and ``stripe_payment_method_id`` meta.
        :return: PaymentResult; a declined card is a failed result, not an exception.
        :raises Exception: if the charge cannot be attempted after retries.
        """
        customer_id = order.get_meta('stripe_customer_id')
        payment_method_id = order.get_meta('stripe_payment_method_id')
        if not customer_id or not payment_method_id:
            return PaymentResult(False, message='Missing Stripe customer or payment method on order.')

        params = {
            'amount': to_minor_units(order.total, order.currency),
            'currency': order.currency.lower(),
            'customer': customer_id,
            'payment_method': payment_method_id,
            'off_session': True,
            'confirm': True,
            'metadata': {'order_id': str(order.id)},
        }
        # One key per charge attempt, shared by its connection retries.
        idempotency_key = f"order-{order.id}-{uuid.uuid4().hex}"
        try:
            intent = self._with_retries(
                'payment creation',
                lambda: stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params),
            )
        except stripe.CardError as e:
            logging.warning(f"Card declined for order {order.id}: {e}")
            return PaymentResult(False, message=str(e))

        if intent.get('status') == 'succeeded':
            return PaymentResult(True, transaction_id=intent.get('id'))
        return PaymentResult(False, transaction_id=intent.get('id'), message=f"Payment intent status: {intent.get('status')}")

    def _with_retries(self, action: str, call) -> Dict[str, Any]:
        attempt = 0
        while attempt < self.max_retries:
            try:
                return call()
            except (stripe.AuthenticationError, stripe.APIConnectionError) as e:
                logging.error(f"Error during {action} (attempt {attempt + 1}): {e}", exc_info=True)
                attempt += 1
                time.sleep(self.retry_delay)
            except stripe.CardError:
                raise
            except Exception as e:
                logging.error(f"General error during {action}: {e}", exc_info=True)
                raise e
        raise Exception(f'Failed {action} after retries.')

    def process_webhook_event(self, payload: str, sig_header: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Process and validate a webhook event from Stripe.

        :param payload: The raw payload from the webhook.
        :param sig_header: The Stripe-Signature header from the webhook.
        :param endpoint_secret: The webhook endpoint secret used for signature verification.
        :return: The reconstructed event from Stripe as a dictionary.
        :raises Exception: if signature verification or event processing fails.
        """
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
            return event
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}', exc_info=True)
            raise Exception('Invalid signature.')
        except Exception as e:
            logging.error(f'General error processing webhook event: {e}', exc_info=True)
            raise e
