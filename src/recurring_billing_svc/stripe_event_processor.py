import logging
import datetime

from recurring_billing_svc.container import Container


def _order_id(event: dict) -> int:
    intent = event.get('data', {}).get('object', {})
    order_id = (intent.get('metadata') or {}).get('order_id')
    if not order_id or not str(order_id).isdigit():
        error_msg = f"Missing order id in {event.get('type')} event"
        logging.error(error_msg)
        raise ValueError(error_msg)
    return int(order_id)


def process_event(event: dict, container: Container) -> dict:
    """
    Apply a Stripe payment event to the order it was charged for and to that order's subscription.

    :param event: Dictionary representing the Stripe event payload.
    :param container: Engine bound to the request's database session.
    :return: Metadata describing what was updated.
    :raises ValueError: if the event has no type or no order id.
    :raises Exception: on any processing or commit failures.
    """
    try:
        event_type = event.get('type')
        if not event_type:
            error_msg = "Missing 'type' in event payload"
            logging.error(error_msg)
            raise ValueError(error_msg)

        event_id = event.get('id', 'N/A')
        timestamp = event.get('created', datetime.datetime.now(datetime.timezone.utc).timestamp())

        if event_type == 'payment_intent.succeeded':
            order = container.orders.get_order(_order_id(event))
            if order is None:
                logging.info(f"Event {event_id}: order not found during payment_intent.succeeded processing.")
                return {}
            if not order.needs_payment():
                logging.info(f"Event {event_id}: order {order.id} already paid; nothing to do.")
                return {"order_id": order.id, "status": order.status}

            intent_id = event.get('data', {}).get('object', {}).get('id')
            order.mark_paid(container.state_machine.clock(), intent_id)
            container.orders.save(order)
            record = container.subscriptions.get_for_order(order)
            if record is not None:
                container.state_machine.payment_complete(record, order)
            logging.info(f"Event {event_id} at {timestamp}: payment_intent.succeeded processed for order {order.id}.")
            return {
                "order_id": order.id,
                "subscription_id": record.id if record is not None else None,
                "status": record.status if record is not None else order.status,
            }

        if event_type == 'payment_intent.payment_failed':
            order = container.orders.get_order(_order_id(event))
            if order is None:
                logging.info(f"Event {event_id}: order not found during payment_intent.payment_failed processing.")
                return {}
            if order.date_paid is not None:
                logging.info(f"Event {event_id}: order {order.id} was already paid; ignoring failure.")
                return {"order_id": order.id, "status": order.status}

            record = container.subscriptions.get_for_order(order)
            if record is not None:
                container.state_machine.payment_failed(record, order=order)
            else:
                order.set_status('failed')
                container.orders.save(order)
            logging.info(f"Event {event_id} at {timestamp}: payment_intent.payment_failed processed for order {order.id}.")
            return {
                "order_id": order.id,
                "subscription_id": record.id if record is not None else None,
                "status": record.status if record is not None else order.status,
            }

        logging.info(f"Unhandled event type: {event_type} for event {event_id} at {timestamp}. No action taken.")
        return {}

    except Exception as e:
        logging.error(e, exc_info=True)
        raise
