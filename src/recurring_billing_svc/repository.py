import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from recurring_billing_svc.exceptions import PersistenceError
from recurring_billing_svc.models.order import ORDER_TYPE, SUBSCRIPTION_TYPE, Order, OrderMeta
from recurring_billing_svc.models.subscription import RELATION_TYPES, SubscriptionRecord

DEFAULT_LAST_ORDER_TYPES = ('parent', 'renewal')


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except Exception as commit_error:
        db.rollback()
        logging.error(f"Failed to save {what}: {commit_error}", exc_info=True)
        raise PersistenceError(f"Failed to save {what}: {commit_error}") from commit_error


class OrderRepository:
    """Access to generic orders and the orders related to a subscription."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_order(self, order_id: Optional[int]) -> Optional[Order]:
        if not order_id:
            return None
        return self.db.query(Order).filter(Order.id == order_id).first()

    def save(self, order: Order) -> Order:
        self.db.add(order)
        _commit(self.db, f"order {order.id or '(new)'}")
        return order

    def get_related_order_ids(self, record: SubscriptionRecord, order_type: str = 'any') -> List[int]:
        """
        Ids of orders related to ``record``, newest first.

        Relations are back-references stored on the related order
        (``subscription_renewal`` etc.) and cached on the record after the first lookup.
        """
        ids = []
        if order_type in ('any', 'parent') and record.parent_order_id:
            ids.append(record.parent_order_id)
        if order_type != 'parent':
            relation_types = RELATION_TYPES if order_type == 'any' else (order_type,)
            for relation_type in relation_types:
                if relation_type not in record.related_order_ids:
                    record.related_order_ids[relation_type] = self._query_related_ids(record, relation_type)
                ids.extend(record.related_order_ids[relation_type])
        return sorted(set(ids), reverse=True)

    def _query_related_ids(self, record: SubscriptionRecord, relation_type: str) -> List[int]:
        if record.id is None:
            return []
        rows = (
            self.db.query(OrderMeta.order_id)
            .filter(OrderMeta.meta_key == f"subscription_{relation_type}", OrderMeta.meta_value == str(record.id))
            .all()
        )
        return sorted({row.order_id for row in rows})

    def get_related_orders(self, record: SubscriptionRecord, order_types: Iterable[str] = DEFAULT_LAST_ORDER_TYPES) -> List[Order]:
        ids = set()
        for order_type in order_types:
            ids.update(self.get_related_order_ids(record, order_type))
        if not ids:
            return []
        return self.db.query(Order).filter(Order.id.in_(ids)).order_by(Order.id.desc()).all()

    def get_last_order(self, record: SubscriptionRecord, order_types: Iterable[str] = DEFAULT_LAST_ORDER_TYPES) -> Optional[Order]:
        ids = set()
        for order_type in order_types:
            ids.update(self.get_related_order_ids(record, order_type))
        if not ids:
            return None
        return self.get_order(max(ids))

    def count_completed_payments(self, record: SubscriptionRecord, order_types: Iterable[str] = DEFAULT_LAST_ORDER_TYPES) -> int:
        return sum(1 for order in self.get_related_orders(record, order_types) if order.date_paid is not None)

    def add_related_order(self, record: SubscriptionRecord, relation_type: str, order_id: int) -> None:
        cached = record.related_order_ids.get(relation_type)
        if cached is not None and order_id not in cached:
            cached.append(order_id)


class SubscriptionRepository:
    """Loads and saves subscriptions in the generic orders table."""

    def __init__(self, db: Session, orders: Optional[OrderRepository] = None) -> None:
        self.db = db
        self.orders = orders or OrderRepository(db)

    def get(self, subscription_id: Optional[int]) -> Optional[SubscriptionRecord]:
        if not subscription_id:
            return None
        order = (
            self.db.query(Order)
            .filter(Order.id == subscription_id, Order.type == SUBSCRIPTION_TYPE)
            .first()
        )
        if order is None:
            return None
        record = SubscriptionRecord.from_order(order)
        record.completed_payment_count = self.orders.count_completed_payments(record)
        return record

    def save(self, record: SubscriptionRecord) -> SubscriptionRecord:
        self.db.add(record.write_to_order())
        _commit(self.db, f"subscription {record.id or '(new)'}")
        return record

    def get_by_parent_order(self, order_id: int) -> List[SubscriptionRecord]:
        orders = (
            self.db.query(Order)
            .filter(Order.parent_order_id == order_id, Order.type == SUBSCRIPTION_TYPE)
            .order_by(Order.id)
            .all()
        )
        return [self.get(order.id) for order in orders]

    def get_for_order(self, order: Order) -> Optional[SubscriptionRecord]:
        """The subscription a renewal, resubscribe or parent order belongs to."""
        if order.is_type(SUBSCRIPTION_TYPE):
            return self.get(order.id)
        for key in [f"subscription_{relation_type}" for relation_type in RELATION_TYPES] + ['subscription_id']:
            subscription_id = order.get_meta(key)
            if subscription_id and subscription_id.isdigit():
                return self.get(int(subscription_id))
        if order.is_type(ORDER_TYPE):
            parents = self.get_by_parent_order(order.id)
            if parents:
                return parents[0]
        return None

    def find_by_status(self, status: str) -> List[SubscriptionRecord]:
        orders = (
            self.db.query(Order.id)
            .filter(Order.type == SUBSCRIPTION_TYPE, Order.status == status)
            .order_by(Order.id)
            .all()
        )
        return [self.get(row.id) for row in orders]
