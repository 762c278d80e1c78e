import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from recurring_billing_svc.models.base import Base

ORDER_TYPE = 'order'
SUBSCRIPTION_TYPE = 'subscription'

ITEM_TYPES = ('line_item', 'fee', 'shipping', 'tax', 'coupon')

# Statuses for which a generic order still expects money.
PAYABLE_STATUSES = ('pending', 'pending_payment', 'failed')

MONEY = Numeric(12, 2)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Order(Base):
    """
    Generic order row. Subscriptions share this table with ``type = 'subscription'``.
    """
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(20), nullable=False, default=ORDER_TYPE, index=True)
    status = Column(String(32), nullable=False, default='pending_payment', index=True)
    parent_order_id = Column(Integer, nullable=True, index=True)
    customer_id = Column(Integer, nullable=True, index=True)

    currency = Column(String(3), nullable=False, default='USD')
    total = Column(MONEY, nullable=False, default=Decimal('0'))
    cart_tax = Column(MONEY, nullable=False, default=Decimal('0'))
    shipping_total = Column(MONEY, nullable=False, default=Decimal('0'))
    shipping_tax = Column(MONEY, nullable=False, default=Decimal('0'))
    discount_total = Column(MONEY, nullable=False, default=Decimal('0'))
    discount_tax = Column(MONEY, nullable=False, default=Decimal('0'))
    prices_include_tax = Column(Boolean, nullable=False, default=False)

    payment_method = Column(String(64), nullable=True)
    payment_method_title = Column(String(128), nullable=True)
    transaction_id = Column(String(128), nullable=True)
    customer_note = Column(Text, nullable=True)
    created_via = Column(String(32), nullable=True)

    billing = Column(JSON, nullable=True)
    shipping = Column(JSON, nullable=True)

    date_created = Column(DateTime(timezone=True), nullable=False, default=_now)
    date_paid = Column(DateTime(timezone=True), nullable=True)
    date_completed = Column(DateTime(timezone=True), nullable=True)

    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan', order_by='OrderItem.id')
    meta = relationship('OrderMeta', back_populates='order', cascade='all, delete-orphan', order_by='OrderMeta.id')
    notes = relationship('OrderNote', back_populates='order', cascade='all, delete-orphan', order_by='OrderNote.id')

    def __init__(self, **kwargs: Any) -> None:
        # Column defaults only apply on flush; transient orders need them too.
        kwargs.setdefault('type', ORDER_TYPE)
        kwargs.setdefault('status', 'pending_payment')
        kwargs.setdefault('currency', 'USD')
        for money_field in ('total', 'cart_tax', 'shipping_total', 'shipping_tax', 'discount_total', 'discount_tax'):
            kwargs.setdefault(money_field, Decimal('0'))
        kwargs.setdefault('prices_include_tax', False)
        kwargs.setdefault('date_created', _now())
        super().__init__(**kwargs)

    def is_type(self, order_type: str) -> bool:
        return self.type == order_type

    # Meta

    def _find_meta(self, key: str) -> Optional['OrderMeta']:
        for row in self.meta:
            if row.meta_key == key:
                return row
        return None

    def meta_exists(self, key: str) -> bool:
        return self._find_meta(key) is not None

    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self._find_meta(key)
        return row.meta_value if row is not None else default

    def add_meta(self, key: str, value: Any) -> None:
        self.meta.append(OrderMeta(meta_key=key, meta_value=None if value is None else str(value)))

    def update_meta(self, key: str, value: Any) -> None:
        row = self._find_meta(key)
        if row is None:
            self.add_meta(key, value)
        else:
            row.meta_value = None if value is None else str(value)

    def delete_meta(self, key: str) -> None:
        for row in [row for row in self.meta if row.meta_key == key]:
            self.meta.remove(row)

    # Items, notes, status

    def add_item(self, item: 'OrderItem') -> None:
        if item.item_type not in ITEM_TYPES:
            raise ValueError(f"Unknown order item type: {item.item_type}")
        self.items.append(item)

    def get_items(self, item_types=ITEM_TYPES) -> list:
        return [item for item in self.items if item.item_type in item_types]

    def add_note(self, content: str, is_customer_note: bool = False, added_by_user: bool = False) -> 'OrderNote':
        note = OrderNote(content=content, is_customer_note=is_customer_note, added_by_user=added_by_user)
        self.notes.append(note)
        return note

    def set_status(self, status: str, note: str = '') -> None:
        old_status = self.status
        self.status = status
        if note or old_status != status:
            self.add_note(f"{note} Order status changed from {old_status} to {status}.".strip())

    def needs_payment(self) -> bool:
        return self.status in PAYABLE_STATUSES and Decimal(self.total or 0) > 0

    def mark_paid(self, when: datetime.datetime, transaction_id: Optional[str] = None) -> None:
        if transaction_id:
            self.transaction_id = transaction_id
        self.date_paid = when
        self.set_status('completed', 'Payment received.')
        self.date_completed = when

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, type={self.type}, status={self.status})>"


class OrderMeta(Base):
    __tablename__ = 'order_meta'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    meta_key = Column(String(191), nullable=False, index=True)
    meta_value = Column(Text, nullable=True)

    order = relationship('Order', back_populates='meta')

    def __repr__(self) -> str:
        return f"<OrderMeta(order_id={self.order_id}, key={self.meta_key})>"


class OrderItem(Base):
    __tablename__ = 'order_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    item_type = Column(String(20), nullable=False, default='line_item')
    name = Column(String(255), nullable=False, default='')
    product_id = Column(Integer, nullable=True)
    price_id = Column(Integer, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    subtotal = Column(MONEY, nullable=False, default=Decimal('0'))
    subtotal_tax = Column(MONEY, nullable=False, default=Decimal('0'))
    total = Column(MONEY, nullable=False, default=Decimal('0'))
    total_tax = Column(MONEY, nullable=False, default=Decimal('0'))
    meta = Column(JSON, nullable=True)

    order = relationship('Order', back_populates='items')

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault('item_type', 'line_item')
        kwargs.setdefault('name', '')
        kwargs.setdefault('quantity', 1)
        for money_field in ('subtotal', 'subtotal_tax', 'total', 'total_tax'):
            kwargs.setdefault(money_field, Decimal('0'))
        super().__init__(**kwargs)

    def clone(self) -> 'OrderItem':
        return OrderItem(
            item_type=self.item_type,
            name=self.name,
            product_id=self.product_id,
            price_id=self.price_id,
            quantity=self.quantity,
            subtotal=self.subtotal,
            subtotal_tax=self.subtotal_tax,
            total=self.total,
            total_tax=self.total_tax,
            meta=dict(self.meta) if self.meta else None,
        )

    def __repr__(self) -> str:
        return f"<OrderItem(id={self.id}, type={self.item_type}, name={self.name})>"


class OrderNote(Base):
    __tablename__ = 'order_notes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    content = Column(Text, nullable=False)
    is_customer_note = Column(Boolean, nullable=False, default=False)
    added_by_user = Column(Boolean, nullable=False, default=False)
    date_created = Column(DateTime(timezone=True), nullable=False, default=_now)

    order = relationship('Order', back_populates='notes')

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault('is_customer_note', False)
        kwargs.setdefault('added_by_user', False)
        kwargs.setdefault('date_created', _now())
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<OrderNote(order_id={self.order_id}, content={self.content!r})>"
