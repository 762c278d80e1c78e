import os
os.environ.setdefault('STRIPE_API_KEY', 'sk_test_dummy')
os.environ.setdefault('DATABASE_URL', 'sqlite://')

import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from recurring_billing_svc.app import app
from recurring_billing_svc.container import build_container, get_container
from recurring_billing_svc.gateways import (
    SUBSCRIPTION_AMOUNT_CHANGES,
    SUBSCRIPTION_CANCELLATION,
    SUBSCRIPTION_DATE_CHANGES,
    SUBSCRIPTION_REACTIVATION,
    SUBSCRIPTION_SUSPENSION,
    SUBSCRIPTIONS,
    GatewayRegistry,
    PaymentGateway,
    PaymentResult,
)
from recurring_billing_svc.models.base import Base, get_db
from recurring_billing_svc.models.order import SUBSCRIPTION_TYPE, Order, OrderItem
from recurring_billing_svc.models import scheduled_task  # noqa: F401  registers the table
from recurring_billing_svc.models.subscription import SubscriptionRecord
from recurring_billing_svc.task_queue import InMemoryTaskQueue

UTC = datetime.timezone.utc
NOW = datetime.datetime(2024, 3, 10, 12, 0, 0, tzinfo=UTC)

ALL_FEATURES = frozenset({
    SUBSCRIPTIONS,
    SUBSCRIPTION_SUSPENSION,
    SUBSCRIPTION_REACTIVATION,
    SUBSCRIPTION_CANCELLATION,
    SUBSCRIPTION_DATE_CHANGES,
    SUBSCRIPTION_AMOUNT_CHANGES,
})


class FixedClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime.datetime = NOW):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    id = 'fake'
    title = 'Fake gateway'

    def __init__(self, features=ALL_FEATURES, succeed: bool = True):
        self.supported_features = frozenset(features)
        self.succeed = succeed
        self.charged = []

    def process_payment(self, order) -> PaymentResult:
        self.charged.append(order.id)
        if self.succeed:
            return PaymentResult(True, transaction_id=f"txn_{order.id}")
        return PaymentResult(False, message='Card declined')


class RecordingTaskQueue(InMemoryTaskQueue):
    """In-memory queue that remembers every schedule/cancel call."""

    def __init__(self):
        super().__init__()
        self.mutations = []

    def schedule_single(self, timestamp, hook, args):
        self.mutations.append(('schedule', hook, int(timestamp)))
        return super().schedule_single(timestamp, hook, args)

    def cancel_all(self, hook, args):
        self.mutations.append(('cancel', hook))
        return super().cancel_all(hook, args)

    def scheduled(self, hook, subscription_id):
        return self.get_next(hook, {'subscription_id': subscription_id})


@pytest.fixture
def db_session():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def queue():
    return RecordingTaskQueue()


@pytest.fixture
def container(db_session, gateway, queue, clock):
    return build_container(db_session, gateways=GatewayRegistry([gateway]), queue=queue, clock=clock)


@pytest.fixture
def make_subscription(container):
    """Factory persisting a subscription with the given status, dates and payment method."""

    def _make(
        status: str = 'active',
        payment_method: str = 'fake',
        total: str = '10.00',
        requires_manual_renewal: bool = False,
        payment_duration: int = 1,
        payment_duration_type: str = 'month',
        trial: bool = False,
        trial_days: int = 0,
        meta=None,
        **dates,
    ) -> SubscriptionRecord:
        order = Order(
            type=SUBSCRIPTION_TYPE,
            status=status,
            customer_id=7,
            total=Decimal(total),
            payment_method=payment_method,
            billing={'email': 'customer@example.com'},
        )
        order.add_item(OrderItem(item_type='line_item', name='Plant box', product_id=1, total=Decimal(total)))
        for key, value in (meta or {}).items():
            order.add_meta(key, value)
        record = SubscriptionRecord(
            order,
            trial=trial,
            trial_days=trial_days,
            payment_duration=payment_duration,
            payment_duration_type=payment_duration_type,
            requires_manual_renewal=requires_manual_renewal,
            **dates,
        )
        container.subscriptions.save(record)
        return container.subscriptions.get(record.id)

    return _make


@pytest.fixture
def client(db_session, container):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
