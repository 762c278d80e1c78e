import datetime
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from recurring_billing_svc import config
from recurring_billing_svc.date_calculator import DateCalculator
from recurring_billing_svc.dates import utcnow
from recurring_billing_svc.events import EventBus
from recurring_billing_svc.gateways import GatewayRegistry, ScheduledPaymentProcessor
from recurring_billing_svc.models.base import get_db
from recurring_billing_svc.policies import DateComputationPolicy, EligibilityPolicy
from recurring_billing_svc.renewal import RenewalOrderFactory
from recurring_billing_svc.repository import OrderRepository, SubscriptionRepository
from recurring_billing_svc.scheduler import Scheduler
from recurring_billing_svc.state_machine import StateMachine
from recurring_billing_svc.stripe_integration import StripeIntegration
from recurring_billing_svc.task_queue import DatabaseTaskQueue, TaskQueue


@dataclass
class Container:
    db: Session
    bus: EventBus
    orders: OrderRepository
    subscriptions: SubscriptionRepository
    gateways: GatewayRegistry
    calculator: DateCalculator
    state_machine: StateMachine
    queue: TaskQueue
    renewals: RenewalOrderFactory
    scheduler: Scheduler
    payments: ScheduledPaymentProcessor


def default_gateways() -> GatewayRegistry:
    registry = GatewayRegistry()
    if config.STRIPE_API_KEY:
        registry.register(StripeIntegration(config.STRIPE_API_KEY))
    else:
        logging.info("STRIPE_API_KEY not set; subscriptions will renew manually.")
    return registry


def build_container(
    db: Session,
    gateways: Optional[GatewayRegistry] = None,
    queue: Optional[TaskQueue] = None,
    eligibility_policy: Optional[EligibilityPolicy] = None,
    date_policy: Optional[DateComputationPolicy] = None,
    clock: Callable[[], datetime.datetime] = utcnow,
) -> Container:
    """
    Wire the engine for one database session.

    Policies are registered here once; the scheduler and the scheduled
    payment processor subscribe to the returned container's event bus.
    """
    bus = EventBus()
    orders = OrderRepository(db)
    subscriptions = SubscriptionRepository(db, orders)
    gateways = gateways if gateways is not None else default_gateways()
    calculator = DateCalculator(date_policy, clock)
    state_machine = StateMachine(subscriptions, orders, gateways, bus, calculator, eligibility_policy, clock)
    queue = queue if queue is not None else DatabaseTaskQueue(db)
    renewals = RenewalOrderFactory(db, orders, subscriptions, calculator, gateways, bus, clock)
    scheduler = Scheduler(queue, subscriptions, orders, state_machine, renewals, bus, clock)
    payments = ScheduledPaymentProcessor(gateways, subscriptions, orders, state_machine)

    scheduler.register(bus)
    payments.register(bus)

    return Container(
        db=db,
        bus=bus,
        orders=orders,
        subscriptions=subscriptions,
        gateways=gateways,
        calculator=calculator,
        state_machine=state_machine,
        queue=queue,
        renewals=renewals,
        scheduler=scheduler,
        payments=payments,
    )


def get_container(db: Session = Depends(get_db)) -> Container:
    """FastAPI dependency returning an engine bound to the request's session."""
    return build_container(db)
