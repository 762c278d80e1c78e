import logging

from fastapi import FastAPI

from recurring_billing_svc import config
from recurring_billing_svc.routers import stripe_router, subscription_router

logging.basicConfig(level=config.LOG_LEVEL)

app = FastAPI()

app.include_router(stripe_router.router, prefix="/api/stripe")
app.include_router(subscription_router.router, prefix="/api/subscriptions")
