import os
import logging

from fastapi import APIRouter, HTTPException, Request, status, Depends

from recurring_billing_svc.container import Container, get_container
from recurring_billing_svc.stripe_integration import StripeIntegration
from recurring_billing_svc.stripe_event_processor import process_event

router = APIRouter()


@router.post("/webhook", status_code=200)
async def process_webhook(request: Request, container: Container = Depends(get_container)):
    payload_bytes = await request.body()
    payload = payload_bytes.decode('utf-8')
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")
    endpoint_secret = os.getenv("STRIPE_ENDPOINT_SECRET")
    if not endpoint_secret:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe endpoint secret not configured")
    stripe_integration = StripeIntegration()
    try:
        event = stripe_integration.process_webhook_event(payload, sig_header, endpoint_secret)
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        metadata = process_event(event, container)
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Error processing webhook event")

    return {"success": True, "event_type": event.get('type', ''), "metadata": metadata}
