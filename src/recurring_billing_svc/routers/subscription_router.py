import logging
from zoneinfo import ZoneInfoNotFoundError

from fastapi import APIRouter, HTTPException, status, Depends
from pydantic import BaseModel

from recurring_billing_svc.container import Container, get_container
from recurring_billing_svc.exceptions import InvalidTransition
from recurring_billing_svc.formatting import snapshot_to_dict

router = APIRouter()


class StatusUpdateRequest(BaseModel):
    status: str
    note: str = ''


def _get_record(container: Container, subscription_id: int):
    record = container.subscriptions.get(subscription_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Subscription {subscription_id} not found")
    return record


@router.get("/{subscription_id}", status_code=200)
async def get_subscription(subscription_id: int, tz: str = 'UTC', container: Container = Depends(get_container)):
    record = _get_record(container, subscription_id)
    try:
        return {"success": True, "subscription": snapshot_to_dict(record.snapshot(), tz)}
    except (ZoneInfoNotFoundError, ValueError) as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown timezone: {tz}")


@router.put("/{subscription_id}/status", status_code=200)
async def update_subscription_status(
    subscription_id: int,
    update_request: StatusUpdateRequest,
    container: Container = Depends(get_container),
):
    record = _get_record(container, subscription_id)
    try:
        changed = container.state_machine.update_status(record, update_request.status, update_request.note, manual=True)
    except (InvalidTransition, ValueError) as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"success": True, "changed": changed, "subscription": snapshot_to_dict(record.snapshot())}
