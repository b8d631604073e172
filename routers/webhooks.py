"""Public receiver for Milesight webhook deliveries."""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from webhook_handler import (
    WebhookRejectedError,
    get_webhook_settings,
    process_delivery,
    verify_delivery,
    webhook_health,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/milesight", tags=["public"])
def receive_milesight_webhook(
    body: Any = Body(...),
    token: Optional[str] = Query(None),
    x_webhook_secret: Optional[str] = Header(None),
    x_webhook_uuid: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Accept one event or a list of events pushed by Milesight.

    Credentials are checked before anything is stored.
    """
    webhook_settings = get_webhook_settings(db)
    try:
        verify_delivery(webhook_settings, token, x_webhook_secret, x_webhook_uuid)
    except WebhookRejectedError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return process_delivery(db, body, webhook_settings)


@router.get("/milesight", tags=["public"])
def milesight_webhook_health(db: Session = Depends(get_db)):
    """Health probe used when registering the webhook URL."""
    return webhook_health(get_webhook_settings(db))
