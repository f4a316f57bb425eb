# routers/webhooks.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status

from servicepay.core.dependencies import get_webhook_service
from servicepay.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger("servicepay.webhooks")


@router.post("/paystack", status_code=status.HTTP_200_OK)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    service: WebhookService = Depends(get_webhook_service),
):
    # Signature covers the raw bytes, so read them before any parsing
    body = await request.body()
    return await service.handle_paystack(body, x_paystack_signature)


@router.post("/nowpayments", status_code=status.HTTP_200_OK)
async def nowpayments_ipn(
    request: Request,
    x_nowpayments_sig: Optional[str] = Header(None),
    service: WebhookService = Depends(get_webhook_service),
):
    body = await request.body()
    return await service.handle_nowpayments(body, x_nowpayments_sig)
