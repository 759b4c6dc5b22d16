"""Inbound billing provider webhooks.

The raw request body is handed to the processor untouched: the signature
covers the exact bytes the provider sent.

| Processor reason    | HTTP status |
|---------------------|-------------|
| applied / stale / ignored / duplicate | 200 |
| invalid_signature   | 401 |
| malformed_payload   | 400 |
| in_progress         | 409 (provider redelivers) |
| processing_failed   | 503 (provider redelivers) |
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from src.dealsmart.api.deps import get_billing_processor
from src.dealsmart.billing.processor import BillingWebhookProcessor

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "Billing-Signature"

_REJECTION_STATUS = {
    "invalid_signature": status.HTTP_401_UNAUTHORIZED,
    "malformed_payload": status.HTTP_400_BAD_REQUEST,
    "in_progress": status.HTTP_409_CONFLICT,
    "processing_failed": status.HTTP_503_SERVICE_UNAVAILABLE,
}


@router.post("/billing")
async def billing_webhook(
    request: Request,
    billing_signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    processor: BillingWebhookProcessor = Depends(get_billing_processor),
) -> JSONResponse:
    raw_payload = await request.body()
    result = await processor.handle(raw_payload, billing_signature)

    if result.accepted:
        status_code = status.HTTP_200_OK
    else:
        status_code = _REJECTION_STATUS.get(result.reason, status.HTTP_400_BAD_REQUEST)

    return JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json", exclude_none=True),
    )
