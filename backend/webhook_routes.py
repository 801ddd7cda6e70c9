"""
PAYMENT GATEWAY WEBHOOK RECEIVER

POST /api/webhooks/{provider}

The raw body is handed to the settlement service untouched; signatures are
computed over the exact bytes the gateway sent.

Responses:
- 200: processed, duplicate or ignored event
- 401: signature rejected (permanent, the gateway should not retry)
- 404: unknown provider or payment reference
- 500: anything else, so the gateway retries the delivery
"""

from fastapi import APIRouter, HTTPException, Request, status, Depends
import logging

from settlement.settlement_service import SettlementService
from settlement.webhook_validation import SIGNATURE_HEADERS

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/api", tags=["Webhooks"])


def get_settlement_service(request: Request) -> SettlementService:
    return request.app.state.settlement_service


def extract_signature(provider: str, request: Request):
    for header in SIGNATURE_HEADERS.get(provider, []):
        value = request.headers.get(header)
        if value:
            return value
    return None


@webhook_router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    service: SettlementService = Depends(get_settlement_service)
):
    """Authenticate and apply a gateway event"""
    if provider not in SIGNATURE_HEADERS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown payment provider: {provider}"
        )

    raw_payload = await request.body()
    signature = extract_signature(provider, request)
    logger.info(f"[WEBHOOK] Received {provider} webhook ({len(raw_payload)} bytes)")

    # InvalidSignatureError -> 401, NotFoundError -> 404, other settlement
    # errors -> 500 via the app's exception handler
    outcome = await service.handle_webhook(provider, signature, raw_payload)

    return outcome.model_dump()
