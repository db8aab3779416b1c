"""
app/api/payments.py

Purpose: Mercado Pago notification endpoint

- Receives payment notifications
- Hands them to the PaymentEventProcessor
- Acknowledges with 200 whatever the business outcome
- Answers 503 only when the payment could not be looked up or recorded,
  so the gateway redelivers later
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.core.exceptions import PaymentLookupFailure, PersistenceError
from app.core.logging import get_logger
from app.schemas.response import AckResponse, ErrorResponse
from app.services.payment_service import Outcome, PaymentEventProcessor, get_payment_processor

logger = get_logger(__name__)
router = APIRouter()


@router.post("/mp-webhook", response_model=AckResponse)
async def mercadopago_webhook(
    request: Request,
    processor: PaymentEventProcessor = Depends(get_payment_processor),
):
    """
    Mercado Pago webhook endpoint.

    Body: {"type": "payment", "data": {"id": "<payment id>"}}
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("⚠️ Payment notification with an unreadable body")
        return AckResponse(outcome=Outcome.IGNORED.value)

    logger.info(f"💳 Payment notification received: {payload}")

    try:
        outcome = await processor.handle_notification(payload)
    except (PaymentLookupFailure, PersistenceError) as e:
        logger.error(f"❌ Payment notification deferred: {e.message}")
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error=e.message, code=e.code, details=None).model_dump(),
        )

    return AckResponse(outcome=outcome.value)
