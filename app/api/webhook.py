"""
app/api/webhook.py

Purpose: Telegram webhook endpoint

- Receives Bot API updates
- Checks the webhook secret header when one is configured
- Normalizes text messages and passes control to the dispatcher
- Always acknowledges accepted updates so Telegram does not redeliver them
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError as SchemaValidationError

from app.core.config import settings
from app.core.exceptions import AuthenticationError
from app.core.logging import get_logger
from app.flow.dispatcher import MessageDispatcher, get_dispatcher
from app.schemas.webhook import parse_telegram_update

logger = get_logger(__name__)
router = APIRouter()


@router.post("/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
):
    """
    Telegram webhook endpoint.

    Updates that are not text messages are acknowledged and dropped.
    """
    if settings.TELEGRAM_WEBHOOK_SECRET and x_telegram_bot_api_secret_token != settings.TELEGRAM_WEBHOOK_SECRET:
        logger.warning("⚠️ Telegram webhook called with a wrong secret token")
        raise AuthenticationError("Invalid webhook secret")

    try:
        payload = await request.json()
        message = parse_telegram_update(payload)
    except (ValueError, SchemaValidationError) as e:
        logger.error(f"Failed to parse Telegram update: {e}")
        return {"ok": True}

    if message is None:
        logger.debug("Ignoring non-text update")
        return {"ok": True}

    logger.info(f"📱 Telegram update from {message.user_id}: {message.text[:50]}")

    await dispatcher.dispatch(message)
    return {"ok": True}


@router.get("/telegram/webhook")
async def webhook_verification():
    """
    Lets operators check the endpoint is reachable
    """
    return {"status": "ok", "message": "Webhook endpoint is active"}
