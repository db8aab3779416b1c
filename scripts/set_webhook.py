"""
Registers the bot's webhook with Telegram

Run once per deployment:
    python scripts/set_webhook.py https://bot.example.com
"""

import asyncio
import sys
from pathlib import Path
from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment variables
load_dotenv()

import httpx
import logging

from app.core.config import settings

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


async def set_webhook(public_url: str):
    if not settings.TELEGRAM_BOT_TOKEN:
        raise ValueError("❌ TELEGRAM_BOT_TOKEN must be set in .env file")

    webhook_url = f"{public_url.rstrip('/')}{settings.API_PREFIX}/telegram/webhook"
    payload = {
        "url": webhook_url,
        "allowed_updates": ["message"],
        "drop_pending_updates": False,
    }
    if settings.TELEGRAM_WEBHOOK_SECRET:
        payload["secret_token"] = settings.TELEGRAM_WEBHOOK_SECRET

    logger.info(f"🔗 Registering webhook: {webhook_url}")

    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
        response = await client.post(
            f"{settings.TELEGRAM_API_BASE_URL}/bot{settings.TELEGRAM_BOT_TOKEN}/setWebhook",
            json=payload,
        )
        body = response.json()

    if not body.get("ok"):
        logger.error(f"❌ setWebhook failed: {body.get('description')}")
        return False

    logger.info("✅ Webhook registered")
    return True


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python scripts/set_webhook.py <public base url>")
        sys.exit(1)

    ok = asyncio.run(set_webhook(sys.argv[1]))
    sys.exit(0 if ok else 1)
