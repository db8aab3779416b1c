"""
app/services/operator_service.py

Purpose: Operator alert channel

- Reports failures end users must not see (fatal provisioning, rejected
  payments, undelivered approval notices)
- Always logs at CRITICAL; also messages the operator chat when configured
"""

from typing import Optional

from app.core.config import settings
from app.core.exceptions import DeliveryError
from app.core.logging import get_logger

logger = get_logger(__name__)


class OperatorService:
    """
    Args:
        messenger: Object with an async `send_message(chat_id, text)`
        chat_id: Operator chat; None disables chat delivery
    """

    def __init__(self, messenger, chat_id: Optional[int] = None):
        self._messenger = messenger
        self._chat_id = chat_id

    async def alert(self, text: str) -> bool:
        """
        Raises an operator alert.

        Returns:
            True if the alert reached the operator chat
        """
        logger.critical(f"Operator alert: {text}")

        if self._chat_id is None:
            return False

        try:
            await self._messenger.send_message(self._chat_id, text)
        except DeliveryError as e:
            logger.error(f"Operator alert not delivered: {e.message}")
            return False

        return True


def build_operator_service(messenger) -> OperatorService:
    return OperatorService(messenger, settings.OPERATOR_CHAT_ID)
