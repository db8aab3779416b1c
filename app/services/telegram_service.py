"""
app/services/telegram_service.py

Purpose: Telegram Bot API integration

- Sends chat messages (NotificationGateway)
- Grants group membership and creates single-use invite links
  (membership provider for MembershipProvisioner)
- Converts transport and API failures into DeliveryError / ProviderError
"""

import httpx
from datetime import datetime
from typing import Any, Dict, Optional
from app.core.config import settings
from app.core.exceptions import DeliveryError, ExternalServiceError, ProviderError
from app.core.logging import get_logger

logger = get_logger(__name__)

# Telegram's limit for sendMessage text
MAX_MESSAGE_LENGTH = 4096


class TelegramAPIError(ExternalServiceError):
    """
    Raised when the Bot API answers with ok=false or the call never completes.
    `error_code` is None for transport failures.
    """

    def __init__(self, method: str, description: str, error_code: Optional[int] = None):
        self.method = method
        self.description = description
        self.error_code = error_code
        super().__init__(
            f"Telegram {method} failed: {description}",
            details={"method": method, "error_code": error_code},
            code="TELEGRAM_API_ERROR",
        )


class TelegramService:
    """Service for talking to the Telegram Bot API"""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
        self.base_url = (base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        """
        Calls a Bot API method and returns its `result`.

        Raises:
            TelegramAPIError: On ok=false, non-JSON answers or transport errors
        """
        if not self.token:
            raise TelegramAPIError(method, "bot token not configured", error_code=401)

        url = f"{self.base_url}/bot{self.token}/{method}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.TimeoutException:
            logger.error(f"Telegram {method} timed out")
            raise TelegramAPIError(method, "timeout")
        except httpx.RequestError as e:
            logger.error(f"Network error calling Telegram {method}: {e}")
            raise TelegramAPIError(method, "network error")

        try:
            body = response.json()
        except ValueError:
            logger.error(f"❌ Telegram {method} returned non-JSON: {response.status_code}")
            raise TelegramAPIError(method, "invalid response", error_code=response.status_code)

        if not body.get("ok"):
            error_code = body.get("error_code", response.status_code)
            description = body.get("description", "unknown error")
            logger.warning(f"❌ Telegram {method} error: {error_code} - {description}")
            raise TelegramAPIError(method, description, error_code=error_code)

        return body.get("result")

    async def send_message(self, chat_id: int, text: str) -> Dict[str, Any]:
        """
        Sends a plain-text message.

        Args:
            chat_id: Recipient chat
            text: Message text

        Returns:
            The sent Telegram message

        Raises:
            DeliveryError: If the message could not be delivered
        """
        logger.info(f"📤 Sending Telegram message to {chat_id}")

        try:
            result = await self._call(
                "sendMessage",
                {
                    "chat_id": chat_id,
                    "text": text[:MAX_MESSAGE_LENGTH],
                    "disable_web_page_preview": True,
                },
            )
        except TelegramAPIError as e:
            raise DeliveryError(
                f"Could not deliver message to {chat_id}: {e.description}",
                details={"chat_id": chat_id, "error_code": e.error_code},
            ) from e

        logger.info(f"✅ Message sent: id={result.get('message_id') if result else 'N/A'}")
        return result

    async def add_member(self, group_id: int, user_id: int):
        """
        Grants the user access to the group by approving their join request.

        A refusal the user can work around (no pending request, privacy
        settings) is recoverable; auth, permission and missing-chat errors
        are not.

        Raises:
            ProviderError: With `recoverable` set accordingly
        """
        try:
            await self._call("approveChatJoinRequest", {"chat_id": group_id, "user_id": user_id})
        except TelegramAPIError as e:
            if "USER_ALREADY_PARTICIPANT" in e.description.upper():
                logger.info(f"User {user_id} already in group {group_id}")
                return
            raise ProviderError(
                f"Direct grant refused: {e.description}",
                recoverable=e.error_code == 400,
                details={"group_id": group_id, "user_id": user_id, "error_code": e.error_code},
            ) from e

        logger.info(f"✅ User {user_id} admitted to group {group_id}")

    async def create_invite_link(
        self,
        group_id: int,
        member_limit: int = 1,
        expire_date: Optional[datetime] = None,
        name: Optional[str] = None,
    ) -> str:
        """
        Creates a group invite link.

        Raises:
            ProviderError: Never recoverable
        """
        payload: Dict[str, Any] = {"chat_id": group_id, "member_limit": member_limit}
        if expire_date is not None:
            payload["expire_date"] = int(expire_date.timestamp())
        if name:
            payload["name"] = name[:32]

        try:
            result = await self._call("createChatInviteLink", payload)
        except TelegramAPIError as e:
            raise ProviderError(
                f"Invite link creation failed: {e.description}",
                recoverable=False,
                details={"group_id": group_id, "error_code": e.error_code},
            ) from e

        link = (result or {}).get("invite_link")
        if not link:
            raise ProviderError("Invite link missing from response", recoverable=False)

        logger.info(f"🔗 Invite link created for group {group_id}")
        return link


# Global Telegram service instance
_telegram_service: Optional[TelegramService] = None


def get_telegram_service() -> TelegramService:
    """Get or create the global Telegram service instance."""
    global _telegram_service
    if _telegram_service is None:
        _telegram_service = TelegramService()
    return _telegram_service
