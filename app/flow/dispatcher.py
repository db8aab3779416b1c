"""
app/flow/dispatcher.py

Purpose: Central message dispatcher

- Receives normalized messages from the Telegram webhook
- Routes bot commands (/start, /cancel, /pay, /help)
- Feeds everything else into the intake conversation
- Issues the payment link once the form is complete
- Sends replies via the Telegram Bot API
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import (
    DeliveryError,
    NoActiveSession,
    PaymentGatewayError,
    SessionCancelled,
    SessionConflict,
    SessionExpired,
    SubsBotError,
)
from app.core.logging import get_logger, LogContext
from app.flow.engine import ConversationEngine
from app.schemas.webhook import InboundMessage
from app.services.mercadopago_service import get_mercadopago_service, subscription_items
from app.services.session_store import Session, SessionStore
from app.services.telegram_service import get_telegram_service
from app.services.user_service import get_user_service
from utils.constants import (
    ALREADY_SUBSCRIBED_MESSAGE,
    COMMAND_CANCEL,
    COMMAND_HELP,
    COMMAND_PAY,
    COMMAND_START,
    GENERIC_ERROR_MESSAGE,
    HELP_MESSAGE,
    NO_ACTIVE_SESSION_MESSAGE,
    PAY_WITHOUT_FORM_MESSAGE,
    PAYMENT_LINK_FAILED_MESSAGE,
    PAYMENT_LINK_MESSAGE,
    SESSION_CANCELLED_MESSAGE,
    SESSION_CONFLICT_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
)
from utils.validation_utils import parse_command

logger = get_logger(__name__)


class MessageDispatcher:
    """
    Routes one inbound chat message and sends the replies.

    Args:
        engine: ConversationEngine
        users: Persistence (UserService)
        gateway: Payment gateway with async `create_checkout(items, metadata)`
        messenger: Object with async `send_message(chat_id, text)`
    """

    def __init__(self, engine: ConversationEngine, users, gateway, messenger):
        self.engine = engine
        self.users = users
        self.gateway = gateway
        self.messenger = messenger
        engine.store.set_expiry_handler(self.notify_expired)

    async def dispatch(self, message: InboundMessage) -> Dict[str, Any]:
        """
        Main entry point for incoming Telegram messages.

        Returns:
            Response dict
        """
        with LogContext(user_id=message.user_id):
            logger.info(f"📨 Dispatching message from {message.user_id}")

            try:
                replies = await self.route(message)
            except SubsBotError as e:
                logger.error(f"❌ Dispatcher error: {e.message}")
                replies = [GENERIC_ERROR_MESSAGE]
            except Exception as e:
                logger.error(f"❌ Dispatcher error: {e}", exc_info=True)
                replies = [GENERIC_ERROR_MESSAGE]

            for text in replies:
                await self.send_response(message.chat_id, text)

            return {"status": "success", "replies": len(replies)}

    async def route(self, message: InboundMessage) -> List[str]:
        """
        Decides what to answer.

        /start and /cancel always act. /pay and /help only act outside an
        intake session; during one they reach the engine, which ignores them.
        """
        user_id = message.user_id
        command = parse_command(message.text)
        in_session = self.engine.store.get(user_id) is not None

        logger.info(f"🚦 Routing: command={command}, in_session={in_session}")

        if command == COMMAND_START:
            return await self._start(message)
        if command == COMMAND_CANCEL:
            reply = await self.engine.cancel(user_id)
            return [reply.text]
        if command == COMMAND_PAY and not in_session:
            return await self._pay(user_id)
        if command == COMMAND_HELP and not in_session:
            return [HELP_MESSAGE]

        try:
            reply = await self.engine.handle_input(user_id, message.text)
        except SessionExpired:
            return [SESSION_EXPIRED_MESSAGE]
        except SessionCancelled:
            return [SESSION_CANCELLED_MESSAGE]
        except NoActiveSession:
            return [NO_ACTIVE_SESSION_MESSAGE]

        replies = [reply.text]
        if reply.completed:
            replies.append(await self._checkout_message(user_id, reply.form))
        return replies

    async def _start(self, message: InboundMessage) -> List[str]:
        if await self.users.is_active(message.user_id):
            logger.info("Active subscriber sent /start")
            return [ALREADY_SUBSCRIBED_MESSAGE]

        try:
            reply = await self.engine.start(message.user_id, message.chat_id)
        except SessionConflict:
            return [SESSION_CONFLICT_MESSAGE]
        return [reply.text]

    async def _pay(self, user_id: int) -> List[str]:
        """Re-issues a payment link from the latest completed form."""
        if await self.users.is_active(user_id):
            return [ALREADY_SUBSCRIBED_MESSAGE]

        form = await self.users.get_latest_form_record(user_id)
        if not form:
            return [PAY_WITHOUT_FORM_MESSAGE]

        return [await self._checkout_message(user_id, form)]

    async def _checkout_message(self, user_id: int, form: Dict[str, Any]) -> str:
        metadata = {
            "telegram_user_id": user_id,
            "name": form.get("name"),
            "email": form.get("email"),
            "phone": form.get("phone"),
        }

        try:
            link = await self.gateway.create_checkout(subscription_items(), metadata)
        except PaymentGatewayError as e:
            logger.error(f"❌ Payment link not created: {e.message}")
            return PAYMENT_LINK_FAILED_MESSAGE

        logger.info("💳 Payment link issued")
        return PAYMENT_LINK_MESSAGE.format(link=link)

    async def notify_expired(self, session: Session):
        """Tells the user their intake session timed out."""
        await self.send_response(session.chat_id, SESSION_EXPIRED_MESSAGE)

    async def send_response(self, chat_id: int, text: str) -> bool:
        try:
            await self.messenger.send_message(chat_id, text)
        except DeliveryError as e:
            logger.error(f"❌ Reply not delivered: {e.message}")
            return False
        return True


# Global dispatcher instance
_dispatcher: Optional[MessageDispatcher] = None


def get_dispatcher() -> MessageDispatcher:
    """Get or create the global dispatcher and its session store."""
    global _dispatcher
    if _dispatcher is None:
        users = get_user_service()
        store = SessionStore(timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES))
        _dispatcher = MessageDispatcher(
            engine=ConversationEngine(store, users),
            users=users,
            gateway=get_mercadopago_service(),
            messenger=get_telegram_service(),
        )
    return _dispatcher


async def close_dispatcher():
    """Cancels pending session timers. Called on shutdown."""
    global _dispatcher
    if _dispatcher is not None:
        await _dispatcher.engine.store.close()
        _dispatcher = None
