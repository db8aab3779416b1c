"""
app/schemas/webhook.py

Purpose: Telegram webhook payload schemas and parsers

- Validates incoming Telegram updates
- Normalizes them into InboundMessage
- Ensures predictable request handling
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str = "private"


class TelegramMessage(BaseModel):
    message_id: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    text: Optional[str] = None
    date: Optional[int] = None

    model_config = {"populate_by_name": True}


class TelegramUpdate(BaseModel):
    """
    Subset of the Telegram `Update` object the bot consumes.
    Every other update kind is accepted and ignored.
    """
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None


class InboundMessage(BaseModel):
    """
    Normalized message format for internal processing
    """
    chat_id: int = Field(..., description="Chat the reply goes to")
    user_id: int = Field(..., description="Telegram user id of the sender")
    text: str = Field(..., description="Message text content")
    first_name: str = Field(default="", description="Sender's display name")
    message_id: Optional[int] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    model_config = {
        "json_schema_extra": {
            "example": {
                "chat_id": 123456789,
                "user_id": 123456789,
                "text": "/start",
                "first_name": "Ana",
            }
        }
    }


def parse_telegram_update(payload: dict) -> Optional[InboundMessage]:
    """
    Parses a Telegram webhook payload.

    Returns None for updates without a text message (joins, edits,
    stickers, channel posts, bot senders).
    """
    update = TelegramUpdate.model_validate(payload)
    message = update.message
    if message is None or message.text is None:
        return None

    sender = message.from_user
    if sender is not None and sender.is_bot:
        return None

    return InboundMessage(
        chat_id=message.chat.id,
        # Private chats share the user's id
        user_id=sender.id if sender else message.chat.id,
        text=message.text,
        first_name=sender.first_name if sender else "",
        message_id=message.message_id,
    )
