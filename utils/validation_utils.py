"""
utils/validation_utils.py

Purpose: Input validation

- Name, email and phone predicates for the intake form
- Command detection
"""

import re
from typing import Optional

COMMAND_MARKER = "/"

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")

PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15


def validate_name(name: str) -> bool:
    """
    Validates a display name: any non-empty text after trimming.

    Args:
        name: Name string

    Returns:
        True if usable as a name
    """
    if not name:
        return False

    return bool(name.strip())


def validate_email(email: str) -> bool:
    """
    Validates email syntax.

    Example: ana.silva@example.com

    Args:
        email: Email string to validate

    Returns:
        True if valid, False otherwise
    """
    if not email:
        return False

    email = email.strip()
    if len(email) > 254 or ".." in email:
        return False

    return bool(EMAIL_PATTERN.match(email))


def digits_only(text: str) -> str:
    """Strips every non-digit character."""
    return re.sub(r"\D", "", text or "")


def validate_phone(phone: str) -> bool:
    """
    Validates an international phone number.

    Accepts 10-15 digits once every non-digit is stripped. A "+" may only
    appear as the leading character.

    Examples: +55 11 91234-5678, (11) 91234-5678

    Args:
        phone: Phone number string

    Returns:
        True if valid phone number
    """
    if not phone:
        return False

    phone = phone.strip()
    if "+" in phone[1:]:
        return False

    digit_count = len(digits_only(phone))
    return PHONE_MIN_DIGITS <= digit_count <= PHONE_MAX_DIGITS


def is_command(text: Optional[str]) -> bool:
    """
    True when the message is a bot command such as "/start".
    """
    if not text:
        return False
    return text.strip().startswith(COMMAND_MARKER)


def parse_command(text: str) -> Optional[str]:
    """
    Extracts the command name from a message.

    "/start" -> "start", "/Pay@SubsBot now" -> "pay", "hello" -> None
    """
    if not is_command(text):
        return None

    token = text.strip().split()[0][len(COMMAND_MARKER):]
    # Group chats append the bot username
    token = token.split("@", 1)[0]
    return token.lower() or None
