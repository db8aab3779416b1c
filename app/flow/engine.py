"""
app/flow/engine.py

Purpose: Intake conversation state machine

- Starts, advances and cancels a user's intake session via SessionStore
- Validates each field for the current stage (re-prompts on bad input)
- Ignores bot commands while a session is active
- Persists the completed form and returns the collected fields
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from app.core.exceptions import NoActiveSession, PersistenceError, ValidationError
from app.core.logging import get_logger, LogContext
from app.flow.states import SessionStage, get_stage_metadata
from app.services.session_store import Session, SessionStore
from utils.constants import (
    COMMAND_IGNORED_MESSAGE,
    FORM_COMPLETED_MESSAGE,
    FORM_SAVE_FAILED_MESSAGE,
    INVALID_EMAIL_MESSAGE,
    INVALID_NAME_MESSAGE,
    INVALID_PHONE_MESSAGE,
    NOTHING_TO_CANCEL_MESSAGE,
    SESSION_CANCELLED_MESSAGE,
    WELCOME_MESSAGE,
)
from utils.validation_utils import is_command, validate_email, validate_name, validate_phone

logger = get_logger(__name__)


@dataclass
class EngineReply:
    """
    What the engine wants said back to the user.

    `form` is set only on the turn that completes the session.
    """
    text: str
    stage: Optional[SessionStage] = None
    form: Optional[Dict[str, Any]] = None

    @property
    def completed(self) -> bool:
        return self.form is not None


# stage -> (predicate, error message, next stage)
FIELD_RULES: Dict[SessionStage, tuple] = {
    SessionStage.AWAITING_NAME: (validate_name, INVALID_NAME_MESSAGE, SessionStage.AWAITING_EMAIL),
    SessionStage.AWAITING_EMAIL: (validate_email, INVALID_EMAIL_MESSAGE, SessionStage.AWAITING_PHONE),
    SessionStage.AWAITING_PHONE: (validate_phone, INVALID_PHONE_MESSAGE, SessionStage.COMPLETED),
}


def _validate(predicate: Callable[[str], bool], value: str, message: str):
    if not predicate(value):
        raise ValidationError(message)


def prompt_for(session: Session) -> str:
    metadata = get_stage_metadata(session.stage)
    if metadata is None:
        return ""
    return metadata.prompt.format(**session.fields.as_dict())


class ConversationEngine:
    """
    Per-user dialog state machine on top of SessionStore.

    Args:
        store: Session registry
        forms: Persistence with an async `insert_form_record(fields)`
    """

    def __init__(self, store: SessionStore, forms):
        self._store = store
        self._forms = forms

    @property
    def store(self) -> SessionStore:
        return self._store

    async def start(self, user_id: int, chat_id: Optional[int] = None) -> EngineReply:
        """
        Opens a session and asks the first question.

        Raises:
            SessionConflict: If the user already has a live session
        """
        session = await self._store.begin(user_id, chat_id)
        return EngineReply(
            text=f"{WELCOME_MESSAGE}\n\n{prompt_for(session)}",
            stage=session.stage,
        )

    async def handle_input(self, user_id: int, text: str) -> EngineReply:
        """
        Feeds one inbound message into the user's session.

        Raises:
            NoActiveSession, SessionExpired, SessionCancelled
        """
        replies: Dict[str, str] = {}

        async def step(draft: Session) -> SessionStage:
            return await self._apply(draft, text, replies)

        with LogContext(user_id=user_id):
            try:
                session = await self._store.advance(user_id, step)
            except PersistenceError:
                logger.error("Form could not be saved, stage left unchanged")
                current = self._store.get(user_id)
                return EngineReply(
                    text=FORM_SAVE_FAILED_MESSAGE,
                    stage=current.stage if current else None,
                )

        if session.stage == SessionStage.COMPLETED:
            form = session.fields.as_dict()
            return EngineReply(
                text=FORM_COMPLETED_MESSAGE.format(**form),
                stage=session.stage,
                form=form,
            )

        return EngineReply(
            text=replies.get("error") or prompt_for(session),
            stage=session.stage,
        )

    async def cancel(self, user_id: int) -> EngineReply:
        """Explicit cancellation by the user."""
        try:
            session = await self._store.cancel(user_id)
        except NoActiveSession:
            return EngineReply(text=NOTHING_TO_CANCEL_MESSAGE)
        return EngineReply(text=SESSION_CANCELLED_MESSAGE, stage=session.stage)

    async def _apply(self, draft: Session, text: str, replies: Dict[str, str]) -> SessionStage:
        """Computes the next stage for `draft`; runs under the user's lock."""
        with LogContext(stage=draft.stage.value):
            if is_command(text):
                logger.debug("Command ignored during intake")
                replies["error"] = COMMAND_IGNORED_MESSAGE
                return draft.stage

            predicate, message, next_stage = FIELD_RULES[draft.stage]
            value = (text or "").strip()

            try:
                _validate(predicate, value, message)
            except ValidationError as e:
                logger.info("Field rejected, re-prompting")
                replies["error"] = e.message
                return draft.stage

            setattr(draft.fields, get_stage_metadata(draft.stage).field, value)

            if next_stage == SessionStage.COMPLETED:
                await self._forms.insert_form_record({
                    "user_id": draft.user_id,
                    "chat_id": draft.chat_id,
                    **draft.fields.as_dict(),
                })
                logger.info("Intake form completed")

            return next_stage
