"""
app/services/session_store.py

Purpose: Intake session registry

- Holds at most one live session per user
- Serializes every mutation for a user behind that user's lock
- Owns each session's inactivity timer and its cancellation
- Remembers for a while how a user's last session ended so late input
  is rejected
"""

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Tuple

from app.core.exceptions import (
    NoActiveSession,
    SessionCancelled,
    SessionConflict,
    SessionExpired,
)
from app.core.logging import get_logger, LogContext
from app.flow.states import (
    INITIAL_STAGE,
    SessionStage,
    is_terminal,
    is_valid_transition,
)

logger = get_logger(__name__)

# How long an expired or cancelled session still answers late input
ENDED_TTL = timedelta(hours=1)


@dataclass
class CollectedFields:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"name": self.name, "email": self.email, "phone": self.phone}


class SessionTimer:
    """
    Cancellable one-shot timer backed by an asyncio task.

    `cancel()` is idempotent and final: once cancelled the timer never
    fires, even if it is re-armed afterwards.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]]):
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def schedule(self, delay_seconds: float):
        """(Re)arms the timer; any pending countdown is dropped."""
        if self._cancelled:
            return
        self._drop_task()
        self._task = asyncio.get_running_loop().create_task(self._run(delay_seconds))

    def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        self._drop_task()

    def _drop_task(self):
        task, self._task = self._task, None
        # The firing task may cancel its own timer on the way to EXPIRED
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, delay_seconds: float):
        await asyncio.sleep(delay_seconds)
        if not self._cancelled:
            await self._callback()


@dataclass
class Session:
    """
    Live state of one user's intake form.
    """
    user_id: int
    chat_id: int
    started_at: datetime
    expires_at: datetime
    stage: SessionStage = INITIAL_STAGE
    fields: CollectedFields = field(default_factory=CollectedFields)
    timer: Optional[SessionTimer] = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.stage)

    def snapshot(self) -> "Session":
        """Detached copy handed to callers; never carries the timer."""
        return replace(self, fields=replace(self.fields), timer=None)


# A step receives a detached draft, may fill its fields, and returns the
# stage to commit. Raising aborts the step with nothing committed.
SessionStep = Callable[[Session], Awaitable[SessionStage]]
ExpiryHandler = Callable[[Session], Awaitable[None]]


class SessionStore:
    """
    Concurrency-safe registry of one active intake session per user.

    Only `begin`, `advance` and `cancel` mutate sessions, and each runs
    under the user's lock. Users never contend with each other.
    """

    def __init__(
        self,
        timeout: timedelta,
        on_expire: Optional[ExpiryHandler] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        ended_ttl: timedelta = ENDED_TTL,
    ):
        self._timeout = timeout
        self._on_expire = on_expire
        self._clock = clock
        self._ended_ttl = ended_ttl
        self._sessions: Dict[int, Session] = {}
        # user_id -> (terminal stage, ended at), oldest first
        self._ended: "OrderedDict[int, Tuple[SessionStage, datetime]]" = OrderedDict()
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def set_expiry_handler(self, handler: Optional[ExpiryHandler]):
        """Sets the callback that tells a user their session timed out."""
        self._on_expire = handler

    @asynccontextmanager
    async def _user_lock(self, user_id: int):
        # Locks are reference counted so idle users do not accumulate them
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if self._lock_users[user_id] == 0:
                del self._lock_users[user_id]
                del self._locks[user_id]

    async def begin(self, user_id: int, chat_id: Optional[int] = None) -> Session:
        """
        Starts a new session for the user.

        Raises:
            SessionConflict: If a live session already exists
        """
        expired = None

        with LogContext(user_id=user_id):
            async with self._user_lock(user_id):
                current = self._sessions.get(user_id)
                if current is not None and self._is_due(current):
                    expired = self._finish(current, SessionStage.EXPIRED)
                elif current is not None:
                    logger.info("Session already active", extra={"stage": current.stage.value})
                    raise SessionConflict(user_id)

                now = self._clock()
                session = Session(
                    user_id=user_id,
                    chat_id=chat_id if chat_id is not None else user_id,
                    started_at=now,
                    expires_at=now + self._timeout,
                )
                session.timer = SessionTimer(lambda: self._expire(session))
                session.timer.schedule(self._timeout.total_seconds())

                self._sessions[user_id] = session
                self._ended.pop(user_id, None)
                result = session.snapshot()

            logger.info("Session started", extra={"stage": session.stage.value})

        if expired is not None:
            await self._notify_expired(expired)

        return result

    async def advance(self, user_id: int, step: SessionStep) -> Session:
        """
        Applies `step` to the user's live session and commits its result.

        Raises:
            NoActiveSession: If the user has no session
            SessionExpired: If the session timed out
            SessionCancelled: If the session was cancelled
        """
        expired = None

        with LogContext(user_id=user_id):
            async with self._user_lock(user_id):
                session = self._sessions.get(user_id)
                if session is None:
                    raise self._missing(user_id)

                if self._is_due(session):
                    expired = self._finish(session, SessionStage.EXPIRED)
                else:
                    draft = session.snapshot()
                    next_stage = await step(draft)
                    result = self._commit(session, draft, next_stage)

            if expired is not None:
                logger.info("Late input on an expired session", extra={"stage": SessionStage.EXPIRED.value})
                await self._notify_expired(expired)
                raise SessionExpired(user_id)

        return result

    async def cancel(self, user_id: int) -> Session:
        """
        Cancels the user's live session.

        Raises:
            NoActiveSession: If nothing is in progress
        """
        with LogContext(user_id=user_id):
            async with self._user_lock(user_id):
                session = self._sessions.get(user_id)
                if session is None:
                    raise NoActiveSession(user_id)
                result = self._finish(session, SessionStage.CANCELLED)

            logger.info("Session cancelled", extra={"stage": result.stage.value})
            return result

    def get(self, user_id: int) -> Optional[Session]:
        session = self._sessions.get(user_id)
        return session.snapshot() if session else None

    def active_count(self) -> int:
        return len(self._sessions)

    async def close(self):
        """Cancels every pending timer. Called on shutdown."""
        for session in self._sessions.values():
            if session.timer:
                session.timer.cancel()
        self._sessions.clear()
        self._ended.clear()
        logger.info("Session store closed")

    def _commit(self, session: Session, draft: Session, next_stage: SessionStage) -> Session:
        if next_stage != session.stage and not is_valid_transition(session.stage, next_stage):
            raise ValueError(f"Invalid stage transition: {session.stage.value} -> {next_stage.value}")

        session.fields = draft.fields

        if is_terminal(next_stage):
            return self._finish(session, next_stage)

        if next_stage != session.stage:
            logger.info(
                f"Stage updated: {session.stage.value} -> {next_stage.value}",
                extra={"stage": next_stage.value}
            )
        session.stage = next_stage

        # Inactivity timeout: every accepted input re-arms the timer
        session.expires_at = self._clock() + self._timeout
        session.timer.schedule(self._timeout.total_seconds())

        return session.snapshot()

    def _finish(self, session: Session, stage: SessionStage) -> Session:
        """Moves a live session to a terminal stage and releases it."""
        session.stage = stage
        if session.timer:
            session.timer.cancel()
        self._sessions.pop(session.user_id, None)

        self._ended.pop(session.user_id, None)
        if stage in (SessionStage.EXPIRED, SessionStage.CANCELLED):
            self._ended[session.user_id] = (stage, self._clock())
        self._prune_ended()

        return session.snapshot()

    def _is_due(self, session: Session) -> bool:
        return self._clock() >= session.expires_at

    def _prune_ended(self):
        cutoff = self._clock() - self._ended_ttl
        while self._ended:
            user_id, (_, ended_at) = next(iter(self._ended.items()))
            if ended_at > cutoff:
                break
            del self._ended[user_id]

    def _missing(self, user_id: int) -> Exception:
        self._prune_ended()
        ended = self._ended.get(user_id, (None, None))[0]
        if ended == SessionStage.EXPIRED:
            return SessionExpired(user_id)
        if ended == SessionStage.CANCELLED:
            return SessionCancelled(user_id)
        return NoActiveSession(user_id)

    async def _expire(self, session: Session):
        """Timer callback."""
        with LogContext(user_id=session.user_id):
            async with self._user_lock(session.user_id):
                # A completion or cancellation that won the lock leaves nothing to do
                if self._sessions.get(session.user_id) is not session or session.is_terminal:
                    return
                expired = self._finish(session, SessionStage.EXPIRED)

            logger.info("Session expired", extra={"stage": expired.stage.value})
            await self._notify_expired(expired)

    async def _notify_expired(self, session: Session):
        if self._on_expire is None:
            return
        try:
            await self._on_expire(session)
        except Exception as e:
            logger.error(f"Expiry handler failed: {e}", exc_info=True)
