"""
app/services/membership_service.py

Purpose: Group access provisioning

- Tries a direct membership grant once
- Falls back to a single-use, time-bounded invite link when the grant is
  refused recoverably
- Classifies everything else as fatal for the operator channel
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from app.core.exceptions import ProviderError, ProvisionFatalFailure, ProvisionRecoverableFailure
from app.core.logging import get_logger, LogContext

logger = get_logger(__name__)


class ProvisionKind(str, Enum):
    GRANTED = "granted"
    INVITED = "invited"


@dataclass
class ProvisionResult:
    kind: ProvisionKind
    invite_link: Optional[str] = None
    invite_expires_at: Optional[datetime] = None

    @property
    def needs_delivery(self) -> bool:
        """An invite link has to reach the user instead of a plain success."""
        return self.kind == ProvisionKind.INVITED


class MembershipProvisioner:
    """
    Grants a paying user access to the subscribers' group.

    Args:
        provider: Object with async `add_member(group_id, user_id)` and
            `create_invite_link(group_id, member_limit, expire_date, name)`
        group_id: Target group; None makes every provision fatal
        invite_ttl: Lifetime of fallback invite links
    """

    def __init__(self, provider, group_id: Optional[int], invite_ttl: timedelta):
        self._provider = provider
        self._group_id = group_id
        self._invite_ttl = invite_ttl

    async def provision(self, user_id: int, metadata: Optional[Dict[str, Any]] = None) -> ProvisionResult:
        """
        Raises:
            ProvisionFatalFailure: Configuration, auth or fallback failures
        """
        with LogContext(user_id=user_id):
            if self._group_id is None:
                raise ProvisionFatalFailure("TELEGRAM_GROUP_ID is not configured")

            try:
                await self._grant(user_id)
                return ProvisionResult(kind=ProvisionKind.GRANTED)
            except ProvisionRecoverableFailure as e:
                logger.warning(f"Direct grant refused, falling back to invite link: {e.message}")

            return await self._invite(user_id, metadata or {})

    async def _grant(self, user_id: int):
        # Single attempt; refusals are not retried
        try:
            await self._provider.add_member(self._group_id, user_id)
        except ProviderError as e:
            if e.recoverable:
                raise ProvisionRecoverableFailure(e.message, details=e.details) from e
            logger.error(f"Direct grant failed: {e.message}")
            raise ProvisionFatalFailure(f"Direct grant failed: {e.message}", details=e.details) from e

        logger.info("Membership granted directly")

    async def _invite(self, user_id: int, metadata: Dict[str, Any]) -> ProvisionResult:
        expires_at = datetime.now(timezone.utc) + self._invite_ttl
        name = metadata.get("name") or str(user_id)

        try:
            link = await self._provider.create_invite_link(
                self._group_id,
                member_limit=1,
                expire_date=expires_at,
                name=f"sub {name}",
            )
        except ProviderError as e:
            logger.error(f"Fallback invite failed: {e.message}")
            raise ProvisionFatalFailure(f"Fallback invite failed: {e.message}", details=e.details) from e

        logger.info("Fallback invite link created")
        return ProvisionResult(
            kind=ProvisionKind.INVITED,
            invite_link=link,
            invite_expires_at=expires_at,
        )
