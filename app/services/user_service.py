"""
app/services/user_service.py

Purpose: Subscriber data management

- Account lookup and upsert (status, subscription reference, contact)
- Completed intake form records
- Payment dedup ledger (insert-if-absent on a unique index)
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.exceptions import PersistenceError
from app.core.logging import get_logger, LogContext
from app.db.mongo import (
    FORM_RECORDS_COLLECTION,
    PAYMENT_EVENTS_COLLECTION,
    USERS_COLLECTION,
    get_database,
)

logger = get_logger(__name__)

ACCOUNT_ACTIVE = "active"


class UserService:
    """
    MongoDB-backed persistence for accounts, forms and the payment ledger.
    Driver errors are converted to PersistenceError at this boundary.
    """

    def __init__(self, database=None):
        self._database = database

    @property
    def _db(self):
        return self._database if self._database is not None else get_database()

    @property
    def users(self):
        return self._db[USERS_COLLECTION]

    @property
    def form_records(self):
        return self._db[FORM_RECORDS_COLLECTION]

    @property
    def payment_events(self):
        return self._db[PAYMENT_EVENTS_COLLECTION]

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        """
        Retrieves an account by Telegram user id.

        Returns:
            User document or None if not found
        """
        try:
            return await self.users.find_one({"user_id": user_id})
        except PyMongoError as e:
            logger.error(f"Failed to load user: {e}", extra={"user_id": user_id})
            raise PersistenceError("Failed to load user") from e

    async def is_active(self, user_id: int) -> bool:
        user = await self.get_user(user_id)
        return bool(user) and user.get("status") == ACCOUNT_ACTIVE

    async def upsert_user(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Creates or updates an account.

        `updated_at` is always set; `created_at` only when the document is
        inserted. Dotted keys (e.g. "contact.email") merge into nested
        documents instead of replacing them.

        Args:
            user_id: Telegram user id
            fields: Fields to set

        Returns:
            The updated user document
        """
        now = datetime.utcnow()

        with LogContext(user_id=user_id):
            try:
                user = await self.users.find_one_and_update(
                    {"user_id": user_id},
                    {
                        "$set": {**fields, "updated_at": now},
                        "$setOnInsert": {"created_at": now},
                    },
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except PyMongoError as e:
                logger.error(f"Failed to upsert user: {e}")
                raise PersistenceError("Failed to update user") from e

            logger.info("User upserted", extra={"keys": list(fields.keys())})
            return user

    # ------------------------------------------------------------------
    # Intake forms
    # ------------------------------------------------------------------

    async def insert_form_record(self, fields: Dict[str, Any]) -> str:
        """
        Persists a completed intake form.

        Returns:
            Inserted record id
        """
        record = {**fields, "created_at": datetime.utcnow()}

        try:
            result = await self.form_records.insert_one(record)
        except PyMongoError as e:
            logger.error(f"Failed to save form record: {e}", extra={"user_id": fields.get("user_id")})
            raise PersistenceError("Failed to save form record") from e

        logger.info("Form record saved", extra={"user_id": fields.get("user_id")})
        return str(result.inserted_id)

    async def get_latest_form_record(self, user_id: int) -> Optional[Dict[str, Any]]:
        try:
            return await self.form_records.find_one(
                {"user_id": user_id},
                sort=[("created_at", DESCENDING)],
            )
        except PyMongoError as e:
            logger.error(f"Failed to load form record: {e}", extra={"user_id": user_id})
            raise PersistenceError("Failed to load form record") from e

    # ------------------------------------------------------------------
    # Payment ledger
    # ------------------------------------------------------------------

    async def get_payment_event(self, payment_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.payment_events.find_one({"payment_id": payment_id})
        except PyMongoError as e:
            logger.error(f"Failed to load payment event: {e}", extra={"payment_id": payment_id})
            raise PersistenceError("Failed to load payment event") from e

    async def insert_payment_event_if_absent(self, payment_id: str, record: Dict[str, Any]) -> bool:
        """
        Inserts a ledger entry unless one exists for the payment id.

        The unique index on payment_id makes this the serialization point
        for concurrent deliveries of the same payment.

        Returns:
            True if inserted, False if the id was already recorded
        """
        try:
            await self.payment_events.insert_one({**record, "payment_id": payment_id})
        except DuplicateKeyError:
            logger.info("Payment event already recorded", extra={"payment_id": payment_id})
            return False
        except PyMongoError as e:
            logger.error(f"Failed to record payment event: {e}", extra={"payment_id": payment_id})
            raise PersistenceError("Failed to record payment event") from e

        return True

    async def update_payment_event(self, payment_id: str, fields: Dict[str, Any]) -> bool:
        """
        Writes reconciliation fields onto an existing ledger entry.
        """
        try:
            result = await self.payment_events.update_one(
                {"payment_id": payment_id},
                {"$set": {**fields, "reconciled_at": datetime.utcnow()}},
            )
        except PyMongoError as e:
            logger.error(f"Failed to update payment event: {e}", extra={"payment_id": payment_id})
            raise PersistenceError("Failed to update payment event") from e

        return result.matched_count > 0

    async def delete_payment_event(self, payment_id: str) -> bool:
        """
        Releases a ledger claim whose account update never happened, so a
        redelivery of the same payment can run again.
        """
        try:
            result = await self.payment_events.delete_one({"payment_id": payment_id})
        except PyMongoError as e:
            logger.error(f"Failed to release payment event: {e}", extra={"payment_id": payment_id})
            raise PersistenceError("Failed to release payment event") from e

        return result.deleted_count > 0


# Global user service instance
_user_service: Optional[UserService] = None


def get_user_service() -> UserService:
    """Get or create the global user service instance."""
    global _user_service
    if _user_service is None:
        _user_service = UserService()
    return _user_service
