"""
app/db/indexes.py

Purpose: Database index management

- Creates unique and performance indexes
- The unique payment_id index backs the payment dedup ledger
"""

from app.db.mongo import (
    get_users_collection,
    get_form_records_collection,
    get_payment_events_collection,
)
from app.core.logging import get_logger

logger = get_logger(__name__)


async def create_indexes():
    """
    Creates all necessary database indexes.
    This function is idempotent - safe to run multiple times.
    """
    try:
        users = get_users_collection()
        forms = get_form_records_collection()
        payments = get_payment_events_collection()

        logger.info("Creating database indexes...")

        # ==============================================
        # USERS COLLECTION INDEXES
        # ==============================================

        # One account per Telegram user
        await users.create_index("user_id", unique=True, name="user_id_unique")
        logger.debug("Created unique index on users.user_id")

        await users.create_index("status", name="status_idx")
        logger.debug("Created index on users.status")

        # ==============================================
        # FORM RECORDS COLLECTION INDEXES
        # ==============================================

        # Latest form per user
        await forms.create_index(
            [("user_id", 1), ("created_at", -1)],
            name="user_forms_idx"
        )
        logger.debug("Created compound index on form_records.user_id + created_at")

        # ==============================================
        # PAYMENT EVENTS COLLECTION INDEXES
        # ==============================================

        # Dedup ledger: at most one record per payment id
        await payments.create_index("payment_id", unique=True, name="payment_id_unique")
        logger.debug("Created unique index on payment_events.payment_id")

        await payments.create_index("user_id", name="payment_user_idx")
        logger.debug("Created index on payment_events.user_id")

        # Reconciliation queue for operators
        await payments.create_index(
            "needs_attention",
            name="payment_attention_idx",
            partialFilterExpression={"needs_attention": True}
        )
        logger.debug("Created partial index on payment_events.needs_attention")

        logger.info("✅ All database indexes created successfully")

    except Exception as e:
        logger.error(f"Failed to create indexes: {str(e)}", exc_info=True)
        raise


if __name__ == "__main__":
    """
    Run this script directly to create indexes manually.
    """
    import asyncio
    from app.db.mongo import connect_to_mongo, close_mongo_connection

    async def main():
        await connect_to_mongo()
        await create_indexes()
        await close_mongo_connection()

    asyncio.run(main())
