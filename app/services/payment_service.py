"""
app/services/payment_service.py

Purpose: Payment notification reconciliation

- Deduplicates payment notifications on the gateway's payment id
- Confirms every notification with an authoritative status lookup
- Activates the subscriber's account exactly once
- Provisions group access and notifies the user
- Records reconciliation state instead of rolling back side effects
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError as SchemaValidationError

from app.core.config import settings
from app.core.exceptions import (
    DeliveryError,
    InvalidPaymentMetadata,
    PaymentLookupFailure,
    PersistenceError,
    ProvisionFatalFailure,
)
from app.core.logging import get_logger, LogContext
from app.schemas.payment import PaymentInfo, PaymentMetadata, PaymentNotification
from app.services.membership_service import MembershipProvisioner
from app.services.mercadopago_service import get_mercadopago_service
from app.services.operator_service import OperatorService, build_operator_service
from app.services.telegram_service import get_telegram_service
from app.services.user_service import ACCOUNT_ACTIVE, get_user_service
from utils.constants import (
    OPERATOR_INVALID_PAYMENT_ALERT,
    OPERATOR_NOTIFICATION_FAILED_ALERT,
    OPERATOR_PROVISION_FAILED_ALERT,
    PAYMENT_APPROVED_INVITE_MESSAGE,
    PAYMENT_APPROVED_MESSAGE,
    PAYMENT_APPROVED_PENDING_ACCESS_MESSAGE,
)

logger = get_logger(__name__)

AMOUNT_TOLERANCE = 0.005


class Outcome(str, Enum):
    """Result of processing one payment notification."""
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    REJECTED = "rejected"


class PaymentEventProcessor:
    """
    Idempotent handler for payment status notifications.

    The ledger entry for a payment id is inserted before any side effect;
    its unique index is the only serialization point between concurrent
    deliveries of the same payment.

    Args:
        ledger: Persistence (UserService)
        gateway: Payment gateway with async `get_payment(payment_id)`
        provisioner: MembershipProvisioner
        messenger: Object with async `send_message(chat_id, text)`
        operator: OperatorService
        expected_amount: Subscription price; None skips the amount check
        expected_currency: Subscription currency; None skips the check
        invite_ttl_hours: Shown to users who receive a fallback invite
    """

    def __init__(
        self,
        ledger,
        gateway,
        provisioner: MembershipProvisioner,
        messenger,
        operator: OperatorService,
        expected_amount: Optional[float] = None,
        expected_currency: Optional[str] = None,
        invite_ttl_hours: int = 24,
    ):
        self._ledger = ledger
        self._gateway = gateway
        self._provisioner = provisioner
        self._messenger = messenger
        self._operator = operator
        self._expected_amount = expected_amount
        self._expected_currency = expected_currency
        self._invite_ttl_hours = invite_ttl_hours

    async def handle_notification(self, payload: Any) -> Outcome:
        """
        Entry point for the inbound webhook body.

        Anything other than {"type": "payment", "data": {"id": ...}} is
        acknowledged and ignored.
        """
        if not isinstance(payload, dict):
            logger.info("Ignoring non-object payment notification")
            return Outcome.IGNORED

        try:
            notification = PaymentNotification.model_validate(payload)
        except SchemaValidationError:
            logger.info("Ignoring malformed payment notification")
            return Outcome.IGNORED

        if not notification.payment_id:
            logger.info(f"Ignoring notification of type {notification.type!r}")
            return Outcome.IGNORED

        return await self.process(notification.payment_id, raw_status=notification.action)

    async def process(
        self,
        payment_id: str,
        raw_status: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Outcome:
        """
        Applies an approved payment exactly once.

        `raw_status` and `metadata` are hints from the notification; the
        gateway lookup is authoritative.

        Raises:
            PaymentLookupFailure: Transient lookup failure (rely on redelivery)
            PersistenceError: Ledger or account storage unavailable
        """
        with LogContext(payment_id=payment_id):
            if await self._ledger.get_payment_event(payment_id):
                logger.info("Duplicate payment notification")
                return Outcome.ALREADY_PROCESSED

            payment = await self._lookup(payment_id)
            if payment is None:
                return Outcome.IGNORED

            if raw_status and raw_status != payment.status:
                logger.debug(f"Notification hint {raw_status!r} differs from status {payment.status!r}")

            if not payment.is_approved:
                logger.info(f"Payment not approved (status={payment.status})")
                return Outcome.IGNORED

            try:
                subscriber = self._validate(payment)
            except InvalidPaymentMetadata as e:
                logger.error(f"Approved payment rejected: {e.message}")
                await self._operator.alert(
                    OPERATOR_INVALID_PAYMENT_ALERT.format(payment_id=payment_id, reason=e.message)
                )
                return Outcome.REJECTED

            user_id = subscriber.telegram_user_id

            with LogContext(user_id=user_id):
                inserted = await self._ledger.insert_payment_event_if_absent(
                    payment_id,
                    {
                        "user_id": user_id,
                        "status": payment.status,
                        "amount": payment.transaction_amount,
                        "currency": payment.currency_id,
                        "applied_at": datetime.utcnow(),
                    },
                )
                if not inserted:
                    logger.info("Concurrent delivery already claimed this payment")
                    return Outcome.ALREADY_PROCESSED

                await self._activate(payment_id, subscriber)
                await self._provision_and_notify(payment_id, subscriber)

            logger.info("Payment applied")
            return Outcome.APPLIED

    async def _lookup(self, payment_id: str) -> Optional[PaymentInfo]:
        try:
            return await self._gateway.get_payment(payment_id)
        except PaymentLookupFailure as e:
            if e.transient:
                raise
            logger.warning(f"Payment lookup permanently failed, ignoring: {e.message}")
            return None

    def _validate(self, payment: PaymentInfo) -> PaymentMetadata:
        """Checks metadata and price once, before anything downstream uses them."""
        try:
            subscriber = PaymentMetadata.model_validate(payment.metadata)
        except SchemaValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise InvalidPaymentMetadata(
                f"metadata invalid or incomplete: {', '.join(fields)}",
                details=fields,
            ) from e

        if (
            self._expected_amount is not None
            and payment.transaction_amount is not None
            and abs(payment.transaction_amount - self._expected_amount) > AMOUNT_TOLERANCE
        ):
            raise InvalidPaymentMetadata(
                f"amount {payment.transaction_amount} does not match {self._expected_amount}"
            )

        if (
            self._expected_currency is not None
            and payment.currency_id is not None
            and payment.currency_id != self._expected_currency
        ):
            raise InvalidPaymentMetadata(
                f"currency {payment.currency_id} does not match {self._expected_currency}"
            )

        return subscriber

    async def _activate(self, payment_id: str, subscriber: PaymentMetadata):
        fields = {
            "status": ACCOUNT_ACTIVE,
            "subscription_ref": payment_id,
            **{f"contact.{key}": value for key, value in subscriber.contact().items()},
        }

        try:
            await self._ledger.upsert_user(subscriber.telegram_user_id, fields)
        except PersistenceError:
            # Nothing user-visible happened yet: give the claim back so a
            # redelivery can apply the payment
            logger.error("Account activation failed, releasing ledger claim")
            try:
                await self._ledger.delete_payment_event(payment_id)
            except PersistenceError:
                await self._operator.alert(
                    OPERATOR_PROVISION_FAILED_ALERT.format(
                        payment_id=payment_id,
                        user_id=subscriber.telegram_user_id,
                        error="account not activated and ledger claim not released",
                    )
                )
            raise

        logger.info("Account activated")

    async def _provision_and_notify(self, payment_id: str, subscriber: PaymentMetadata):
        user_id = subscriber.telegram_user_id
        reconciliation: Dict[str, Any] = {
            "provisioning": None,
            "notified": False,
            "needs_attention": False,
        }

        try:
            result = await self._provisioner.provision(user_id, subscriber.contact())
            reconciliation["provisioning"] = result.kind.value
            if result.needs_delivery:
                text = PAYMENT_APPROVED_INVITE_MESSAGE.format(
                    link=result.invite_link,
                    hours=self._invite_ttl_hours,
                )
            else:
                text = PAYMENT_APPROVED_MESSAGE
        except ProvisionFatalFailure as e:
            logger.error(f"Provisioning failed: {e.message}")
            reconciliation.update(provisioning="failed", needs_attention=True, last_error=e.message)
            await self._operator.alert(
                OPERATOR_PROVISION_FAILED_ALERT.format(payment_id=payment_id, user_id=user_id, error=e.message)
            )
            text = PAYMENT_APPROVED_PENDING_ACCESS_MESSAGE

        try:
            await self._messenger.send_message(user_id, text)
            reconciliation["notified"] = True
        except DeliveryError as e:
            logger.error(f"Approval notification failed: {e.message}")
            reconciliation.update(needs_attention=True, last_error=e.message)
            await self._operator.alert(
                OPERATOR_NOTIFICATION_FAILED_ALERT.format(payment_id=payment_id, user_id=user_id, error=e.message)
            )

        try:
            await self._ledger.update_payment_event(payment_id, reconciliation)
        except PersistenceError as e:
            logger.error(f"Reconciliation state not recorded: {e.message}", extra={"reconciliation": reconciliation})


# Global payment processor instance
_payment_processor: Optional[PaymentEventProcessor] = None


def get_payment_processor() -> PaymentEventProcessor:
    """Get or create the global payment processor."""
    global _payment_processor
    if _payment_processor is None:
        telegram = get_telegram_service()
        _payment_processor = PaymentEventProcessor(
            ledger=get_user_service(),
            gateway=get_mercadopago_service(),
            provisioner=MembershipProvisioner(
                telegram,
                settings.TELEGRAM_GROUP_ID,
                timedelta(hours=settings.INVITE_LINK_TTL_HOURS),
            ),
            messenger=telegram,
            operator=build_operator_service(telegram),
            expected_amount=settings.SUBSCRIPTION_PRICE,
            expected_currency=settings.SUBSCRIPTION_CURRENCY,
            invite_ttl_hours=settings.INVITE_LINK_TTL_HOURS,
        )
    return _payment_processor
