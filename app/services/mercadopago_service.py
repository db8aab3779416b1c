"""
app/services/mercadopago_service.py

Purpose: Mercado Pago integration

- Creates checkout preferences (payment links) carrying user metadata
- Looks up the authoritative state of a payment by id
- Bounded retry with exponential backoff on transient lookup failures
"""

import asyncio
import httpx
from typing import Any, Dict, List, Optional
from app.core.config import settings
from app.core.exceptions import PaymentGatewayError, PaymentLookupFailure
from app.core.logging import get_logger, LogContext
from app.schemas.payment import PaymentInfo

logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


class MercadoPagoService:
    """
    Thin client for the two Mercado Pago calls the bot needs.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token if access_token is not None else settings.MERCADOPAGO_ACCESS_TOKEN
        self.base_url = (base_url or settings.MERCADOPAGO_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self.max_attempts = max_attempts if max_attempts is not None else settings.PAYMENT_LOOKUP_MAX_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else settings.PAYMENT_LOOKUP_RETRY_DELAY_SECONDS
        self._transport = transport

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def create_checkout(self, items: List[Dict[str, Any]], metadata: Dict[str, Any]) -> str:
        """
        Creates a checkout preference and returns its payment URL.

        Args:
            items: Checkout line items
            metadata: Echoed back on the payment (identifies the subscriber)

        Returns:
            `init_point`, or `sandbox_init_point` for test credentials

        Raises:
            PaymentGatewayError: If the preference could not be created
        """
        payload: Dict[str, Any] = {"items": items, "metadata": metadata}

        back_urls = {
            "success": settings.CHECKOUT_SUCCESS_URL,
            "failure": settings.CHECKOUT_FAILURE_URL,
            "pending": settings.CHECKOUT_PENDING_URL,
        }
        back_urls = {key: url for key, url in back_urls.items() if url}
        if back_urls:
            payload["back_urls"] = back_urls
        if settings.MERCADOPAGO_NOTIFICATION_URL:
            payload["notification_url"] = settings.MERCADOPAGO_NOTIFICATION_URL

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/checkout/preferences",
                    json=payload,
                    headers=self._headers,
                )
        except httpx.TimeoutException:
            logger.error("Mercado Pago timeout while creating checkout")
            raise PaymentGatewayError("Payment gateway timed out")
        except httpx.RequestError as e:
            logger.error(f"Network error creating checkout: {e}")
            raise PaymentGatewayError("Unable to reach payment gateway")

        if response.status_code not in (200, 201):
            logger.error(f"❌ Checkout creation failed: {response.status_code} - {response.text[:200]}")
            raise PaymentGatewayError(
                f"Checkout creation failed: {response.status_code}",
                details={"status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"❌ Unreadable checkout response: {response.text[:200]}")
            raise PaymentGatewayError("Unreadable checkout response") from e

        if not isinstance(data, dict):
            raise PaymentGatewayError("Unreadable checkout response")

        link = data.get("init_point") or data.get("sandbox_init_point")
        if not link:
            raise PaymentGatewayError("Checkout response has no payment link")

        logger.info(f"✅ Checkout created: {data.get('id')}")
        return link

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        """
        Fetches the authoritative payment state.

        Timeouts, network errors, 429 and 5xx answers are retried up to
        `max_attempts` times with exponential backoff.

        Raises:
            PaymentLookupFailure: `transient=False` for answers a retry
                cannot fix (unknown id, bad credentials)
        """
        delay = self.retry_delay
        last_error = "no attempt made"

        with LogContext(payment_id=payment_id):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    async with self._client() as client:
                        response = await client.get(
                            f"{self.base_url}/v1/payments/{payment_id}",
                            headers=self._headers,
                        )
                except httpx.TimeoutException:
                    last_error = "timeout"
                except httpx.RequestError as e:
                    last_error = f"network error: {e}"
                else:
                    if response.status_code == 200:
                        return self._parse_payment(payment_id, response)
                    if response.status_code not in TRANSIENT_STATUS_CODES:
                        logger.warning(f"Payment lookup rejected: {response.status_code}")
                        raise PaymentLookupFailure(
                            payment_id,
                            f"Payment lookup rejected: {response.status_code}",
                            transient=False,
                            details={"status_code": response.status_code},
                        )
                    last_error = f"status {response.status_code}"

                logger.warning(f"Payment lookup attempt {attempt}/{self.max_attempts} failed: {last_error}")
                if attempt < self.max_attempts:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff

            logger.error(f"Payment lookup failed after {self.max_attempts} attempts")
            raise PaymentLookupFailure(payment_id, f"Payment lookup failed: {last_error}")

    def _parse_payment(self, payment_id: str, response: httpx.Response) -> PaymentInfo:
        try:
            data = response.json()
            return PaymentInfo(
                id=data.get("id", payment_id),
                status=data.get("status") or "unknown",
                status_detail=data.get("status_detail"),
                metadata=data.get("metadata"),
                transaction_amount=data.get("transaction_amount"),
                currency_id=data.get("currency_id"),
            )
        except ValueError as e:
            # pydantic's ValidationError is a ValueError too
            logger.error(f"Unreadable payment payload: {e}")
            raise PaymentLookupFailure(payment_id, "Unreadable payment payload", transient=False) from e


def subscription_items() -> List[Dict[str, Any]]:
    """The single checkout item sold by the bot."""
    return [
        {
            "title": settings.SUBSCRIPTION_TITLE,
            "quantity": 1,
            "unit_price": settings.SUBSCRIPTION_PRICE,
            "currency_id": settings.SUBSCRIPTION_CURRENCY,
        }
    ]


# Global Mercado Pago service instance
_mercadopago_service: Optional[MercadoPagoService] = None


def get_mercadopago_service() -> MercadoPagoService:
    """Get or create the global Mercado Pago service instance."""
    global _mercadopago_service
    if _mercadopago_service is None:
        _mercadopago_service = MercadoPagoService()
    return _mercadopago_service
