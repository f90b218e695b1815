"""xRocket Pay `tg-invoices` client with retries and error classification.

All gateway-facing failures are converted into result values here; nothing
raises past this boundary. Only transient transport failures (timeouts, refused
or dropped connections, no HTTP response at all) are retried.
"""

import asyncio
import hashlib
import hmac
import json

import httpx

from starshop.common.config import ShopSettings
from starshop.common.logging import logger
from starshop.common.metrics import gateway_requests_total, retries_total
from starshop.services.invoices.schemas import (
    CallbackResult,
    InvoiceResult,
    PaymentRequest,
    PaymentStatus,
    StatusResult,
)
from starshop.services.rates.service import RateConverter

NETWORK_ERROR_MESSAGE = "Network error: check your connection and try again"
AUTH_ERROR_MESSAGE = "Authorization error: invalid API key"
EMPTY_URL_MESSAGE = "Empty payment URL received"
MISSING_URL_MESSAGE = "Gateway did not return a payment URL"


class GatewayError(Exception):
    """Non-retryable gateway failure carrying a user-facing message."""


def map_invoice_status(invoice: dict) -> PaymentStatus:
    """Collapse a gateway invoice into PENDING/PAID/CANCELLED."""

    status = invoice.get("status")
    if status == "active":
        return PaymentStatus.PENDING
    activations = invoice.get("totalActivations")
    if status == "paid" or (isinstance(activations, int) and not isinstance(activations, bool) and activations > 0):
        return PaymentStatus.PAID
    return PaymentStatus.CANCELLED


def _format_amount(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def _body_message(resp: httpx.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str) and message:
            return message
    return None


def _invoices_from_listing(data) -> list:
    # Listings come either as a bare array or paginated under `results`.
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return data["results"]
    return []


class InvoiceClient:
    """Creates and queries gateway invoices."""

    def __init__(
        self,
        settings: ShopSettings,
        rates: RateConverter,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
        service_name: str = "invoice-client",
    ) -> None:
        self.settings = settings
        self.rates = rates
        self.transport = transport
        self.sleep = sleep
        self.service_name = service_name

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Cache-Control": "no-cache, no-store, must-revalidate",
        }
        if self.settings.gateway_api_key:
            headers["Rocket-Pay-Key"] = self.settings.gateway_api_key
        return headers

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.gateway_base_url.rstrip("/"),
            timeout=timeout,
            transport=self.transport,
        )

    def absolute_redirect_url(self, url: str) -> str:
        """Rewrite a relative redirect against the application origin."""

        if url.startswith(("http://", "https://")):
            return url
        origin = self.settings.app_origin.rstrip("/")
        if url.startswith("/"):
            return f"{origin}{url}"
        return f"{origin}/{url}"

    def build_payload(self, request: PaymentRequest, amount: float) -> dict:
        """Gateway body for one `POST /tg-invoices`."""

        fiat = self.settings.fiat_currency.upper()
        return {
            "amount": amount,
            "minPayment": amount,
            "numPayments": 1,
            "currency": self.settings.settlement_currency,
            "description": f"{request.description} ({_format_amount(request.fiat_amount)} {fiat})",
            "hiddenMessage": f"Order #{request.order_id} | {request.customer_identity}",
            "commentsEnabled": False,
            "callbackUrl": self.absolute_redirect_url(request.redirect_url),
            "payload": request.order_id,
            "expiredIn": self.settings.invoice_expiry_minutes,
        }

    async def _with_retries(self, operation: str, send):
        """Run `send(attempt)` and retry transport failures with backoff.

        Re-raises the last `httpx.TransportError` once attempts are exhausted;
        any other exception propagates on the first occurrence.
        """

        max_attempts = self.settings.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await send(attempt)
            except httpx.TransportError as exc:
                gateway_requests_total.labels(operation=operation, outcome="transient").inc()
                if attempt >= max_attempts:
                    logger.error(
                        "gateway retries exhausted operation=%s attempts=%s error=%r",
                        operation,
                        attempt,
                        exc,
                    )
                    raise
                retries_total.labels(service=self.service_name, dependency="gateway").inc()
                # Exponential backoff: 1s, 2s, 4s.
                backoff_seconds = 2 ** (attempt - 1)
                logger.warning(
                    "gateway transient failure operation=%s attempt=%s backoff_s=%s error=%r",
                    operation,
                    attempt,
                    backoff_seconds,
                    exc,
                )
                await self.sleep(backoff_seconds)
        raise RuntimeError("max_attempts must be at least 1")

    def _parse_created(self, resp: httpx.Response) -> tuple[str | None, str]:
        if resp.status_code == 401:
            raise GatewayError(AUTH_ERROR_MESSAGE)
        if resp.is_error:
            raise GatewayError(_body_message(resp) or f"Gateway responded with HTTP {resp.status_code}")
        body = resp.json()
        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            raise GatewayError(message or MISSING_URL_MESSAGE)
        data = body.get("data")
        link = data.get("link") if isinstance(data, dict) else None
        if not isinstance(link, str) or not link.strip():
            raise GatewayError(EMPTY_URL_MESSAGE)
        invoice_id = data.get("id")
        return (str(invoice_id) if invoice_id is not None else None), link.strip()

    async def create_invoice(self, request: PaymentRequest, crypto_amount: float | None = None) -> InvoiceResult:
        """Create one invoice; returns the payment link or a classified error."""

        if crypto_amount is None:
            crypto_amount = await self.rates.convert(request.fiat_amount)
        body = self.build_payload(request, crypto_amount)

        async def send(attempt: int) -> httpx.Response:
            logger.info(
                "invoice create attempt=%s/%s order_id=%s amount=%s",
                attempt,
                self.settings.max_attempts,
                request.order_id,
                crypto_amount,
            )
            async with self._client(self.settings.create_timeout_seconds) as client:
                return await client.post("/tg-invoices", json=body, headers=self._headers())

        try:
            resp = await self._with_retries("create", send)
            invoice_id, link = self._parse_created(resp)
        except httpx.TransportError:
            return InvoiceResult(success=False, error=NETWORK_ERROR_MESSAGE)
        except GatewayError as exc:
            gateway_requests_total.labels(operation="create", outcome="rejected").inc()
            logger.warning("invoice create rejected order_id=%s reason=%s", request.order_id, exc)
            return InvoiceResult(success=False, error=str(exc))
        except Exception as exc:
            gateway_requests_total.labels(operation="create", outcome="error").inc()
            logger.exception("invoice create failed order_id=%s", request.order_id)
            return InvoiceResult(success=False, error=str(exc) or exc.__class__.__name__)

        gateway_requests_total.labels(operation="create", outcome="ok").inc()
        logger.info("invoice created order_id=%s invoice_id=%s", request.order_id, invoice_id)
        return InvoiceResult(success=True, payment_url=link, invoice_id=invoice_id)

    async def query_status(self, order_or_invoice_id: str) -> StatusResult:
        """Look up an invoice by gateway id (digits) or by order payload."""

        key = str(order_or_invoice_id).strip()
        by_invoice_id = key.isdigit()
        path = f"/tg-invoices/{key}" if by_invoice_id else "/tg-invoices"

        async def send(attempt: int) -> httpx.Response:
            logger.info(
                "invoice status attempt=%s/%s key=%s lookup=%s",
                attempt,
                self.settings.max_attempts,
                key,
                "id" if by_invoice_id else "payload",
            )
            async with self._client(self.settings.status_timeout_seconds) as client:
                return await client.get(path, headers=self._headers())

        try:
            resp = await self._with_retries("status", send)
            resp.raise_for_status()
            body = resp.json()
        except httpx.TransportError:
            return StatusResult(status=PaymentStatus.ERROR, success=False)
        except (httpx.HTTPStatusError, ValueError) as exc:
            gateway_requests_total.labels(operation="status", outcome="rejected").inc()
            logger.warning("invoice status rejected key=%s error=%s", key, exc)
            return StatusResult(status=PaymentStatus.ERROR, success=False)

        if not isinstance(body, dict) or not body.get("success") or body.get("data") is None:
            logger.warning("invoice status response without data key=%s body=%s", key, body)
            return StatusResult(status=PaymentStatus.UNKNOWN, success=False)

        data = body["data"]
        if by_invoice_id:
            invoice = data if isinstance(data, dict) else None
        else:
            invoice = next(
                (
                    item
                    for item in _invoices_from_listing(data)
                    if isinstance(item, dict) and item.get("payload") == key
                ),
                None,
            )
        if invoice is None:
            logger.info("invoice not found key=%s", key)
            return StatusResult(status=PaymentStatus.UNKNOWN, success=False)

        status = map_invoice_status(invoice)
        invoice_id = invoice.get("id")
        gateway_requests_total.labels(operation="status", outcome="ok").inc()
        logger.info("invoice status key=%s status=%s", key, status.value)
        return StatusResult(
            status=status,
            success=True,
            invoice_id=str(invoice_id) if invoice_id is not None else None,
        )

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        """Webhook signature stub: HMAC-SHA256 when a secret is configured."""

        secret = self.settings.webhook_secret
        if not secret:
            logger.warning("webhook signature not checked: no webhook secret configured")
            return True
        if not signature:
            return False
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "surrogateescape"))

    def process_callback(self, body: bytes, signature: str | None) -> CallbackResult:
        """Acknowledge a gateway webhook. Orders are not persisted."""

        if not self.verify_signature(body, signature):
            return CallbackResult(success=False, message="Invalid signature")
        try:
            event = json.loads(body or b"{}")
        except ValueError:
            return CallbackResult(success=False, message="Malformed callback body")
        data = event.get("data") if isinstance(event, dict) and isinstance(event.get("data"), dict) else event
        if not isinstance(data, dict):
            return CallbackResult(success=False, message="Malformed callback body")
        payload = data.get("payload")
        status = data.get("status")
        amount = data.get("amount")
        logger.info("webhook received payload=%s status=%s amount=%s", payload, status, amount)
        return CallbackResult(
            success=True,
            message=f"Callback processed: payment {payload} for {amount} has status {status}",
        )
