"""Checkout orchestration for one Mini App session.

Validates the buyer's Telegram handle, converts the cart total, creates the
gateway invoice, and keeps the resulting payment state. Phase changes go
through `validate_transition`. Responses that arrive after the tracked order
changed (reset, or a newer checkout) are dropped.
"""

import asyncio
import random
import time
from urllib.parse import urlencode

from starshop.common.config import ShopSettings
from starshop.common.logging import logger, order_id_ctx
from starshop.common.metrics import payment_initiations_total
from starshop.common.state_machine import validate_transition
from starshop.services.invoices.schemas import (
    TERMINAL_STATUSES,
    IdentityValidationError,
    PaymentRequest,
    PaymentStatus,
    StatusResult,
    normalize_identity,
)
from starshop.services.invoices.service import InvoiceClient
from starshop.services.orchestrator.schemas import Cart, PaymentState
from starshop.services.rates.service import RateConverter
from starshop.services.redirect.service import normalize_url

UNKNOWN_ERROR_MESSAGE = "Unknown error while creating the payment"
CONVERSION_ERROR_MESSAGE = "Could not convert the order amount"


class PaymentOrchestrator:
    """Owns the payment state of one checkout session."""

    def __init__(
        self,
        settings: ShopSettings,
        rates: RateConverter,
        invoices: InvoiceClient,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.rates = rates
        self.invoices = invoices
        self.sleep = sleep
        self.state = PaymentState()

    @staticmethod
    def generate_order_id() -> str:
        return f"order_{int(time.time() * 1000)}_{random.randint(0, 999)}"

    def build_redirect_url(self, order_id: str) -> str:
        """Return URL the gateway sends the buyer back to."""

        origin = self.settings.app_origin.rstrip("/")
        return f"{origin}/payment/success?{urlencode({'orderId': order_id})}"

    def snapshot(self) -> PaymentState:
        return self.state.model_copy()

    def resolve_correlation_key(self) -> str | None:
        """Invoice id when known, else the order id."""

        return self.state.invoice_id or self.state.order_id

    def _transition(self, new_phase: str) -> None:
        validate_transition(self.state.phase, new_phase)
        self.state.phase = new_phase

    def _is_current(self, order_id: str) -> bool:
        return self.state.order_id == order_id

    def _reject(self, message: str, outcome: str) -> PaymentState:
        self._transition("IDLE")
        self.state.error = message
        payment_initiations_total.labels(outcome=outcome).inc()
        logger.info("checkout rejected outcome=%s reason=%s", outcome, message)
        return self.snapshot()

    def _fail(self, message: str) -> None:
        # The order id is discarded so a retry starts from a fresh one.
        self._transition("IDLE")
        self.state.order_id = None
        self.state.invoice_id = None
        self.state.error = message
        self.state.is_loading = False
        payment_initiations_total.labels(outcome="failed").inc()

    def _drop_stale(self, order_id: str) -> PaymentState:
        logger.info(
            "stale checkout response dropped order_id=%s current_order_id=%s",
            order_id,
            self.state.order_id,
        )
        return self.snapshot()

    async def initiate(self, cart: Cart, identity: str | None) -> PaymentState:
        """Start a checkout for `cart`; returns the resulting state.

        While a checkout is in flight further calls return the in-flight state
        without touching the network.
        """

        if self.state.is_loading:
            logger.warning("checkout already in flight order_id=%s", self.state.order_id)
            return self.snapshot()

        self._transition("VALIDATING")
        self.state = PaymentState(phase="VALIDATING")
        try:
            handle = normalize_identity(identity)
        except IdentityValidationError as exc:
            return self._reject(str(exc), "invalid_identity")
        if cart.total_price <= 0:
            return self._reject("Cart is empty", "empty_cart")

        order_id = self.generate_order_id()
        self.state = PaymentState(order_id=order_id, is_loading=True, phase="VALIDATING")
        token = order_id_ctx.set(order_id)
        try:
            request = PaymentRequest(
                order_id=order_id,
                fiat_amount=cart.total_price,
                description=f"Payment for order {order_id}",
                customer_identity=handle,
                redirect_url=self.build_redirect_url(order_id),
            )
            logger.info("checkout started order_id=%s amount=%s", order_id, cart.total_price)

            self._transition("CONVERTING")
            amount = await self.rates.convert(cart.total_price)
            if not self._is_current(order_id):
                return self._drop_stale(order_id)
            if amount <= 0:
                self._fail(CONVERSION_ERROR_MESSAGE)
                logger.warning("checkout failed order_id=%s error=%s", order_id, self.state.error)
                return self.snapshot()

            self._transition("REQUESTING")
            result = await self.invoices.create_invoice(request, crypto_amount=amount)
            if not self._is_current(order_id):
                return self._drop_stale(order_id)

            if result.success and result.payment_url:
                self.state.payment_url = normalize_url(result.payment_url)
                self.state.invoice_id = result.invoice_id
                self.state.is_loading = False
                self._transition("HAS_URL")
                payment_initiations_total.labels(outcome="created").inc()
                logger.info("checkout ready order_id=%s invoice_id=%s", order_id, result.invoice_id)
            else:
                self._fail(result.error or UNKNOWN_ERROR_MESSAGE)
                logger.warning("checkout failed order_id=%s error=%s", order_id, self.state.error)
        except Exception as exc:
            logger.exception("checkout crashed order_id=%s", order_id)
            if self._is_current(order_id):
                self._fail(str(exc) or UNKNOWN_ERROR_MESSAGE)
        finally:
            order_id_ctx.reset(token)
        return self.snapshot()

    async def check_status(self, order_id: str | None = None) -> StatusResult:
        """Query the gateway for the tracked order, or for `order_id`."""

        requested = (order_id or "").strip() or None
        if requested is None or requested == self.state.order_id:
            key = self.resolve_correlation_key()
        else:
            key = requested
        if not key:
            return StatusResult(status=PaymentStatus.UNKNOWN, success=False)

        result = await self.invoices.query_status(key)
        if (
            result.success
            and result.invoice_id
            and self.state.invoice_id is None
            and key == self.state.order_id
        ):
            self.state.invoice_id = result.invoice_id
        return result

    async def poll_status(
        self,
        order_id: str | None = None,
        interval: float | None = None,
        max_checks: int | None = None,
    ) -> StatusResult:
        """Repeat `check_status` until PAID/CANCELLED or the budget runs out."""

        interval = self.settings.status_poll_interval_seconds if interval is None else interval
        max_checks = self.settings.status_poll_max_checks if max_checks is None else max_checks
        result = StatusResult(status=PaymentStatus.UNKNOWN, success=False)
        for check in range(1, max_checks + 1):
            result = await self.check_status(order_id)
            if result.status in TERMINAL_STATUSES:
                return result
            if check < max_checks:
                await self.sleep(interval)
        logger.info("status polling ended without terminal state status=%s", result.status.value)
        return result

    def reset(self) -> None:
        if self.state.order_id:
            logger.info("checkout reset order_id=%s", self.state.order_id)
        self.state = PaymentState()
