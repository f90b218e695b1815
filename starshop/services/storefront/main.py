"""HTTP surface the Mini App front end talks to.

Each Telegram user gets their own `PaymentOrchestrator`, keyed by the
`X-Telegram-User-Id` header. State lives in process memory only.
"""

import asyncio
from collections import OrderedDict
from uuid import uuid4

import httpx
from fastapi import FastAPI, Header, HTTPException, Query, Request

from starshop.common.config import ShopSettings, get_settings
from starshop.common.logging import configure_logging, logger, trace_id_ctx
from starshop.common.metrics import metrics_response
from starshop.common.startup import log_startup_config
from starshop.common.tracing import instrument_app
from starshop.services.invoices.schemas import CallbackResult, StatusResult
from starshop.services.invoices.service import InvoiceClient
from starshop.services.orchestrator.catalog import PRODUCTS, build_cart
from starshop.services.orchestrator.schemas import CheckoutRequest, PaymentState, Product
from starshop.services.orchestrator.service import PaymentOrchestrator
from starshop.services.rates.service import RateConverter


class SessionRegistry:
    """Lazily creates one orchestrator per session key.

    Holds at most `max_sessions` entries. When full, the least recently used
    session without a checkout in flight is evicted.
    """

    def __init__(self, factory, max_sessions: int) -> None:
        self.factory = factory
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, PaymentOrchestrator] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> PaymentOrchestrator:
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return self._sessions[session_id]
        self._evict()
        orchestrator = self._sessions[session_id] = self.factory()
        return orchestrator

    def _evict(self) -> None:
        while len(self._sessions) >= self.max_sessions:
            idle = next(
                (key for key, orchestrator in self._sessions.items() if not orchestrator.state.is_loading),
                None,
            )
            if idle is None:
                # Every session is mid-checkout; let the map grow past the cap.
                return
            del self._sessions[idle]
            logger.info("session evicted session_id=%s sessions=%s", idle, len(self._sessions))


def create_app(
    settings: ShopSettings | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
    rate_transport: httpx.AsyncBaseTransport | None = None,
    sleep=asyncio.sleep,
) -> FastAPI:
    """Wire settings, clients and per-user orchestrators into one app."""

    settings = settings or get_settings()
    configure_logging(settings)
    log_startup_config(
        settings,
        ["app_origin", "gateway_base_url", "gateway_api_key", "rate_source_url", "webhook_secret"],
    )
    rates = RateConverter(settings, transport=rate_transport)
    invoices = InvoiceClient(settings, rates, transport=gateway_transport, sleep=sleep)
    registry = SessionRegistry(
        lambda: PaymentOrchestrator(settings, rates, invoices, sleep=sleep),
        max_sessions=settings.max_sessions,
    )

    app = FastAPI(title="StarShop Storefront")
    app.state.sessions = registry
    instrument_app(app, settings)

    def session(x_telegram_user_id: str | None, x_trace_id: str | None) -> PaymentOrchestrator:
        trace_id_ctx.set(x_trace_id or str(uuid4()))
        return registry.get(x_telegram_user_id or "anonymous")

    @app.get("/products", response_model=list[Product])
    def products():
        """Stars bundles on sale."""

        return PRODUCTS

    @app.post("/checkout", response_model=PaymentState)
    async def checkout(
        req: CheckoutRequest,
        x_telegram_user_id: str | None = Header(default=None),
        x_trace_id: str | None = Header(default=None),
    ):
        """Create an invoice for the cart; errors are reported in the state.

        The total is recomputed from the items; the client-sent total is ignored.
        """

        orchestrator = session(x_telegram_user_id, x_trace_id)
        cart = build_cart(req.cart.items)
        if cart.total_price != req.cart.total_price:
            logger.warning(
                "cart total mismatch client_total=%s server_total=%s",
                req.cart.total_price,
                cart.total_price,
            )
        return await orchestrator.initiate(cart, req.telegram_username)

    @app.get("/checkout", response_model=PaymentState)
    def current_checkout(
        x_telegram_user_id: str | None = Header(default=None),
        x_trace_id: str | None = Header(default=None),
    ):
        return session(x_telegram_user_id, x_trace_id).snapshot()

    @app.post("/checkout/reset", response_model=PaymentState)
    def reset_checkout(
        x_telegram_user_id: str | None = Header(default=None),
        x_trace_id: str | None = Header(default=None),
    ):
        orchestrator = session(x_telegram_user_id, x_trace_id)
        orchestrator.reset()
        return orchestrator.snapshot()

    @app.get("/checkout/status", response_model=StatusResult)
    async def checkout_status(
        order_id: str | None = Query(default=None, alias="orderId"),
        x_telegram_user_id: str | None = Header(default=None),
        x_trace_id: str | None = Header(default=None),
    ):
        """Status of the tracked order, or of `orderId` when given."""

        return await session(x_telegram_user_id, x_trace_id).check_status(order_id)

    @app.get("/payment/success", response_model=StatusResult)
    async def payment_success(
        order_id: str | None = Query(default=None, alias="orderId"),
        x_telegram_user_id: str | None = Header(default=None),
        x_trace_id: str | None = Header(default=None),
    ):
        """Landing target of the gateway redirect; reads the order id back."""

        if not order_id:
            raise HTTPException(status_code=400, detail="orderId is required")
        return await session(x_telegram_user_id, x_trace_id).check_status(order_id)

    @app.post("/webhooks/rocket-pay", response_model=CallbackResult)
    async def rocket_pay_webhook(
        request: Request,
        rocket_pay_signature: str | None = Header(default=None),
    ):
        """Acknowledge gateway payment notifications."""

        result = invoices.process_callback(await request.body(), rocket_pay_signature)
        if not result.success:
            raise HTTPException(status_code=400, detail=result.message)
        return result

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
