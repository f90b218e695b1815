"""Same-origin reverse proxy for the xRocket Pay `tg-invoices` API.

The browser never sees the gateway key: the proxy attaches it server-side and
replays the upstream status code and body verbatim.
"""

from time import perf_counter

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from starshop.common.config import ShopSettings, get_settings
from starshop.common.logging import configure_logging, logger
from starshop.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
)
from starshop.common.startup import log_startup_config
from starshop.common.tracing import instrument_app

UPSTREAM_ERROR_MESSAGE = "Error while calling the Rocket Pay API"


def _replay(resp: httpx.Response) -> Response:
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type=resp.headers.get("content-type", "application/json"),
    )


def create_app(
    settings: ShopSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the proxy app; `transport` lets tests stand in for the gateway."""

    settings = settings or get_settings()
    configure_logging(settings)
    log_startup_config(
        settings,
        ["upstream_api_url", "upstream_api_key", "proxy_timeout_seconds", "tracing_enabled"],
    )
    upstream = settings.upstream_api_url.rstrip("/")
    app = FastAPI(title="StarShop Rocket Pay Proxy")
    instrument_app(app, settings)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    async def forward(method: str, path: str, body: bytes | None = None, query: str = "") -> Response:
        if not settings.upstream_api_key:
            logger.error("proxy upstream key not configured")
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Rocket Pay API key is not configured"},
            )
        url = f"{upstream}{path}"
        if query:
            url = f"{url}?{query}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Rocket-Pay-Key": settings.upstream_api_key,
        }
        logger.info("proxy forwarding method=%s url=%s", method, url)
        try:
            async with httpx.AsyncClient(timeout=settings.proxy_timeout_seconds, transport=transport) as client:
                resp = await client.request(method, url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("proxy upstream unreachable method=%s url=%s error=%r", method, url, exc)
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "message": UPSTREAM_ERROR_MESSAGE,
                    "error": str(exc) or exc.__class__.__name__,
                },
            )
        if resp.status_code == 404:
            logger.error("proxy upstream 404 url=%s; check UPSTREAM_API_URL", url)
        elif resp.is_error:
            logger.warning("proxy upstream error status=%s url=%s", resp.status_code, url)
        return _replay(resp)

    @app.post("/api/tg-invoices")
    async def create_invoice(request: Request):
        """Forward invoice creation with the gateway key attached."""

        return await forward("POST", "/tg-invoices", await request.body())

    @app.get("/api/tg-invoices")
    async def list_invoices(request: Request):
        """Forward the invoice listing, keeping any filter query."""

        return await forward("GET", "/tg-invoices", query=request.url.query)

    @app.get("/api/tg-invoices/{invoice_id}")
    async def get_invoice(invoice_id: str):
        """Forward a single invoice lookup."""

        return await forward("GET", f"/tg-invoices/{invoice_id}")

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
