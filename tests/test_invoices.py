"""Invoice client: payload shape, retry bounds, error classification, status lookup."""

import asyncio
import hashlib
import hmac
import json

import httpx
import pytest
from pydantic import ValidationError

from starshop.services.invoices.schemas import PaymentRequest, PaymentStatus
from starshop.services.invoices.service import (
    AUTH_ERROR_MESSAGE,
    EMPTY_URL_MESSAGE,
    NETWORK_ERROR_MESSAGE,
    InvoiceClient,
    map_invoice_status,
)
from starshop.services.rates.service import RateConverter

CREATED = httpx.Response(
    201,
    json={"success": True, "data": {"id": 123, "link": "https://t.me/xrocket?start=inv_abc"}},
)


def payment_request(**overrides) -> PaymentRequest:
    values = {
        "order_id": "order_1700000000000_42",
        "fiat_amount": 1000,
        "description": "Payment for order order_1700000000000_42",
        "customer_identity": "good_user1",
        "redirect_url": "https://shop.test/payment/success?orderId=order_1700000000000_42",
    }
    values.update(overrides)
    return PaymentRequest(**values)


def make_client(settings, rate_source, gateway, fake_sleep) -> InvoiceClient:
    rates = RateConverter(settings, transport=rate_source.transport)
    return InvoiceClient(settings, rates, transport=gateway.transport, sleep=fake_sleep)


def test_create_invoice_builds_gateway_payload(settings, rate_source, endpoint, fake_sleep):
    """1000 RUB at 350 RUB/TON becomes 2.857142857 TON."""

    gateway = endpoint(CREATED)
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert result.success is True
    assert result.payment_url == "https://t.me/xrocket?start=inv_abc"
    assert result.invoice_id == "123"
    assert gateway.calls == 1
    sent = gateway.requests[0]
    assert sent.method == "POST"
    assert sent.url.path == "/api/tg-invoices"
    body = json.loads(sent.content)
    assert body["amount"] == 2.857142857
    assert body["minPayment"] == 2.857142857
    assert body["numPayments"] == 1
    assert body["currency"] == "TONCOIN"
    assert body["commentsEnabled"] is False
    assert body["payload"] == "order_1700000000000_42"
    assert body["expiredIn"] == 30
    assert body["description"] == "Payment for order order_1700000000000_42 (1000 RUB)"
    assert "good_user1" in body["hiddenMessage"]
    assert body["callbackUrl"] == "https://shop.test/payment/success?orderId=order_1700000000000_42"


def test_precomputed_amount_skips_rate_lookup(settings, rate_source, endpoint, fake_sleep):
    """An amount converted by the caller is sent as-is without a rate lookup."""

    gateway = endpoint(CREATED)
    client = make_client(settings, rate_source, gateway, fake_sleep)

    asyncio.run(client.create_invoice(payment_request(), crypto_amount=1.5))

    assert rate_source.calls == 0
    assert json.loads(gateway.requests[0].content)["amount"] == 1.5


def test_relative_redirect_is_made_absolute(settings, rate_source, endpoint, fake_sleep):
    """Relative return URLs are resolved against the app origin."""

    gateway = endpoint(CREATED)
    client = make_client(settings, rate_source, gateway, fake_sleep)

    asyncio.run(client.create_invoice(payment_request(redirect_url="/payment/success?orderId=x")))
    asyncio.run(client.create_invoice(payment_request(redirect_url="payment/success")))

    assert json.loads(gateway.requests[0].content)["callbackUrl"] == "https://shop.test/payment/success?orderId=x"
    assert json.loads(gateway.requests[1].content)["callbackUrl"] == "https://shop.test/payment/success"


def test_api_key_header_only_when_configured(make_settings, rate_source, endpoint, fake_sleep):
    """The gateway key header is sent only when a key is configured."""

    gateway = endpoint(CREATED)
    asyncio.run(make_client(make_settings(), rate_source, gateway, fake_sleep).create_invoice(payment_request()))
    asyncio.run(
        make_client(make_settings(gateway_api_key="secret"), rate_source, gateway, fake_sleep).create_invoice(
            payment_request()
        )
    )

    assert "rocket-pay-key" not in gateway.requests[0].headers
    assert gateway.requests[1].headers["rocket-pay-key"] == "secret"


def test_three_transient_failures_make_exactly_three_attempts(settings, rate_source, endpoint, fake_sleep, sleeps):
    """Persistent transport errors stop after three attempts with 1s and 2s backoff."""

    gateway = endpoint(httpx.ConnectTimeout("timed out"))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert gateway.calls == 3
    assert result.success is False
    assert result.error == NETWORK_ERROR_MESSAGE
    assert sleeps == [1, 2]


def test_transient_failure_then_success(settings, rate_source, endpoint, fake_sleep, sleeps):
    """A dropped connection is retried once and then succeeds."""

    gateway = endpoint(httpx.RemoteProtocolError("connection dropped"), CREATED)
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert result.success is True
    assert gateway.calls == 2
    assert sleeps == [1]


def test_unauthorized_is_not_retried(settings, rate_source, endpoint, fake_sleep, sleeps):
    """A 401 maps to the auth message on the first attempt."""

    gateway = endpoint(httpx.Response(401, json={"success": False, "message": "Unauthorized"}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert gateway.calls == 1
    assert result.success is False
    assert result.error == AUTH_ERROR_MESSAGE
    assert sleeps == []


@pytest.mark.parametrize(
    "data",
    [
        {"id": 5, "link": ""},
        {"id": 5, "link": "   "},
        {"id": 5},
        None,
    ],
)
def test_success_without_link_reports_empty_url(settings, rate_source, endpoint, fake_sleep, data):
    """A success body without a usable link is reported as an empty URL."""

    gateway = endpoint(httpx.Response(200, json={"success": True, "data": data}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert gateway.calls == 1
    assert result.error == EMPTY_URL_MESSAGE


def test_unsuccessful_body_surfaces_gateway_message(settings, rate_source, endpoint, fake_sleep):
    """The gateway's own message is surfaced for an unsuccessful body."""

    gateway = endpoint(httpx.Response(200, json={"success": False, "message": "Amount too small"}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert result.error == "Amount too small"
    assert gateway.calls == 1


def test_server_error_with_response_is_not_retried(settings, rate_source, endpoint, fake_sleep):
    """An HTTP 500 with a body is an answer, not a transient failure."""

    gateway = endpoint(httpx.Response(500, json={"success": False, "message": "Internal failure"}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert gateway.calls == 1
    assert result.error == "Internal failure"


def test_unclassified_error_keeps_raw_message(settings, rate_source, endpoint, fake_sleep):
    """Unexpected errors keep their raw message."""

    gateway = endpoint(RuntimeError("certificate store unavailable"))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.create_invoice(payment_request()))

    assert gateway.calls == 1
    assert result.error == "certificate store unavailable"


def test_numeric_status_key_looks_up_single_invoice(settings, rate_source, endpoint, fake_sleep):
    """A numeric key fetches the invoice directly."""

    gateway = endpoint(
        httpx.Response(200, json={"success": True, "data": {"id": 42, "status": "paid", "payload": "order_x"}})
    )
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.query_status("42"))

    assert gateway.calls == 1
    assert gateway.requests[0].method == "GET"
    assert gateway.requests[0].url.path == "/api/tg-invoices/42"
    assert result.status == PaymentStatus.PAID
    assert result.success is True
    assert result.invoice_id == "42"


def test_order_status_key_filters_listing_by_payload(settings, rate_source, endpoint, fake_sleep):
    """An order id key is matched against invoice payloads in the listing."""

    listing = [
        {"id": 1, "status": "paid", "payload": "order_other"},
        {"id": 2, "status": "active", "payload": "order_1700000000000_42"},
    ]
    gateway = endpoint(httpx.Response(200, json={"success": True, "data": listing}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.query_status("order_1700000000000_42"))

    assert gateway.calls == 1
    assert gateway.requests[0].url.path == "/api/tg-invoices"
    assert result.status == PaymentStatus.PENDING
    assert result.invoice_id == "2"


def test_paginated_listing_is_searched(settings, rate_source, endpoint, fake_sleep):
    """Listings wrapped in a results page are searched too."""

    data = {"total": 1, "results": [{"id": 9, "status": "expired", "payload": "order_a"}]}
    gateway = endpoint(httpx.Response(200, json={"success": True, "data": data}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.query_status("order_a"))

    assert result.status == PaymentStatus.CANCELLED


def test_missing_invoice_is_unknown(settings, rate_source, endpoint, fake_sleep):
    """No matching invoice yields an unknown status."""

    gateway = endpoint(httpx.Response(200, json={"success": True, "data": []}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.query_status("order_missing"))

    assert result.status == PaymentStatus.UNKNOWN
    assert result.success is False


def test_status_retries_transient_failures(settings, rate_source, endpoint, fake_sleep, sleeps):
    """Status lookups share the create retry budget."""

    gateway = endpoint(httpx.ReadTimeout("slow"))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.query_status("77"))

    assert gateway.calls == 3
    assert sleeps == [1, 2]
    assert result.status == PaymentStatus.ERROR
    assert result.success is False


def test_status_http_error_is_not_retried(settings, rate_source, endpoint, fake_sleep):
    """An HTTP error on a lookup is reported once as an error status."""

    gateway = endpoint(httpx.Response(404, json={"success": False}))
    client = make_client(settings, rate_source, gateway, fake_sleep)

    result = asyncio.run(client.query_status("77"))

    assert gateway.calls == 1
    assert result.status == PaymentStatus.ERROR


@pytest.mark.parametrize(
    ("invoice", "expected"),
    [
        ({"status": "active"}, PaymentStatus.PENDING),
        ({"status": "active", "totalActivations": 0}, PaymentStatus.PENDING),
        ({"status": "paid"}, PaymentStatus.PAID),
        ({"status": "completed", "totalActivations": 1}, PaymentStatus.PAID),
        ({"status": "expired"}, PaymentStatus.CANCELLED),
        ({"status": "expired", "totalActivations": 0}, PaymentStatus.CANCELLED),
        ({"status": "something-new"}, PaymentStatus.CANCELLED),
        ({}, PaymentStatus.CANCELLED),
    ],
)
def test_status_mapping(invoice, expected):
    """Gateway statuses collapse onto PENDING, PAID or CANCELLED."""

    assert map_invoice_status(invoice) == expected


def test_callback_accepted_without_secret(settings, rate_source, endpoint, fake_sleep):
    """Without a webhook secret callbacks are acknowledged unchecked."""

    client = make_client(settings, rate_source, endpoint(CREATED), fake_sleep)
    body = json.dumps({"type": "invoicePay", "data": {"payload": "order_a", "status": "paid", "amount": 2.5}})

    result = client.process_callback(body.encode(), None)

    assert result.success is True
    assert "order_a" in result.message
    assert "paid" in result.message


def test_callback_signature_checked_when_secret_set(make_settings, rate_source, endpoint, fake_sleep):
    """With a secret only the matching HMAC is accepted."""

    client = make_client(make_settings(webhook_secret="hook-secret"), rate_source, endpoint(CREATED), fake_sleep)
    body = b'{"payload": "order_a", "status": "paid", "amount": 1}'
    good = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()

    assert client.process_callback(body, good).success is True
    assert client.process_callback(body, "deadbeef").success is False
    assert client.process_callback(body, None).success is False


def test_non_ascii_signature_is_invalid(make_settings, rate_source, endpoint, fake_sleep):
    """A signature that is not a hex digest is refused without raising."""

    client = make_client(make_settings(webhook_secret="hook-secret"), rate_source, endpoint(CREATED), fake_sleep)

    assert client.verify_signature(b"{}", "\xe9abc") is False
    assert client.process_callback(b"{}", "\udce9abc").success is False


@pytest.mark.parametrize("identity", ["", "   ", "@"])
def test_blank_identity_is_rejected_by_request(identity):
    """Invoice requests cannot be built without a Telegram username."""

    with pytest.raises(ValidationError):
        payment_request(customer_identity=identity)


@pytest.mark.parametrize("amount", [float("inf"), float("nan")])
def test_non_finite_amount_is_rejected_by_request(amount):
    """Invoice requests need a finite fiat amount."""

    with pytest.raises(ValidationError):
        payment_request(fiat_amount=amount)
