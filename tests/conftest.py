"""Shared fakes: settings, recorded HTTP endpoints, instant backoff sleeps."""

import httpx
import pytest

from starshop.common.config import ShopSettings


class FakeEndpoint:
    """Replays scripted outcomes through `httpx.MockTransport` and records calls.

    Each outcome is an `httpx.Response` or an exception to raise. The last
    outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome.status_code, headers=outcome.headers, content=outcome.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def make_settings():
    def factory(**overrides) -> ShopSettings:
        values = {
            "app_origin": "https://shop.test",
            "gateway_base_url": "https://gw.test/api",
            "rate_source_url": "https://rates.test/simple/price",
            "tracing_enabled": False,
        }
        values.update(overrides)
        return ShopSettings(_env_file=None, **values)

    return factory


@pytest.fixture
def settings(make_settings) -> ShopSettings:
    return make_settings()


@pytest.fixture
def endpoint():
    """Factory for `FakeEndpoint` instances."""

    return FakeEndpoint


@pytest.fixture
def rate_source(endpoint):
    """Price index answering 350 RUB per TON."""

    return endpoint(httpx.Response(200, json={"the-open-network": {"rub": 350}}))


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep
