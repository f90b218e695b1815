"""Live RUB/TON exchange rate lookup and fiat-to-TON conversion.

Every call re-fetches the rate. When the price index cannot be reached or
answers with something unusable, the configured fallback rate is used so a
checkout never blocks on the rate source.
"""

import math
from decimal import ROUND_HALF_UP, Decimal

import httpx

from starshop.common.config import ShopSettings
from starshop.common.logging import logger
from starshop.common.metrics import rate_fallback_total

# TON amounts carry at most 9 decimal places (nanotons).
SETTLEMENT_PRECISION = Decimal("0.000000001")


def round_settlement(fiat_amount: float, rate: float) -> float:
    """Divide and round half-up to the settlement currency precision."""

    amount = Decimal(str(fiat_amount)) / Decimal(str(rate))
    return float(amount.quantize(SETTLEMENT_PRECISION, rounding=ROUND_HALF_UP))


class RateConverter:
    """Converts storefront prices into the settlement currency."""

    def __init__(self, settings: ShopSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.transport = transport

    def _fallback(self, reason: str) -> float:
        rate_fallback_total.labels(reason=reason).inc()
        logger.warning(
            "rate_fallback reason=%s fallback_rate=%s",
            reason,
            self.settings.fallback_rate,
        )
        return self.settings.fallback_rate

    async def get_rate(self) -> float:
        """Return fiat units per one settlement unit, or the fallback rate."""

        params = {
            "ids": self.settings.rate_asset_id,
            "vs_currencies": self.settings.fiat_currency,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.rate_timeout_seconds,
                transport=self.transport,
            ) as client:
                resp = await client.get(self.settings.rate_source_url, params=params)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("rate_fetch_failed error=%s", exc)
            return self._fallback("unavailable")

        quote = payload.get(self.settings.rate_asset_id) if isinstance(payload, dict) else None
        rate = quote.get(self.settings.fiat_currency) if isinstance(quote, dict) else None
        if isinstance(rate, bool) or not isinstance(rate, (int, float)) or rate <= 0:
            logger.warning("rate_response_malformed payload=%s", payload)
            return self._fallback("malformed")

        logger.info(
            "rate_fetched asset=%s fiat=%s rate=%s",
            self.settings.rate_asset_id,
            self.settings.fiat_currency,
            rate,
        )
        return float(rate)

    async def convert(self, fiat_amount: float) -> float:
        """Convert a fiat amount into settlement units. Never raises.

        An amount that cannot be converted even at the fallback rate comes
        back as 0.0.
        """

        try:
            if not math.isfinite(fiat_amount):
                raise ValueError("amount is not finite")
            rate = await self.get_rate()
            amount = round_settlement(fiat_amount, rate)
        except (ArithmeticError, ValueError, TypeError) as exc:
            logger.error("rate_conversion_failed amount=%s error=%s", fiat_amount, exc)
            rate = self._fallback("conversion_error")
            try:
                amount = round_settlement(fiat_amount, rate)
            except (ArithmeticError, ValueError, TypeError) as exc:
                logger.error("rate_fallback_conversion_failed amount=%s error=%s", fiat_amount, exc)
                return 0.0
        logger.info(
            "converted fiat_amount=%s %s amount=%s %s rate=%s",
            fiat_amount,
            self.settings.fiat_currency.upper(),
            amount,
            self.settings.settlement_currency,
            rate,
        )
        return amount
