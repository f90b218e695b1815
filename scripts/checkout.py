"""Buy a stars bundle from the terminal and open the payment page.

Useful for exercising the gateway against a real xRocket Pay key without the
Mini App front end.
"""

import argparse
import asyncio
import webbrowser

from starshop.common.config import get_settings
from starshop.common.logging import configure_logging
from starshop.services.invoices.service import InvoiceClient
from starshop.services.orchestrator.catalog import PRODUCTS, build_cart, custom_bundle, find_product
from starshop.services.orchestrator.schemas import CartItem
from starshop.services.orchestrator.service import PaymentOrchestrator
from starshop.services.rates.service import RateConverter
from starshop.services.redirect.service import HostCapabilities, RedirectStrategy


async def run(product_id: int | None, stars: int | None, quantity: int, username: str, wait: bool) -> int:
    """Create the invoice, open it, optionally wait for a terminal status."""

    settings = get_settings()
    configure_logging(settings)
    rates = RateConverter(settings)
    orchestrator = PaymentOrchestrator(settings, rates, InvoiceClient(settings, rates))

    product = custom_bundle(stars) if stars else find_product(product_id)
    if product is None:
        raise SystemExit(f"Unknown product id {product_id}; choose from {[p.id for p in PRODUCTS]}")
    cart = build_cart([CartItem(product=product, quantity=quantity)])

    state = await orchestrator.initiate(cart, username)
    if state.error or not state.payment_url:
        print(f"error={state.error}")
        return 1
    print(f"order_id={state.order_id}")
    print(f"invoice_id={state.invoice_id}")
    print(f"payment_url={state.payment_url}")

    host = HostCapabilities(open_window=webbrowser.open_new_tab, navigate=webbrowser.open)
    if not RedirectStrategy.for_host(host).redirect(state.payment_url):
        print("Open the payment URL manually.")

    if wait:
        result = await orchestrator.poll_status()
        print(f"status={result.status.value}")
        return 0 if result.status.value == "PAID" else 2
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a stars checkout and open its payment page.")
    parser.add_argument("--username", required=True, help="Telegram username receiving the stars")
    parser.add_argument("--product-id", type=int, default=1)
    parser.add_argument("--stars", type=int, default=None, help="Custom number of stars instead of a bundle")
    parser.add_argument("--quantity", type=int, default=1)
    parser.add_argument("--wait", action="store_true", help="Poll until the invoice is paid or cancelled")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run(args.product_id, args.stars, args.quantity, args.username, args.wait)))


if __name__ == "__main__":
    main()
