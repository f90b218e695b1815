"""Stars bundles on sale and cart total arithmetic."""

import math

from starshop.services.orchestrator.schemas import Cart, CartItem, Product

RUB_PER_STAR = 1.5
CUSTOM_BUNDLE_ID = 6


def price_for_stars(stars: int) -> int:
    """Checkout price in RUB for a number of stars, rounded up."""

    return math.ceil(stars * RUB_PER_STAR)


BUNDLES = [
    (1, 50, "Starter pack"),
    (2, 100, "Popular choice"),
    (3, 250, "Best value"),
    (4, 500, "For regulars"),
    (5, 1000, "Maximum pack"),
]

PRODUCTS: list[Product] = [
    Product(
        id=product_id,
        title=f"{stars} Telegram Stars",
        description=description,
        price=price_for_stars(stars),
        stars=stars,
    )
    for product_id, stars, description in BUNDLES
]


def custom_bundle(stars: int) -> Product:
    """Bundle with a user-chosen number of stars."""

    return Product(
        id=CUSTOM_BUNDLE_ID,
        title=f"{stars} Telegram Stars",
        description="Custom amount",
        price=price_for_stars(stars),
        stars=stars,
    )


def calculate_total_price(items: list[CartItem]) -> int:
    return sum(price_for_stars(item.product.stars) * item.quantity for item in items)


def build_cart(items: list[CartItem]) -> Cart:
    return Cart(items=items, total_price=calculate_total_price(items))


def find_product(product_id: int) -> Product | None:
    return next((product for product in PRODUCTS if product.id == product_id), None)
