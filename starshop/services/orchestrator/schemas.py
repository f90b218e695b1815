"""Cart, checkout and payment-state schemas for the orchestrator."""

from pydantic import BaseModel, Field


class Product(BaseModel):
    """One stars bundle from the catalog."""

    id: int
    title: str
    description: str = ""
    price: int = Field(ge=0)
    stars: int = Field(gt=0)


class CartItem(BaseModel):
    product: Product
    quantity: int = Field(ge=1)


class Cart(BaseModel):
    """Cart snapshot handed over by the front end at checkout."""

    items: list[CartItem] = Field(default_factory=list)
    total_price: float = Field(ge=0, allow_inf_nan=False)


class CheckoutRequest(BaseModel):
    """Payload accepted by `POST /checkout`."""

    cart: Cart
    telegram_username: str = ""


class PaymentState(BaseModel):
    """Current checkout state exposed to callers."""

    order_id: str | None = None
    invoice_id: str | None = None
    payment_url: str | None = None
    error: str | None = None
    is_loading: bool = False
    phase: str = "IDLE"
