from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from backchannel.core.models.authorization import utcnow


class Product(BaseModel):
    product_id: str
    name: str
    description: str = ""
    price: float = Field(ge=0.0)


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


class Cart(BaseModel):
    user_id: str
    items: list[CartItem] = Field(default_factory=list)


class CheckoutLine(BaseModel):
    """Priced cart line frozen into an authorization request."""

    product_id: str
    name: str
    unit_price: float
    quantity: int
    subtotal: float


class CheckoutSnapshot(BaseModel):
    items: list[CheckoutLine] = Field(default_factory=list)
    total: float = 0.0

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.items)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CheckoutSnapshot:
        return cls.model_validate(payload)


class Order(BaseModel):
    order_id: str
    request_id: str = Field(description="Authorization request that released this order")
    user_id: str
    items: list[CheckoutLine] = Field(default_factory=list)
    total: float
    status: str = Field(default="completed")
    created_at: datetime = Field(default_factory=utcnow)
