from __future__ import annotations

import hashlib
import logging
import threading
from collections import OrderedDict
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from backchannel.core.actions import ProtectedAction
from backchannel.core.errors import EmptyPayload
from backchannel.core.models.checkout import (
    CheckoutLine,
    CheckoutSnapshot,
    Order,
    Product,
)
from backchannel.core.stores import CartStore

logger = logging.getLogger(__name__)

DEFAULT_CATALOG: tuple[Product, ...] = (
    Product(product_id="1", name="Milk", description="Fresh whole milk, 1 gallon", price=3.99),
    Product(product_id="2", name="Bread", description="Whole wheat bread loaf", price=2.49),
    Product(product_id="3", name="Eggs", description="Large eggs, dozen", price=2.99),
    Product(product_id="4", name="Bananas", description="Fresh bananas, per pound", price=0.79),
    Product(
        product_id="5",
        name="Chicken Breast",
        description="Boneless skinless chicken breast, per pound",
        price=6.99,
    ),
    Product(product_id="6", name="Rice", description="Long grain white rice, 2 lb bag", price=2.99),
    Product(product_id="7", name="Pasta", description="Spaghetti pasta, 1 lb box", price=1.49),
    Product(product_id="9", name="Cheese", description="Cheddar cheese block, 8 oz", price=4.49),
    Product(
        product_id="15",
        name="Olive Oil",
        description="Extra virgin olive oil, 16.9 fl oz",
        price=7.99,
    ),
    Product(product_id="20", name="Salmon", description="Atlantic salmon fillet", price=12.99),
)


def _money(value: float) -> float:
    return round(value, 2)


def order_id_for(request_id: str) -> str:
    digest = hashlib.sha256(request_id.encode("utf-8")).hexdigest()[:16].upper()
    return f"ORDER_{digest}"


class CheckoutAction(ProtectedAction):
    """Checkout of the user's cart, priced against the catalog at request time."""

    name = "checkout"

    def __init__(
        self,
        carts: CartStore,
        catalog: Iterable[Product] = DEFAULT_CATALOG,
        max_orders: int = 1000,
    ) -> None:
        self.carts = carts
        self.catalog = {product.product_id: product for product in catalog}
        self.max_orders = max_orders
        # Most recent orders by request id, oldest first.
        self._orders: OrderedDict[str, Order] = OrderedDict()
        self._lock = threading.Lock()

    def snapshot(self, user_id: str) -> dict[str, Any]:
        cart = self.carts.get(user_id)
        lines: list[CheckoutLine] = []
        for item in cart.items:
            product = self.catalog.get(item.product_id)
            if product is None:
                # Products removed from the catalog cannot be bought.
                logger.warning(
                    "Dropping unknown product from checkout",
                    extra={"user_id": user_id, "product_id": item.product_id},
                )
                continue
            lines.append(
                CheckoutLine(
                    product_id=product.product_id,
                    name=product.name,
                    unit_price=product.price,
                    quantity=item.quantity,
                    subtotal=_money(product.price * item.quantity),
                )
            )
        snapshot = CheckoutSnapshot(
            items=lines, total=_money(sum(line.subtotal for line in lines))
        )
        return snapshot.model_dump(mode="json")

    def validate(self, payload: dict[str, Any]) -> None:
        try:
            snapshot = CheckoutSnapshot.from_payload(payload)
        except ValidationError as exc:
            raise EmptyPayload("checkout payload is malformed") from exc
        if not snapshot.items:
            raise EmptyPayload("Your cart is empty. Add some items before checking out.")

    def describe(self, payload: dict[str, Any]) -> str:
        snapshot = CheckoutSnapshot.from_payload(payload)
        count = snapshot.item_count
        noun = "item" if count == 1 else "items"
        return f"Checkout for {count} {noun}, Total: {snapshot.total:.2f} USD"

    def apply(self, user_id: str, payload: dict[str, Any], request_id: str) -> dict[str, Any]:
        with self._lock:
            existing = self._orders.get(request_id)
            if existing is not None:
                return existing.model_dump(mode="json")
            snapshot = CheckoutSnapshot.from_payload(payload)
            order = Order(
                order_id=order_id_for(request_id),
                request_id=request_id,
                user_id=user_id,
                items=snapshot.items,
                total=snapshot.total,
            )
            self._orders[request_id] = order
            while len(self._orders) > self.max_orders:
                self._orders.popitem(last=False)
            self.carts.remove_items(
                user_id, {line.product_id: line.quantity for line in snapshot.items}
            )
        logger.info(
            "Checkout completed",
            extra={"request_id": request_id, "order_id": order.order_id, "total": order.total},
        )
        return order.model_dump(mode="json")

    def orders(self) -> list[Order]:
        with self._lock:
            return list(self._orders.values())
