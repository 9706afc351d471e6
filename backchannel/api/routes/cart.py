from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backchannel.api.dependencies import get_cart_store, get_checkout_action, require_identity
from backchannel.api.middleware.auth import IdentityContext
from backchannel.core.checkout import CheckoutAction
from backchannel.core.models.checkout import Cart, CartItem, Product
from backchannel.core.stores import CartStore


class CartUpdate(BaseModel):
    items: list[CartItem] = Field(default_factory=list)


router = APIRouter(prefix="/cart", tags=["cart"])
_CART_STORE = Depends(get_cart_store)
_CHECKOUT_ACTION = Depends(get_checkout_action)
_IDENTITY = Depends(require_identity)


@router.get("/products", response_model=list[Product])
def list_products(action: CheckoutAction = _CHECKOUT_ACTION) -> list[Product]:
    return list(action.catalog.values())


@router.get("/", response_model=Cart)
def get_cart(
    store: CartStore = _CART_STORE,
    identity: IdentityContext = _IDENTITY,
) -> Cart:
    return store.get(identity.user_id)


@router.put("/", response_model=Cart)
def replace_cart(
    update: CartUpdate,
    store: CartStore = _CART_STORE,
    action: CheckoutAction = _CHECKOUT_ACTION,
    identity: IdentityContext = _IDENTITY,
) -> Cart:
    unknown = [item.product_id for item in update.items if item.product_id not in action.catalog]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_product", "message": f"unknown products: {unknown}"},
        )
    cart = Cart(user_id=identity.user_id, items=update.items)
    store.put(cart)
    return cart
