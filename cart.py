"""
Shopping cart

Each user owns at most one cart document. Every mutation recomputes
``total_cart_price`` from the line items and drops any coupon discount, so
a coupon has to be re-applied after the cart changes.
"""

import logging
from typing import Any, Dict, List

from bson import ObjectId
from fastapi import APIRouter, Depends, Response

from auth import API, current_user
from database import get_db, now, to_object_id
from errors import BadRequest, NotFound
from presenters import serialize_doc
from schemas import ApplyCouponIn, CartItemIn, CartQuantityIn

logger = logging.getLogger(__name__)


def cart_total(items: List[Dict[str, Any]]) -> float:
    return round(sum(item.get("price", 0) * item.get("quantity", 0) for item in items), 2)


def discounted_total(total: float, discount: float) -> float:
    return round(total - (total * discount) / 100, 2)


def _save(db, cart: Dict[str, Any]) -> Dict[str, Any]:
    cart["total_cart_price"] = cart_total(cart["cart_items"])
    cart["total_price_after_discount"] = None
    cart["updated_at"] = now()
    db["cart"].replace_one({"_id": cart["_id"]}, cart, upsert=True)
    return cart


def _user_cart(db, user: Dict[str, Any]) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user": user["_id"]})
    if not cart:
        raise NotFound(f"There is no cart for this user id {user['_id']}")
    return cart


def _response(cart: Dict[str, Any], message: str = None) -> Dict[str, Any]:
    body = {"status": "success", "num_of_cart_items": len(cart.get("cart_items", [])), "data": serialize_doc(cart)}
    if message:
        body["message"] = message
    return body


router = APIRouter(prefix=f"{API}/cart", tags=["cart"])


@router.post("")
def add_product_to_cart(payload: CartItemIn, user: dict = Depends(current_user)):
    db = get_db()
    product_oid = to_object_id(payload.product_id, "product_id")
    product = db["product"].find_one({"_id": product_oid})
    if not product:
        raise NotFound(f"No product for this id {payload.product_id}")

    cart = db["cart"].find_one({"user": user["_id"]})
    if not cart:
        stamp = now()
        cart = {"_id": ObjectId(), "user": user["_id"], "cart_items": [], "created_at": stamp}

    for item in cart["cart_items"]:
        if item["product"] == product_oid and item.get("color") == payload.color:
            item["quantity"] += 1
            break
    else:
        cart["cart_items"].append({
            "_id": ObjectId(),
            "product": product_oid,
            "quantity": 1,
            "color": payload.color,
            "price": product["price"],
        })

    cart = _save(db, cart)
    return _response(cart, "Product added to cart successfully")


@router.get("")
def get_logged_user_cart(user: dict = Depends(current_user)):
    return _response(_user_cart(get_db(), user))


@router.delete("", status_code=204)
def clear_cart(user: dict = Depends(current_user)):
    get_db()["cart"].delete_one({"user": user["_id"]})
    return Response(status_code=204)


@router.put("/apply-coupon")
def apply_coupon(payload: ApplyCouponIn, user: dict = Depends(current_user)):
    db = get_db()
    coupon = db["coupon"].find_one({"name": payload.coupon.strip().upper(), "expire": {"$gt": now()}})
    if not coupon:
        raise BadRequest("Coupon is invalid or expired")
    cart = _user_cart(db, user)
    total = cart_total(cart["cart_items"])
    cart["total_cart_price"] = total
    cart["total_price_after_discount"] = discounted_total(total, coupon["discount"])
    cart["updated_at"] = now()
    db["cart"].replace_one({"_id": cart["_id"]}, cart)
    return _response(cart)


@router.put("/{item_id}")
def update_cart_item_quantity(item_id: str, payload: CartQuantityIn, user: dict = Depends(current_user)):
    db = get_db()
    item_oid = to_object_id(item_id, "item_id")
    cart = _user_cart(db, user)
    for item in cart["cart_items"]:
        if item["_id"] == item_oid:
            item["quantity"] = payload.quantity
            break
    else:
        raise NotFound(f"There is no item for this id {item_id}")
    return _response(_save(db, cart))


@router.delete("/{item_id}")
def remove_cart_item(item_id: str, user: dict = Depends(current_user)):
    db = get_db()
    item_oid = to_object_id(item_id, "item_id")
    cart = _user_cart(db, user)
    remaining = [item for item in cart["cart_items"] if item["_id"] != item_oid]
    if len(remaining) == len(cart["cart_items"]):
        raise NotFound(f"There is no item for this id {item_id}")
    cart["cart_items"] = remaining
    return _response(_save(db, cart))
