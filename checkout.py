"""
Checkout and orders

An order is placed from a cart in three steps: the cart is claimed (deleted
atomically, so a second checkout of the same cart finds nothing), the order
is inserted, and product stock is decremented while ``sold`` is incremented.
The steps touch three documents without a server-side transaction, so each
one registers a compensation; if a later step fails the compensations run
in reverse order and the triggering error propagates.

Cash orders are placed directly. Card orders go through a Stripe Checkout
session whose ``checkout.session.completed`` webhook places the order.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import stripe
from bson import ObjectId
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

import config
from auth import API, current_user
from database import get_db, now, to_object_id
from errors import ApiError, BadRequest, Conflict, NotFound, ValidationFailed
from factory import Resource, ResourceFactory, parse_bool, parse_object_id
from presenters import order_status, serialize_doc
from schemas import CheckoutIn

logger = logging.getLogger(__name__)


class OutOfStock(Conflict):
    def __init__(self, product_id: Any):
        super().__init__(f"Not enough stock for product {product_id}")
        self.product_id = product_id


def cart_price(cart: Dict[str, Any]) -> float:
    discounted = cart.get("total_price_after_discount")
    if discounted is not None:
        return discounted
    return cart.get("total_cart_price") or 0


def order_total(cart: Dict[str, Any]) -> float:
    return cart_price(cart) + config.TAX_PRICE + config.SHIPPING_PRICE


class OrderPlacement:
    """Runs the placement steps and undoes the applied ones on failure."""

    def __init__(self, db):
        self.db = db
        self._compensations: List[Callable[[], None]] = []

    def claim_cart(self, cart_id: Any, owner: Optional[ObjectId] = None) -> Dict[str, Any]:
        query = {"_id": to_object_id(cart_id, "cart_id")}
        if owner is not None:
            query["user"] = owner
        cart = self.db["cart"].find_one_and_delete(query)
        if not cart:
            raise NotFound(f"There is no such cart with id {cart_id}")
        self._compensations.append(lambda: self.db["cart"].insert_one(cart))
        return cart

    def insert_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        stamp = now()
        order["created_at"] = stamp
        order["updated_at"] = stamp
        order_id = self.db["order"].insert_one(order).inserted_id
        order["_id"] = order_id
        self._compensations.append(lambda: self.db["order"].delete_one({"_id": order_id}))
        return order

    def take_stock(self, items: List[Dict[str, Any]], strict: bool = True) -> List[Any]:
        """Decrement stock line by line and return the products that fell short.

        In strict mode a shortfall raises ``OutOfStock``. Otherwise the line is
        left untouched and reported, so an already-paid order is still kept.
        """
        applied: List[Dict[str, Any]] = []
        shortfall: List[Any] = []
        self._compensations.append(lambda: self._restore_stock(applied))
        for item in items:
            result = self.db["product"].update_one(
                {"_id": item["product"], "quantity": {"$gte": item["quantity"]}},
                {"$inc": {"quantity": -item["quantity"], "sold": item["quantity"]}},
            )
            if result.matched_count != 1:
                if strict:
                    raise OutOfStock(item["product"])
                shortfall.append(item["product"])
                continue
            applied.append(item)
        return shortfall

    def _restore_stock(self, items: List[Dict[str, Any]]) -> None:
        for item in reversed(items):
            self.db["product"].update_one(
                {"_id": item["product"]},
                {"$inc": {"quantity": item["quantity"], "sold": -item["quantity"]}},
            )

    def rollback(self) -> None:
        while self._compensations:
            undo = self._compensations.pop()
            try:
                undo()
            except Exception:
                logger.exception("Compensation step failed during order rollback")


def place_order(db, cart_id: Any, user_id: ObjectId, shipping_address: Optional[Dict[str, Any]], *,
                owner: Optional[ObjectId] = None, payment_method: str = "cash",
                total: Optional[float] = None, stripe_session_id: Optional[str] = None) -> Dict[str, Any]:
    placement = OrderPlacement(db)
    cart = placement.claim_cart(cart_id, owner)
    try:
        paid = payment_method == "card"
        order = placement.insert_order({
            "user": user_id,
            "cart_items": cart.get("cart_items", []),
            "shipping_address": shipping_address,
            "tax_price": config.TAX_PRICE,
            "shipping_price": config.SHIPPING_PRICE,
            "total_order_price": order_total(cart) if total is None else total,
            "payment_method_type": payment_method,
            "is_paid": paid,
            "paid_at": now() if paid else None,
            "is_delivered": False,
            "delivered_at": None,
            "stripe_session_id": stripe_session_id,
        })
        shortfall = placement.take_stock(cart.get("cart_items", []), strict=not paid)
        if shortfall:
            logger.error("Paid order %s is short of stock for products %s", order["_id"], shortfall)
            db["order"].update_one({"_id": order["_id"]}, {"$set": {"stock_shortfall": shortfall}})
            order["stock_shortfall"] = shortfall
    except Exception:
        logger.warning("Placing order from cart %s failed, rolling back", cart_id)
        placement.rollback()
        raise
    logger.info("Placed %s order %s from cart %s", payment_method, order["_id"], cart_id)
    return order


def expand_order(db, doc: Dict[str, Any], out: Dict[str, Any]) -> None:
    user = db["user"].find_one({"_id": doc.get("user")}, {"fname": 1, "lname": 1, "email": 1, "phone": 1})
    if user:
        out["user"] = serialize_doc(user)
    product_ids = [item.get("product") for item in doc.get("cart_items", [])]
    titles = {
        p["_id"]: p for p in db["product"].find({"_id": {"$in": product_ids}}, {"title": 1, "image_cover": 1})
    }
    for item, presented in zip(doc.get("cart_items", []), out.get("cart_items", [])):
        product = titles.get(item.get("product"))
        if product:
            presented["product"] = serialize_doc(product)


class OrderFactory(ResourceFactory):
    def present(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        out = super().present(doc)
        out["status"] = order_status(doc)
        return out


orders = OrderFactory(Resource(
    name="order",
    collection="order",
    filters={
        "user": parse_object_id,
        "is_paid": parse_bool,
        "is_delivered": parse_bool,
        "payment_method_type": str,
        "total_order_price": float,
    },
    expand=expand_order,
    expand_lists=True,
))


def _owner_filter(user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if user.get("role") == "user":
        return {"user": user["_id"]}
    return None


def _set_flag(order_id: str, flag: str, stamp_field: str) -> Dict[str, Any]:
    order = orders.find(order_id)
    if order.get(flag):
        logger.warning("Order %s already has %s set; refreshing %s", order_id, flag, stamp_field)
    doc = orders.apply(order["_id"], {flag: True, stamp_field: now()})
    return {"status": "success", "data": orders.present(doc)}


router = APIRouter(prefix=f"{API}/orders", tags=["orders"])


@router.post("/checkout-session/{cart_id}")
def checkout_session(cart_id: str, request: Request, payload: CheckoutIn = None, user: dict = Depends(current_user)):
    if not config.STRIPE_SECRET_KEY:
        raise ApiError("Stripe not configured. Set STRIPE_SECRET_KEY.", 500)
    cart = get_db()["cart"].find_one({"_id": to_object_id(cart_id, "cart_id"), "user": user["_id"]})
    if not cart:
        raise NotFound(f"There is no such cart with id {cart_id}")

    total = order_total(cart)
    address = payload.shipping_address.model_dump(exclude_none=True) if payload and payload.shipping_address else {}
    base = str(request.base_url).rstrip("/")
    try:
        session = stripe.checkout.Session.create(
            api_key=config.STRIPE_SECRET_KEY,
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": config.STRIPE_CURRENCY,
                    "product_data": {"name": f"{user.get('fname', '')} {user.get('lname', '')}".strip() or "Order"},
                    "unit_amount": int(round(total * 100)),
                },
                "quantity": 1,
            }],
            success_url=f"{base}/orders",
            cancel_url=f"{base}/cart",
            customer_email=user.get("email"),
            client_reference_id=str(cart["_id"]),
            metadata=address,
        )
    except stripe.StripeError as e:
        raise BadRequest(str(e))
    return {"status": "success", "session": {"id": session.id, "url": session.url}}


@router.post("/{cart_id}", status_code=201)
def create_cash_order(cart_id: str, payload: CheckoutIn = None, user: dict = Depends(current_user)):
    address = payload.shipping_address.model_dump() if payload and payload.shipping_address else None
    order = place_order(get_db(), cart_id, user["_id"], address, owner=user["_id"])
    return {"status": "success", "data": orders.present(order)}


@router.get("")
def list_orders(request: Request, user: dict = Depends(current_user)):
    return orders.list(request.query_params, _owner_filter(user))


@router.get("/{id}")
def get_order(id: str, user: dict = Depends(current_user)):
    return orders.get(id, _owner_filter(user))


@router.put("/{id}/pay")
def update_order_to_paid(id: str):
    return _set_flag(id, "is_paid", "paid_at")


@router.put("/{id}/deliver")
def update_order_to_delivered(id: str):
    return _set_flag(id, "is_delivered", "delivered_at")


def _as_dict(value: Any) -> Dict[str, Any]:
    """Plain nested dict from a Stripe object, which is not a dict on every release."""
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return {
        k: _as_dict(v) if isinstance(v, dict) or hasattr(v, "to_dict") else v
        for k, v in dict(value).items()
    }


def create_card_order(session: Any) -> Optional[Dict[str, Any]]:
    session = _as_dict(session)
    db = get_db()
    cart_id = session.get("client_reference_id")
    email = (session.get("customer_email") or (session.get("customer_details") or {}).get("email") or "").lower()
    user = db["user"].find_one({"email": email})
    if not user:
        logger.error("Webhook session %s: no user with e-mail %s", session.get("id"), email)
        return None
    amount = (session.get("amount_total") or 0) / 100
    try:
        return place_order(
            db, cart_id, user["_id"], session.get("metadata") or {},
            payment_method="card", total=amount, stripe_session_id=session.get("id"),
        )
    except (NotFound, ValidationFailed):
        logger.warning("Webhook session %s: cart %s already consumed", session.get("id"), cart_id)
        return None


webhook_router = APIRouter(tags=["orders"])


@webhook_router.post("/webhook-checkout")
async def webhook_checkout(request: Request):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(
            payload=payload, sig_header=sig_header, secret=config.STRIPE_WEBHOOK_SECRET or ""
        )
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Rejected webhook: %s", e)
        raise BadRequest(f"Webhook Error: {e}")

    if event["type"] == "checkout.session.completed":
        await run_in_threadpool(create_card_order, event["data"]["object"])
    return {"received": True}
