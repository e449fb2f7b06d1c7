"""
Authentication and authorization

Passwords are hashed with bcrypt and sessions are stateless HS256 bearer
tokens. Route access is declared once in ``CAPABILITIES``: a mapping of
``(METHOD, route path)`` to the roles allowed to call it. ``authorize`` is
installed as an application-wide dependency, so the check runs before any
handler body. Routes missing from the table are public.
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Optional

import bcrypt
import jwt
from bson import ObjectId
from fastapi import APIRouter, Request
from starlette.routing import Match

import config
from database import create_document, get_db, now
from errors import Conflict, Forbidden, Unauthorized, ValidationFailed
from factory import slugify
from presenters import present
from schemas import LoginIn, SignupIn

logger = logging.getLogger(__name__)

USER = frozenset({"user"})
STAFF = frozenset({"admin", "manager"})
ADMIN = frozenset({"admin"})
ANY_ROLE = frozenset({"user", "manager", "admin"})

API = "/api/v1"

CAPABILITIES: Dict[tuple, FrozenSet[str]] = {
    # catalog
    ("POST", f"{API}/categories"): STAFF,
    ("PUT", f"{API}/categories/{{id}}"): STAFF,
    ("DELETE", f"{API}/categories/{{id}}"): ADMIN,
    ("POST", f"{API}/categories/{{category_id}}/subcategories"): STAFF,
    ("POST", f"{API}/subcategories"): STAFF,
    ("PUT", f"{API}/subcategories/{{id}}"): STAFF,
    ("DELETE", f"{API}/subcategories/{{id}}"): ADMIN,
    ("POST", f"{API}/brands"): STAFF,
    ("PUT", f"{API}/brands/{{id}}"): STAFF,
    ("DELETE", f"{API}/brands/{{id}}"): ADMIN,
    ("POST", f"{API}/products"): STAFF,
    ("PUT", f"{API}/products/{{id}}"): STAFF,
    ("DELETE", f"{API}/products/{{id}}"): ADMIN,
    # reviews
    ("POST", f"{API}/reviews"): USER,
    ("POST", f"{API}/products/{{product_id}}/reviews"): USER,
    ("PUT", f"{API}/reviews/{{id}}"): USER,
    ("DELETE", f"{API}/reviews/{{id}}"): ANY_ROLE,
    # coupons
    ("GET", f"{API}/coupons"): STAFF,
    ("POST", f"{API}/coupons"): STAFF,
    ("GET", f"{API}/coupons/{{id}}"): STAFF,
    ("PUT", f"{API}/coupons/{{id}}"): STAFF,
    ("DELETE", f"{API}/coupons/{{id}}"): STAFF,
    # users
    ("GET", f"{API}/users"): ADMIN,
    ("POST", f"{API}/users"): ADMIN,
    ("GET", f"{API}/users/{{id}}"): ADMIN,
    ("PUT", f"{API}/users/{{id}}"): ADMIN,
    ("DELETE", f"{API}/users/{{id}}"): ADMIN,
    ("PUT", f"{API}/users/change-password/{{id}}"): ADMIN,
    ("GET", f"{API}/users/me"): ANY_ROLE,
    ("PUT", f"{API}/users/me"): ANY_ROLE,
    ("DELETE", f"{API}/users/me"): ANY_ROLE,
    ("PUT", f"{API}/users/me/password"): ANY_ROLE,
    # addresses and wishlist
    ("GET", f"{API}/addresses"): USER,
    ("POST", f"{API}/addresses"): USER,
    ("DELETE", f"{API}/addresses/{{address_id}}"): USER,
    ("GET", f"{API}/wishlist"): USER,
    ("POST", f"{API}/wishlist"): USER,
    ("DELETE", f"{API}/wishlist/{{product_id}}"): USER,
    # cart
    ("GET", f"{API}/cart"): USER,
    ("POST", f"{API}/cart"): USER,
    ("DELETE", f"{API}/cart"): USER,
    ("PUT", f"{API}/cart/apply-coupon"): USER,
    ("PUT", f"{API}/cart/{{item_id}}"): USER,
    ("DELETE", f"{API}/cart/{{item_id}}"): USER,
    # orders
    ("POST", f"{API}/orders/checkout-session/{{cart_id}}"): USER,
    ("POST", f"{API}/orders/{{cart_id}}"): USER,
    ("GET", f"{API}/orders"): ANY_ROLE,
    ("GET", f"{API}/orders/{{id}}"): ANY_ROLE,
    ("PUT", f"{API}/orders/{{id}}/pay"): STAFF,
    ("PUT", f"{API}/orders/{{id}}/deliver"): STAFF,
}


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(user_id: Any) -> str:
    issued = datetime.utcnow()
    payload = {
        "user_id": str(user_id),
        "iat": issued,
        "exp": issued + timedelta(days=config.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def _route_path(request: Request) -> Optional[str]:
    route = request.scope.get("route")
    if route is not None:
        return getattr(route, "path", None)
    # older routers do not record the matched route in the scope
    for candidate in request.app.router.routes:
        match, _ = candidate.matches(request.scope)
        if match == Match.FULL:
            return getattr(candidate, "path", None)
    return None


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def load_user(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired, please login again")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token, please login again")

    user_id = payload.get("user_id")
    user = None
    if user_id and ObjectId.is_valid(user_id):
        user = get_db()["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise Unauthorized("The user that belongs to this token no longer exists")
    if not user.get("active", True):
        raise Unauthorized("This account has been deactivated")

    changed_at = user.get("password_changed_at")
    if changed_at and calendar.timegm(changed_at.utctimetuple()) > int(payload.get("iat", 0)):
        raise Unauthorized("User recently changed the password, please login again")
    return user


def authorize(request: Request) -> None:
    """Enforce the capability table for the matched route."""
    path = _route_path(request)
    allowed = CAPABILITIES.get((request.method, path))
    if allowed is None:
        return
    token = _bearer_token(request)
    if not token:
        raise Unauthorized("You are not logged in, please login to access this route")
    user = load_user(token)
    if user.get("role", "user") not in allowed:
        logger.info("Role %s denied %s %s", user.get("role"), request.method, path)
        raise Forbidden("You are not allowed to access this route")
    request.state.user = user


def current_user(request: Request) -> Dict[str, Any]:
    user = getattr(request.state, "user", None)
    if user is None:
        raise Unauthorized("You are not logged in, please login to access this route")
    return user


def present_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return present(user, ("profile_image",), "users")


router = APIRouter(prefix=f"{API}/auth", tags=["auth"])


@router.post("/signup", status_code=201)
def signup(payload: SignupIn):
    if payload.password != payload.password_confirm:
        raise ValidationFailed.single("password_confirm", "Password confirmation is incorrect")
    email = payload.email.lower()
    db = get_db()
    if db["user"].find_one({"email": email}):
        raise Conflict("E-mail already in use")
    doc = {
        "fname": payload.fname,
        "lname": payload.lname,
        "slug": slugify(f"{payload.fname} {payload.lname}"),
        "email": email,
        "phone": payload.phone,
        "password": hash_password(payload.password),
        "role": "user",
        "active": True,
        "wishlist": [],
        "addresses": [],
    }
    user_id = create_document("user", doc)
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    logger.info("New user signed up: %s", user_id)
    return {"status": "success", "data": present_user(user), "token": create_token(user_id)}


@router.post("/login")
def login(payload: LoginIn):
    user = get_db()["user"].find_one({"email": payload.email.lower()})
    if not user or not check_password(payload.password, user.get("password")):
        raise Unauthorized("Incorrect email or password")
    if not user.get("active", True):
        raise Unauthorized("This account has been deactivated")
    return {"status": "success", "data": present_user(user), "token": create_token(user["_id"])}


def mark_password_changed(user_id: ObjectId, password: str) -> Dict[str, Any]:
    stamp = now()
    get_db()["user"].update_one(
        {"_id": user_id},
        {"$set": {"password": hash_password(password), "password_changed_at": stamp, "updated_at": stamp}},
    )
    return get_db()["user"].find_one({"_id": user_id})
