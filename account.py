"""User administration, the logged-in user's profile, addresses and wishlist."""

import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Response
from pymongo import ReturnDocument

from auth import API, create_token, current_user, hash_password, mark_password_changed, present_user
from catalog import products
from database import get_db, get_documents, now, to_object_id
from errors import Conflict, NotFound
from factory import Resource, ResourceFactory, parse_bool, register_crud, slugify
from presenters import serialize_doc
from schemas import AddressIn, MeUpdate, PasswordChange, UserCreate, UserUpdate, WishlistIn

logger = logging.getLogger(__name__)


def prepare_user(db, changes: Dict[str, Any], existing: Optional[Dict[str, Any]]) -> None:
    if "password" in changes:
        changes["password"] = hash_password(changes["password"])
    if existing is None:
        changes.setdefault("active", True)
        changes.setdefault("wishlist", [])
        changes.setdefault("addresses", [])
    if "fname" in changes or "lname" in changes:
        current = dict(existing or {})
        current.update(changes)
        changes["slug"] = slugify(f"{current.get('fname', '')} {current.get('lname', '')}")
    email = changes.get("email")
    if email:
        query = {"email": email}
        if existing is not None:
            query["_id"] = {"$ne": existing["_id"]}
        if db["user"].find_one(query):
            raise Conflict("E-mail already in use")


users = ResourceFactory(Resource(
    name="user",
    collection="user",
    create_model=UserCreate,
    update_model=UserUpdate,
    search_fields=("fname", "lname", "email"),
    filters={"role": str, "active": parse_bool, "email": str},
    image_fields=("profile_image",),
    image_folder="users",
    before_write=prepare_user,
))

router = APIRouter(prefix=API, tags=["account"])


# /users/me routes are declared before /users/{id} so "me" is not taken as an id
@router.get("/users/me")
def get_me(user: dict = Depends(current_user)):
    return {"status": "success", "data": present_user(user)}


@router.put("/users/me")
def update_me(payload: MeUpdate, user: dict = Depends(current_user)):
    doc = users.apply(user["_id"], payload.model_dump(exclude_unset=True))
    return {"status": "success", "data": present_user(doc)}


@router.put("/users/me/password")
def update_my_password(payload: PasswordChange, user: dict = Depends(current_user)):
    doc = mark_password_changed(user["_id"], payload.password)
    return {"status": "success", "data": present_user(doc), "token": create_token(doc["_id"])}


@router.delete("/users/me", status_code=204)
def deactivate_me(user: dict = Depends(current_user)):
    get_db()["user"].update_one({"_id": user["_id"]}, {"$set": {"active": False, "updated_at": now()}})
    logger.info("User %s deactivated their account", user["_id"])
    return Response(status_code=204)


@router.put("/users/change-password/{id}")
def change_user_password(id: str, payload: PasswordChange):
    target = users.find(id)
    doc = mark_password_changed(target["_id"], payload.password)
    return {"status": "success", "data": present_user(doc)}


register_crud(router, "/users", users)


# Addresses

def _user_or_404(db, user_id: ObjectId, update: Dict[str, Any]) -> Dict[str, Any]:
    doc = db["user"].find_one_and_update({"_id": user_id}, update, return_document=ReturnDocument.AFTER)
    if not doc:
        raise NotFound(f"No user for this id {user_id}")
    return doc


@router.post("/addresses")
def add_address(payload: AddressIn, user: dict = Depends(current_user)):
    address = payload.model_dump()
    address["_id"] = ObjectId()
    doc = _user_or_404(get_db(), user["_id"], {"$push": {"addresses": address}, "$set": {"updated_at": now()}})
    return {
        "status": "success",
        "message": "Address added successfully",
        "data": [serialize_doc(a) for a in doc.get("addresses", [])],
    }


@router.get("/addresses")
def list_addresses(user: dict = Depends(current_user)):
    addresses = user.get("addresses", [])
    return {"status": "success", "results": len(addresses), "data": [serialize_doc(a) for a in addresses]}


@router.delete("/addresses/{address_id}")
def remove_address(address_id: str, user: dict = Depends(current_user)):
    address_oid = to_object_id(address_id, "address_id")
    if not any(a.get("_id") == address_oid for a in user.get("addresses", [])):
        raise NotFound(f"No address for this id {address_id}")
    doc = _user_or_404(
        get_db(), user["_id"], {"$pull": {"addresses": {"_id": address_oid}}, "$set": {"updated_at": now()}}
    )
    return {
        "status": "success",
        "message": "Address removed successfully",
        "data": [serialize_doc(a) for a in doc.get("addresses", [])],
    }


# Wishlist

@router.post("/wishlist")
def add_to_wishlist(payload: WishlistIn, user: dict = Depends(current_user)):
    db = get_db()
    product_oid = to_object_id(payload.product_id, "product_id")
    if not db["product"].find_one({"_id": product_oid}, {"_id": 1}):
        raise NotFound(f"No product for this id {payload.product_id}")
    doc = _user_or_404(db, user["_id"], {"$addToSet": {"wishlist": product_oid}, "$set": {"updated_at": now()}})
    return {
        "status": "success",
        "message": "Product added successfully to your wishlist",
        "data": [str(p) for p in doc.get("wishlist", [])],
    }


@router.get("/wishlist")
def get_wishlist(user: dict = Depends(current_user)):
    ids = user.get("wishlist", [])
    docs = get_documents("product", {"_id": {"$in": ids}}) if ids else []
    data = [products.present(d) for d in docs]
    return {"status": "success", "results": len(data), "data": data}


@router.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user: dict = Depends(current_user)):
    product_oid = to_object_id(product_id, "product_id")
    doc = _user_or_404(get_db(), user["_id"], {"$pull": {"wishlist": product_oid}, "$set": {"updated_at": now()}})
    return {
        "status": "success",
        "message": "Product removed successfully from your wishlist",
        "data": [str(p) for p in doc.get("wishlist", [])],
    }
