"""
Catalog routes: categories, subcategories, brands, products, reviews and
coupons. All of them are plain ``Resource`` definitions served by the
generic factory; the hooks below carry the few rules that differ.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response

from auth import API, current_user
from database import get_db, to_object_id
from errors import Conflict, Forbidden, ValidationFailed
from factory import Resource, ResourceFactory, parse_object_id, register_crud
from schemas import (
    BrandCreate,
    BrandUpdate,
    CategoryCreate,
    CategoryUpdate,
    CouponCreate,
    CouponUpdate,
    ProductCreate,
    ProductUpdate,
    ReviewCreate,
    ReviewUpdate,
    SubCategoryCreate,
    SubCategoryUpdate,
)

logger = logging.getLogger(__name__)


def check_product_prices(db, changes: Dict[str, Any], existing: Optional[Dict[str, Any]]) -> None:
    current = dict(existing or {})
    current.update(changes)
    discounted = current.get("price_after_discount")
    if discounted is not None and current.get("price") is not None and discounted >= current["price"]:
        raise ValidationFailed.single("price_after_discount", "price_after_discount must be lower than price")

    subcategories = current.get("subcategories") or []
    if subcategories and ("subcategories" in changes or "category" in changes):
        belonging = db["subcategory"].count_documents(
            {"_id": {"$in": subcategories}, "category": current.get("category")}
        )
        if belonging != len(set(subcategories)):
            raise ValidationFailed.single("subcategories", "Subcategories must belong to the product category")


def require_category(db, changes: Dict[str, Any], existing: Optional[Dict[str, Any]]) -> None:
    if existing is None and not changes.get("category"):
        raise ValidationFailed.single("category", "Subcategory must belong to a category")


def expand_product(db, doc: Dict[str, Any], out: Dict[str, Any]) -> None:
    out["reviews"] = [reviews.present(r) for r in db["review"].find({"product": doc["_id"]})]


def recalculate_ratings(db, review: Dict[str, Any]) -> None:
    product_id = review.get("product")
    if product_id is None:
        return
    ratings = [
        r["ratings"] for r in db["review"].find({"product": product_id}, {"ratings": 1}) if r.get("ratings") is not None
    ]
    if ratings:
        update = {
            "ratings_average": round(sum(ratings) / len(ratings), 1),
            "ratings_quantity": len(ratings),
        }
    else:
        update = {"ratings_average": None, "ratings_quantity": 0}
    db["product"].update_one({"_id": product_id}, {"$set": update})


categories = ResourceFactory(Resource(
    name="category",
    collection="category",
    create_model=CategoryCreate,
    update_model=CategoryUpdate,
    search_fields=("name",),
    filters={"name": str, "slug": str},
    image_fields=("image",),
    image_folder="categories",
    slug_from="name",
))

subcategories = ResourceFactory(Resource(
    name="subcategory",
    collection="subcategory",
    create_model=SubCategoryCreate,
    update_model=SubCategoryUpdate,
    search_fields=("name",),
    filters={"name": str, "slug": str, "category": parse_object_id},
    references={"category": "category"},
    slug_from="name",
    before_write=require_category,
))

brands = ResourceFactory(Resource(
    name="brand",
    collection="brand",
    create_model=BrandCreate,
    update_model=BrandUpdate,
    search_fields=("name",),
    filters={"name": str, "slug": str},
    image_fields=("image",),
    image_folder="brands",
    slug_from="name",
))

products = ResourceFactory(Resource(
    name="product",
    collection="product",
    create_model=ProductCreate,
    update_model=ProductUpdate,
    search_fields=("title", "description"),
    filters={
        "price": float,
        "price_after_discount": float,
        "quantity": int,
        "sold": int,
        "ratings_average": float,
        "ratings_quantity": int,
        "category": parse_object_id,
        "subcategories": parse_object_id,
        "brand": parse_object_id,
        "colors": str,
        "slug": str,
    },
    references={"category": "category", "subcategories": "subcategory", "brand": "brand"},
    image_fields=("image_cover", "images"),
    image_folder="products",
    slug_from="title",
    before_write=check_product_prices,
    expand=expand_product,
))

reviews = ResourceFactory(Resource(
    name="review",
    collection="review",
    create_model=ReviewCreate,
    update_model=ReviewUpdate,
    search_fields=("title",),
    filters={"ratings": float, "user": parse_object_id, "product": parse_object_id},
    references={"product": "product"},
    after_write=recalculate_ratings,
))

coupons = ResourceFactory(Resource(
    name="coupon",
    collection="coupon",
    create_model=CouponCreate,
    update_model=CouponUpdate,
    search_fields=("name",),
    filters={"name": str, "discount": float},
))


router = APIRouter(prefix=API, tags=["catalog"])


# Nested subcategory routes are declared before the generic ones
@router.get("/categories/{category_id}/subcategories")
def list_category_subcategories(category_id: str, request: Request):
    return subcategories.list(request.query_params, {"category": to_object_id(category_id, "category_id")})


@router.post("/categories/{category_id}/subcategories", status_code=201)
def create_category_subcategory(category_id: str, payload: SubCategoryCreate):
    return subcategories.create(payload, {"category": category_id})


register_crud(router, "/categories", categories)
register_crud(router, "/subcategories", subcategories)
register_crud(router, "/brands", brands)
register_crud(router, "/products", products)
register_crud(router, "/coupons", coupons)


def _create_review(payload: ReviewCreate, user: Dict[str, Any], product_id: Optional[str]) -> Dict[str, Any]:
    data = payload.model_dump()
    data["product"] = product_id or data.get("product")
    if not data["product"]:
        raise ValidationFailed.single("product", "Review must belong to a product")
    data["user"] = user["_id"]
    product_oid = to_object_id(data["product"], "product")
    if get_db()["review"].find_one({"user": user["_id"], "product": product_oid}):
        raise Conflict("You already created a review for this product")
    doc = reviews.insert(data)
    return {"status": "success", "data": reviews.present(doc)}


def _own_review(review_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    review = reviews.find(review_id)
    if review.get("user") != user["_id"]:
        raise Forbidden("You are not allowed to perform this action")
    return review


@router.get("/products/{product_id}/reviews")
def list_product_reviews(product_id: str, request: Request):
    return reviews.list(request.query_params, {"product": to_object_id(product_id, "product_id")})


@router.post("/products/{product_id}/reviews", status_code=201)
def create_product_review(product_id: str, payload: ReviewCreate, user: dict = Depends(current_user)):
    return _create_review(payload, user, product_id)


@router.get("/reviews")
def list_reviews(request: Request):
    return reviews.list(request.query_params)


@router.post("/reviews", status_code=201)
def create_review(payload: ReviewCreate, user: dict = Depends(current_user)):
    return _create_review(payload, user, None)


@router.get("/reviews/{id}")
def get_review(id: str):
    return reviews.get(id)


@router.put("/reviews/{id}")
def update_review(id: str, payload: ReviewUpdate, user: dict = Depends(current_user)):
    _own_review(id, user)
    return reviews.update(id, payload)


@router.delete("/reviews/{id}", status_code=204)
def delete_review(id: str, user: dict = Depends(current_user)):
    if user.get("role") == "user":
        _own_review(id, user)
    reviews.delete(id)
    return Response(status_code=204)
