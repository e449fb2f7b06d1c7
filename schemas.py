"""
Database Schemas

Pydantic models for the MongoDB collections and the request bodies that
write to them. Collection names are the lowercase model name without the
``Create``/``Update`` suffix:
- CategoryCreate -> "category" collection
- ProductCreate -> "product" collection

Reference fields (category, brand, product, user...) travel as id strings
and are stored as ObjectIds.
"""

from datetime import datetime, timezone
from typing import Any, ClassVar, List, Literal, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field, ValidationInfo, field_validator

Role = Literal["user", "manager", "admin"]


class PartialUpdate(BaseModel):
    """Base for update bodies: omitted fields are left alone, but fields
    listed in ``not_null`` may not be cleared with an explicit null."""

    not_null: ClassVar[Tuple[str, ...]] = ()

    @field_validator("*")
    @classmethod
    def reject_null(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None and info.field_name in cls.not_null:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=32, description="Category name")
    description: Optional[str] = None
    image: Optional[str] = Field(None, description="Stored image file name or absolute URL")


class CategoryUpdate(PartialUpdate):
    not_null = ("name",)

    name: Optional[str] = Field(None, min_length=3, max_length=32)
    description: Optional[str] = None
    image: Optional[str] = None


class SubCategoryCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=32)
    category: Optional[str] = Field(None, description="Parent category id, taken from the path on nested routes")


class SubCategoryUpdate(PartialUpdate):
    not_null = ("name", "category")

    name: Optional[str] = Field(None, min_length=2, max_length=32)
    category: Optional[str] = None


class BrandCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=32)
    description: Optional[str] = None
    image: Optional[str] = None


class BrandUpdate(PartialUpdate):
    not_null = ("name",)

    name: Optional[str] = Field(None, min_length=3, max_length=32)
    description: Optional[str] = None
    image: Optional[str] = None


class ProductCreate(BaseModel):
    title: str = Field(..., min_length=3)
    description: str = Field(..., min_length=20)
    quantity: int = Field(..., ge=0, description="Units in stock")
    sold: int = Field(0, ge=0)
    price: float = Field(..., ge=0, le=2_000_000)
    price_after_discount: Optional[float] = Field(None, ge=0)
    colors: List[str] = []
    image_cover: Optional[str] = None
    images: List[str] = []
    category: str
    subcategories: List[str] = []
    brand: Optional[str] = None
    ratings_average: Optional[float] = Field(None, ge=1, le=5)
    ratings_quantity: int = Field(0, ge=0)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        return v.strip()


class ProductUpdate(PartialUpdate):
    not_null = ("title", "description", "quantity", "price", "colors", "images", "category", "subcategories")

    title: Optional[str] = Field(None, min_length=3)
    description: Optional[str] = Field(None, min_length=20)
    quantity: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0, le=2_000_000)
    price_after_discount: Optional[float] = Field(None, ge=0)
    colors: Optional[List[str]] = None
    image_cover: Optional[str] = None
    images: Optional[List[str]] = None
    category: Optional[str] = None
    subcategories: Optional[List[str]] = None
    brand: Optional[str] = None


class ReviewCreate(BaseModel):
    title: Optional[str] = None
    ratings: float = Field(..., ge=1, le=5)
    product: Optional[str] = Field(None, description="Product id, taken from the path on nested routes")


class ReviewUpdate(PartialUpdate):
    not_null = ("ratings",)

    title: Optional[str] = None
    ratings: Optional[float] = Field(None, ge=1, le=5)


class CouponCreate(BaseModel):
    name: str = Field(..., min_length=1)
    expire: datetime
    discount: float = Field(..., ge=0, le=100, description="Discount percentage")

    @field_validator("name")
    @classmethod
    def upper_name(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("expire")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class CouponUpdate(PartialUpdate):
    not_null = ("name", "expire", "discount")

    name: Optional[str] = Field(None, min_length=1)
    expire: Optional[datetime] = None
    discount: Optional[float] = Field(None, ge=0, le=100)

    @field_validator("name")
    @classmethod
    def upper_name(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v is not None else v

    @field_validator("expire")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class UserCreate(BaseModel):
    fname: str = Field(..., min_length=1)
    lname: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    profile_image: Optional[str] = None
    role: Role = "user"

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class UserUpdate(PartialUpdate):
    not_null = ("fname", "lname", "email", "role")

    fname: Optional[str] = Field(None, min_length=1)
    lname: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    profile_image: Optional[str] = None
    role: Optional[Role] = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class MeUpdate(PartialUpdate):
    not_null = ("fname", "lname", "email")

    fname: Optional[str] = Field(None, min_length=1)
    lname: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    profile_image: Optional[str] = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class PasswordChange(BaseModel):
    password: str = Field(..., min_length=6)


class SignupIn(BaseModel):
    fname: str = Field(..., min_length=1)
    lname: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    password_confirm: str
    phone: Optional[str] = None


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class AddressIn(BaseModel):
    fname: Optional[str] = None
    lname: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: str = Field(..., min_length=1)
    city: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


class WishlistIn(BaseModel):
    product_id: str


class CartItemIn(BaseModel):
    product_id: str
    color: Optional[str] = None


class CartQuantityIn(BaseModel):
    quantity: int = Field(..., ge=1)


class ApplyCouponIn(BaseModel):
    coupon: str = Field(..., min_length=1)


class ShippingAddress(BaseModel):
    details: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class CheckoutIn(BaseModel):
    shipping_address: Optional[ShippingAddress] = None
