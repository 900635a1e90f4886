"""
Input Schemas

Every procedure exposed by app.py parses its input through one of these
Pydantic models before the handler sees it. Update inputs are partial:
handlers read them with model_dump(exclude_unset=True) so a field that was
left out is not confused with a field explicitly set to null. Null clears a
nullable column and is refused for a required one.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

EMAIL_PATTERN = r'^[^@\s]+@[^@\s]+\.[^@\s]+$'

DiscountType = Literal['percentage', 'fixed']
OrderStatus = Literal['pending', 'completed', 'failed', 'refunded']


# Users

class CreateUserInput(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, description="Email address")
    password: str = Field(..., min_length=8, description="Plain password, hashed before storage")
    first_name: str
    last_name: str
    phone: Optional[str] = None
    is_admin: Optional[bool] = None


class LoginInput(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str


# Categories

class CreateCategoryInput(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


class UpdateCategoryInput(BaseModel):
    id: int
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'slug', 'is_active')
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError('may be left out but not set to null')
        return value


# Products

class CreateProductInput(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: float = Field(..., gt=0, description="Price in dollars")
    discount_price: Optional[float] = Field(None, gt=0, description="Sale price, shown instead of price")
    category_id: int
    image_url: Optional[str] = None
    download_url: Optional[str] = Field(None, description="Where the buyer downloads the product")
    license_key: Optional[str] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class UpdateProductInput(BaseModel):
    id: int
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    discount_price: Optional[float] = Field(None, gt=0)
    category_id: Optional[int] = None
    image_url: Optional[str] = None
    download_url: Optional[str] = None
    license_key: Optional[str] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None

    @field_validator('name', 'slug', 'price', 'category_id', 'is_active', 'is_featured')
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError('may be left out but not set to null')
        return value


# Coupons

class CreateCouponInput(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    minimum_amount: Optional[float] = Field(None, gt=0, description="Smallest subtotal the coupon applies to")
    usage_limit: Optional[int] = Field(None, gt=0, description="How many orders may use the coupon")
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None

    @model_validator(mode='after')
    def percentage_at_most_100(self):
        if self.discount_type == 'percentage' and self.discount_value > 100:
            raise ValueError('a percentage discount cannot exceed 100')
        return self


# Orders

class OrderItemInput(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    price: float = Field(..., gt=0)


class CreateOrderInput(BaseModel):
    user_id: int
    subtotal: float
    tax_amount: Optional[float] = None
    discount_amount: Optional[float] = None
    total_amount: float
    coupon_id: Optional[int] = None
    payment_method: Optional[str] = None
    items: List[OrderItemInput]


class UpdateOrderStatusInput(BaseModel):
    order_id: int
    status: OrderStatus


# Cart and checkout

class AddToCartInput(BaseModel):
    user_id: int
    product_id: int
    quantity: Optional[int] = Field(None, gt=0)


class CheckoutInput(BaseModel):
    user_id: int
    coupon_code: Optional[str] = None
    payment_method: Optional[str] = None


# Reviews

class CreateReviewInput(BaseModel):
    user_id: int
    product_id: int
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class UpdateReviewInput(BaseModel):
    id: int
    is_approved: bool


# Blog

class CreateBlogPostInput(BaseModel):
    title: str
    slug: str
    content: str
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    author_id: int
    is_published: Optional[bool] = None


# Settings

class UpdateSettingInput(BaseModel):
    key: str
    value: str
