"""
Pydantic models for request/response validation.

Records returned by the storage layer, insert schemas for POST bodies and
explicit patch schemas for PUT bodies. JSON uses camelCase keys; snake_case
is accepted on input as well.
"""

from datetime import datetime
from typing import ClassVar, List, Optional, Tuple

import pytz
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from database import get_utc_now

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(pytz.utc).replace(tzinfo=None)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class PatchModel(CamelModel):
    """Base for partial updates: only explicitly set fields are merged, unknown fields are rejected"""
    model_config = ConfigDict(extra="forbid")

    # Fields backed by NOT NULL columns; they may be omitted but not set to null
    required_fields: ClassVar[Tuple[str, ...]] = ()

    @model_validator(mode="after")
    def reject_null_required(self):
        for field in self.required_fields:
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


# User Models
class UserBase(CamelModel):
    username: str = Field(..., min_length=3, max_length=50, description="Username")
    email: str = Field(..., max_length=100, pattern=EMAIL_PATTERN, description="Email address")
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    location: str = Field(..., min_length=1, max_length=200, description="Free-text location")
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    bio: Optional[str] = Field(None, max_length=1000, description="User bio")
    profile_image: Optional[str] = Field(None, max_length=500, description="URL to profile image")


class UserCreate(UserBase):
    password: str = Field(..., min_length=6, max_length=72, description="Password (6-72 characters)")

    @model_validator(mode="after")
    def verify_password_byte_length(self):
        """Ensure password doesn't exceed 72 bytes (bcrypt limitation)"""
        if len(self.password.encode("utf-8")) > 72:
            raise ValueError("Password must be at most 72 bytes")
        return self


class UserInDB(UserBase):
    """Stored user, including the password hash; never serialized to clients"""
    id: int
    hashed_password: str
    created_at: datetime


class UserResponse(UserBase):
    id: int
    created_at: datetime

    @classmethod
    def from_user(cls, user: UserInDB) -> "UserResponse":
        return cls.model_validate(user.model_dump(exclude={"hashed_password"}))


class UserProfileUpdate(PatchModel):
    """Model for users to update their own profile"""
    required_fields = ("username", "email", "name", "location")

    username: Optional[str] = Field(None, min_length=3, max_length=50)
    email: Optional[str] = Field(None, max_length=100, pattern=EMAIL_PATTERN)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    location: Optional[str] = Field(None, min_length=1, max_length=200)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    bio: Optional[str] = Field(None, max_length=1000)
    profile_image: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="before")
    @classmethod
    def reject_password(cls, data):
        if isinstance(data, dict) and ("password" in data or "hashedPassword" in data or "hashed_password" in data):
            raise ValueError("Password cannot be changed through this endpoint")
        return data


class UserLogin(BaseModel):
    username: str = Field(..., description="Username")
    password: str = Field(..., description="Password")


class Token(BaseModel):
    access_token: str
    token_type: str
    expires_in: int


# Food Listing Models
class FoodListingBase(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    images: Optional[List[str]] = None
    price: Optional[float] = Field(None, ge=0, description="Price (0 for free listings)")
    is_free: bool = False
    quantity: int = Field(..., ge=0)
    portion_size: Optional[str] = Field(None, max_length=100)
    category: str = Field(..., min_length=1, max_length=100)
    ingredients: Optional[str] = None
    allergens: Optional[str] = None
    expires_at: datetime
    location: str = Field(..., min_length=1, max_length=200)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @field_validator("expires_at")
    @classmethod
    def normalize_expires_at(cls, value):
        return to_naive_utc(value)


class FoodListingCreate(FoodListingBase):

    @model_validator(mode="after")
    def sync_free_price(self):
        if self.is_free:
            self.price = 0.0
        return self


class FoodListing(FoodListingBase):
    id: int
    user_id: int
    is_available: bool = True
    created_at: datetime

    @computed_field(alias="isExpired")
    @property
    def is_expired(self) -> bool:
        return self.expires_at < get_utc_now()


class FoodListingUpdate(PatchModel):
    required_fields = ("title", "description", "is_free", "quantity", "category", "expires_at", "location", "is_available")

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1)
    images: Optional[List[str]] = None
    price: Optional[float] = Field(None, ge=0)
    is_free: Optional[bool] = None
    quantity: Optional[int] = Field(None, ge=0)
    portion_size: Optional[str] = Field(None, max_length=100)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    ingredients: Optional[str] = None
    allergens: Optional[str] = None
    expires_at: Optional[datetime] = None
    location: Optional[str] = Field(None, min_length=1, max_length=200)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    is_available: Optional[bool] = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expires_at(cls, value):
        return to_naive_utc(value)

    @model_validator(mode="after")
    def sync_free_price(self):
        # Marking as free zeroes the price; a zero price marks the listing free
        # and a positive price sent on its own marks it not free
        if self.is_free is True:
            self.price = 0.0
        elif "price" in self.model_fields_set and self.price == 0.0:
            self.is_free = True
        elif self.price and "is_free" not in self.model_fields_set:
            self.is_free = False
        return self


# Message Models
class MessageCreate(CamelModel):
    receiver_id: int
    content: str = Field(..., min_length=1, max_length=5000)


class Message(CamelModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    is_read: bool = False
    created_at: datetime


class UnreadCount(CamelModel):
    unread_count: int


# Transaction Models
class TransactionCreate(CamelModel):
    seller_id: int
    listing_id: int
    status: str = Field("pending", min_length=1, max_length=50, description="pending, completed, cancelled")
    amount: Optional[float] = Field(None, ge=0)
    is_paid: bool = False


class Transaction(CamelModel):
    id: int
    buyer_id: int
    seller_id: int
    listing_id: int
    status: str
    amount: Optional[float] = None
    is_paid: bool = False
    created_at: datetime


class TransactionUpdate(PatchModel):
    required_fields = ("status", "is_paid")

    status: Optional[str] = Field(None, min_length=1, max_length=50)
    amount: Optional[float] = Field(None, ge=0)
    is_paid: Optional[bool] = None


# Review Models
class ReviewCreate(CamelModel):
    receiver_id: int
    listing_id: int
    rating: int = Field(..., ge=1, le=5, description="1-5 stars")
    comment: Optional[str] = Field(None, max_length=2000)


class Review(CamelModel):
    id: int
    reviewer_id: int
    receiver_id: int
    listing_id: int
    rating: int
    comment: Optional[str] = None
    created_at: datetime
