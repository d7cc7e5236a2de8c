from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from database import get_utc_now
from schemas import (
    FoodListing, FoodListingCreate, FoodListingUpdate, TransactionUpdate,
    UserCreate, UserInDB, UserProfileUpdate, UserResponse, to_naive_utc,
)


def listing_fields(**overrides):
    fields = {
        "title": "Soup",
        "description": "Tomato soup",
        "quantity": 1,
        "category": "home-cooked",
        "expiresAt": "2030-01-01T12:00:00Z",
        "location": "Springfield",
    }
    fields.update(overrides)
    return fields


def test_camel_and_snake_case_input():
    camel = FoodListingCreate(**listing_fields(portionSize="1 bowl"))
    snake = FoodListingCreate(**listing_fields(portion_size="1 bowl"))
    assert camel.portion_size == snake.portion_size == "1 bowl"
    assert "portionSize" in camel.model_dump(by_alias=True)


def test_expiration_is_stored_as_naive_utc():
    listing = FoodListingCreate(**listing_fields(expiresAt="2030-01-01T14:00:00+02:00"))
    assert listing.expires_at == datetime(2030, 1, 1, 12, 0)
    assert to_naive_utc(None) is None
    naive = datetime(2030, 1, 1)
    assert to_naive_utc(naive) is naive
    assert to_naive_utc(datetime(2030, 1, 1, tzinfo=timezone.utc)) == naive


def test_free_listing_forces_zero_price():
    assert FoodListingCreate(**listing_fields(isFree=True, price=9.99)).price == 0.0
    assert FoodListingCreate(**listing_fields(price=9.99)).price == 9.99


def test_patch_free_and_price_sync():
    update = FoodListingUpdate(isFree=True)
    assert update.changes() == {"is_free": True, "price": 0.0}

    update = FoodListingUpdate(price=0)
    assert update.changes() == {"price": 0.0, "is_free": True}

    assert FoodListingUpdate(price=3.5).changes() == {"price": 3.5, "is_free": False}
    assert FoodListingUpdate(price=3.5, isFree=False).changes() == {"price": 3.5, "is_free": False}
    assert FoodListingUpdate(title="Stew").changes() == {"title": "Stew"}


def test_patch_rejects_unknown_and_null_required_fields():
    with pytest.raises(ValidationError):
        FoodListingUpdate(userId=5)
    with pytest.raises(ValidationError):
        FoodListingUpdate(title=None)
    with pytest.raises(ValidationError):
        TransactionUpdate(listingId=3)
    # Nullable columns may be cleared
    assert FoodListingUpdate(latitude=None).changes() == {"latitude": None}


def test_profile_update_rejects_password():
    with pytest.raises(ValidationError, match="Password cannot be changed"):
        UserProfileUpdate.model_validate({"name": "A", "password": "x"})
    with pytest.raises(ValidationError):
        UserProfileUpdate.model_validate({"hashedPassword": "x"})


def test_user_create_validation():
    with pytest.raises(ValidationError):
        UserCreate(username="al", email="a@x.com", password="password123", name="A", location="X")
    with pytest.raises(ValidationError):
        UserCreate(username="alice", email="not-an-email", password="password123", name="A", location="X")
    with pytest.raises(ValidationError):
        UserCreate(username="alice", email="a@x.com", password="é" * 40, name="A", location="X")


def test_user_response_drops_password_hash():
    user = UserInDB(
        id=1, username="alice", email="a@x.com", name="Alice", location="X",
        hashed_password="secret-hash", created_at=datetime(2030, 1, 1),
    )
    payload = UserResponse.from_user(user).model_dump(by_alias=True)
    assert payload["id"] == 1
    assert "hashedPassword" not in payload
    assert "secret-hash" not in payload.values()


def test_listing_expiry_is_computed_at_read_time():
    now = get_utc_now()
    base = dict(listing_fields(), id=1, userId=1, createdAt=now)
    future = FoodListing(**dict(base, expiresAt=now + timedelta(hours=1)))
    past = FoodListing(**dict(base, expiresAt=now - timedelta(hours=1)))
    assert future.is_expired is False
    assert past.is_expired is True
    assert past.model_dump(by_alias=True)["isExpired"] is True
