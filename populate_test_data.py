#!/usr/bin/env python3
"""
Script to populate the configured storage backend with demo FoodShare data
"""

import asyncio
from datetime import timedelta

from auth import get_password_hash
from config import STORAGE_BACKEND
from database import get_utc_now
from schemas import FoodListingCreate, MessageCreate, ReviewCreate, TransactionCreate, UserCreate
from storage import DatabaseStorage, Storage, create_storage

DEMO_PASSWORD = "password123"

DEMO_USERS = [
    {
        "username": "alice",
        "email": "alice@example.com",
        "name": "Alice Baker",
        "location": "Mission District, San Francisco",
        "latitude": 37.7599,
        "longitude": -122.4148,
        "bio": "Home baker with more sourdough than I can eat.",
    },
    {
        "username": "bob",
        "email": "bob@example.com",
        "name": "Bob Chen",
        "location": "SoMa, San Francisco",
        "latitude": 37.7785,
        "longitude": -122.4056,
    },
    {
        "username": "carol",
        "email": "carol@example.com",
        "name": "Carol Diaz",
        "location": "Oakland",
        "latitude": 37.8044,
        "longitude": -122.2712,
    },
]

DEMO_LISTINGS = [
    {
        "owner": "alice",
        "title": "Fresh sourdough loaves",
        "description": "Two loaves baked this morning, still crusty.",
        "is_free": True,
        "quantity": 2,
        "portion_size": "1 loaf",
        "category": "baked-goods",
        "ingredients": "Flour, water, salt, starter",
        "allergens": "Gluten",
        "hours": 24,
    },
    {
        "owner": "alice",
        "title": "Vegetable lasagna",
        "description": "Half a tray of vegetable lasagna, feeds four.",
        "price": 6.0,
        "quantity": 4,
        "portion_size": "1 slice",
        "category": "home-cooked",
        "allergens": "Dairy, gluten",
        "hours": 12,
    },
    {
        "owner": "carol",
        "title": "Surplus pastries from the cafe",
        "description": "End of day croissants and muffins.",
        "price": 1.5,
        "quantity": 10,
        "category": "restaurant",
        "hours": 6,
    },
]


async def populate(storage: Storage) -> dict:
    """Create demo users, listings, a conversation, a transaction and a review"""
    users = {}
    for user_data in DEMO_USERS:
        existing = await storage.get_user_by_username(user_data["username"])
        if existing:
            print(f"⚠️  User {user_data['username']} already exists, reusing it")
            users[existing.username] = existing
            continue
        user = await storage.create_user(
            UserCreate(**user_data, password=DEMO_PASSWORD), get_password_hash(DEMO_PASSWORD)
        )
        print(f"✅ Created user: {user.username}")
        users[user.username] = user

    listings = []
    for listing_data in DEMO_LISTINGS:
        data = dict(listing_data)
        owner = users[data.pop("owner")]
        expires_at = get_utc_now() + timedelta(hours=data.pop("hours"))
        listing = await storage.create_food_listing(
            FoodListingCreate(
                **data,
                expires_at=expires_at,
                location=owner.location,
                latitude=owner.latitude,
                longitude=owner.longitude,
            ),
            owner.id,
        )
        print(f"✅ Created listing: {listing.title}")
        listings.append(listing)

    alice, bob = users["alice"], users["bob"]
    await storage.create_message(MessageCreate(receiver_id=alice.id, content="Is the sourdough still available?"), bob.id)
    await storage.create_message(MessageCreate(receiver_id=bob.id, content="Yes! Come by after 5pm."), alice.id)
    print("✅ Created conversation between alice and bob")

    await storage.create_transaction(
        TransactionCreate(seller_id=alice.id, listing_id=listings[0].id, status="completed", amount=0.0, is_paid=True),
        bob.id,
    )
    await storage.create_review(
        ReviewCreate(receiver_id=alice.id, listing_id=listings[0].id, rating=5, comment="Delicious bread!"),
        bob.id,
    )
    print("✅ Created transaction and review")

    return {"users": users, "listings": listings}


def main():
    print("🚀 Populating storage with demo FoodShare data...")
    storage = create_storage(STORAGE_BACKEND)
    if isinstance(storage, DatabaseStorage):
        storage.create_tables()
    asyncio.run(populate(storage))
    print(f"\n🎉 Done! Log in as any demo user with password '{DEMO_PASSWORD}'")


if __name__ == "__main__":
    main()
