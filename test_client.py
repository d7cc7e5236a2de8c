from datetime import timedelta

import pytest

from client import ApiError, FoodShareClient, QueryClient, build_request, freeze_key
from database import get_utc_now
from schemas import FoodListingCreate, UserCreate


def user_data(username, **extra):
    return UserCreate(
        username=username,
        email=f"{username}@example.com",
        password="password123",
        name=username.title(),
        location="Springfield",
        **extra,
    )


@pytest.fixture
def make_client(client):
    def _make_client(username=None):
        api = FoodShareClient("http://testserver", session=client)
        if username:
            api.register(user_data(username))
            api.login(username, "password123")
        return api
    return _make_client


def test_build_request_joins_segments_and_params():
    assert build_request(("/api/users", 3, "food-listings")) == ("/api/users/3/food-listings", None)
    assert build_request(("/api/food-listings", {"lat": 1})) == ("/api/food-listings", {"lat": 1})
    assert freeze_key(("/api/x", {"b": 2, "a": 1})) == ("/api/x", (("a", 1), ("b", 2)))


def test_query_cache_and_prefix_invalidation():
    queries = QueryClient("http://testserver")
    queries.set_query_data(("/api/messages",), ["inbox"])
    queries.set_query_data(("/api/messages", 2), ["conversation"])
    queries.set_query_data(("/api/transactions",), ["t"])

    assert queries.invalidate_queries(("/api/messages",)) == 2
    assert queries.get_query_data(("/api/messages",)) is None
    assert queries.get_query_data(("/api/messages", 2)) is None
    assert queries.get_query_data(("/api/transactions",)) == ["t"]


def test_current_user_is_none_when_logged_out(make_client):
    api = make_client()
    assert api.current_user() is None
    with pytest.raises(ApiError) as excinfo:
        api.messages()
    assert excinfo.value.status_code == 401


def test_login_sets_current_user(make_client):
    api = make_client("alice")
    assert api.current_user()["username"] == "alice"


def test_queries_are_cached_until_a_mutation_invalidates_them(make_client):
    alice = make_client("alice")
    bob = make_client("bob")
    alice_id = alice.current_user()["id"]

    assert alice.food_listings() == []
    listing = FoodListingCreate(
        title="Soup", description="Tomato soup", quantity=2, category="home-cooked",
        expires_at=get_utc_now() + timedelta(hours=3), location="Springfield", is_free=True,
    )
    # Another user's write is invisible to alice's cache
    bob.create_food_listing(listing)
    assert alice.food_listings() == []

    # Alice's own write invalidates her listing queries
    created = alice.create_food_listing(listing)
    assert created["price"] == 0.0
    assert len(alice.food_listings()) == 2
    assert [l["id"] for l in alice.user_food_listings(alice_id)] == [created["id"]]

    alice.update_food_listing(created["id"], {"isAvailable": False})
    assert alice.food_listing(created["id"])["isAvailable"] is False

    alice.delete_food_listing(created["id"])
    with pytest.raises(ApiError) as excinfo:
        alice.food_listing(created["id"])
    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "Food listing not found"


def test_messaging_through_client(make_client):
    alice = make_client("alice")
    bob = make_client("bob")
    alice_id = alice.current_user()["id"]
    bob_id = bob.current_user()["id"]

    assert alice.messages() == []
    message = bob.send_message(alice_id, "Is this still available?")

    # Cached inbox is stale until invalidated
    assert alice.messages() == []
    alice.queries.invalidate_queries(("/api/messages",))
    assert alice.unread_count() == 1
    assert [m["id"] for m in alice.messages()] == [message["id"]]

    alice.mark_message_read(message["id"])
    conversation = alice.conversation(bob_id)
    assert conversation[0]["isRead"] is True
    assert alice.unread_count() == 0


def test_transactions_and_reviews_through_client(make_client):
    alice = make_client("alice")
    bob = make_client("bob")
    carol = make_client("carol")
    alice_id = alice.current_user()["id"]

    listing = alice.create_food_listing({
        "title": "Muffins", "description": "Blueberry muffins", "quantity": 6, "category": "baked-goods",
        "expiresAt": (get_utc_now() + timedelta(hours=5)).isoformat(), "location": "Springfield", "price": 2.0,
    })
    transaction = bob.create_transaction({"sellerId": alice_id, "listingId": listing["id"], "status": "pending", "amount": 2.0})
    assert [t["id"] for t in bob.transactions()] == [transaction["id"]]

    updated = bob.update_transaction(transaction["id"], {"status": "completed"})
    assert updated["status"] == "completed"
    assert bob.transaction(transaction["id"])["status"] == "completed"

    with pytest.raises(ApiError) as excinfo:
        carol.transaction(transaction["id"])
    assert excinfo.value.status_code == 403

    assert bob.user_reviews(alice_id) == []
    bob.create_review({"receiverId": alice_id, "listingId": listing["id"], "rating": 4})
    assert len(bob.user_reviews(alice_id)) == 1
    assert len(bob.listing_reviews(listing["id"])) == 1


def test_profile_update_refreshes_current_user(make_client):
    alice = make_client("alice")
    assert alice.current_user()["bio"] is None
    alice.update_profile({"bio": "Sharing is caring"})
    assert alice.current_user()["bio"] == "Sharing is caring"
    assert alice.user(alice.current_user()["id"])["bio"] == "Sharing is caring"


def test_logout_clears_cache(make_client):
    alice = make_client("alice")
    alice.messages()
    alice.logout()
    assert alice.queries.get_query_data(("/api/messages",)) is None
    assert alice.current_user() is None
