"""
Client data layer for the FoodShare API.

``QueryClient`` caches GET responses by query key and drops cached entries
when a mutation invalidates them. A query key is a tuple of path segments,
optionally ending with a dict of query parameters; ``("/api/users", 3,
"food-listings")`` fetches ``/api/users/3/food-listings``. Invalidation works
on key prefixes, so invalidating ``("/api/messages",)`` also drops every
cached conversation.

``FoodShareClient`` wraps the endpoints with the invalidations each mutation
requires.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import requests
from pydantic import BaseModel

logger = logging.getLogger(__name__)

QueryKey = Tuple[Any, ...]


class ApiError(Exception):
    """Non-2xx response from the API"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


def freeze_key(query_key: Iterable) -> tuple:
    """Hashable form of a query key"""
    frozen = []
    for part in query_key:
        if isinstance(part, dict):
            frozen.append(tuple(sorted(part.items())))
        else:
            frozen.append(part)
    return tuple(frozen)


def build_request(query_key: Iterable) -> Tuple[str, Optional[dict]]:
    segments = list(query_key)
    params = segments.pop() if segments and isinstance(segments[-1], dict) else None
    return "/".join(str(segment) for segment in segments), params


def to_payload(data):
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True, exclude_unset=True)
    return data


class QueryClient:
    def __init__(self, base_url: str = "http://localhost:8000", session=None):
        self.base_url = base_url.rstrip("/")
        # Anything with a requests-style request() works, e.g. fastapi's TestClient
        self.session = session or requests.Session()
        self.token: Optional[str] = None
        self._cache: Dict[tuple, Any] = {}

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def request(self, method: str, path: str, json=None, params: Optional[dict] = None):
        response = self.session.request(
            method, f"{self.base_url}{path}", json=json, params=params, headers=self._headers()
        )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            message = (body.get("detail") if isinstance(body, dict) else None) or response.text
            logger.debug("%s %s failed with %s: %s", method, path, response.status_code, message)
            raise ApiError(response.status_code, message)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def get_query(self, query_key: QueryKey, on_unauthorized: str = "throw"):
        """Cached data for the key, fetching it on a miss.

        With ``on_unauthorized="return_none"`` a 401 yields None instead of
        raising; nothing is cached in that case.
        """
        key = freeze_key(query_key)
        if key in self._cache:
            return self._cache[key]

        path, params = build_request(query_key)
        try:
            data = self.request("GET", path, params=params)
        except ApiError as e:
            if e.status_code == 401 and on_unauthorized == "return_none":
                return None
            raise
        self._cache[key] = data
        return data

    def get_query_data(self, query_key: QueryKey):
        return self._cache.get(freeze_key(query_key))

    def set_query_data(self, query_key: QueryKey, data):
        self._cache[freeze_key(query_key)] = data

    def invalidate_queries(self, query_key: QueryKey) -> int:
        """Drop every cached entry whose key starts with query_key"""
        prefix = freeze_key(query_key)
        stale = [key for key in self._cache if key[:len(prefix)] == prefix]
        for key in stale:
            del self._cache[key]
        return len(stale)

    def mutate(self, method: str, path: str, json=None, invalidates: Iterable[QueryKey] = ()):
        """Perform a write, then invalidate the affected query keys"""
        data = self.request(method, path, json=json)
        for query_key in invalidates:
            self.invalidate_queries(query_key)
        return data

    def clear(self):
        self._cache.clear()


class FoodShareClient:
    def __init__(self, base_url: str = "http://localhost:8000", session=None):
        self.queries = QueryClient(base_url, session)

    # Authentication
    def register(self, user) -> dict:
        return self.queries.mutate("POST", "/api/register", to_payload(user))

    def login(self, username: str, password: str) -> dict:
        token = self.queries.request("POST", "/api/login", {"username": username, "password": password})
        self.queries.token = token["access_token"]
        # Everything cached so far belonged to another identity
        self.queries.clear()
        return self.current_user()

    def logout(self):
        self.queries.request("POST", "/api/logout")
        self.queries.token = None
        self.queries.clear()
        self.queries.set_query_data(("/api/user",), None)

    def current_user(self) -> Optional[dict]:
        return self.queries.get_query(("/api/user",), on_unauthorized="return_none")

    # Users
    def user(self, user_id: int) -> dict:
        return self.queries.get_query(("/api/users", user_id))

    def update_profile(self, changes) -> dict:
        return self.queries.mutate(
            "PUT", "/api/users/profile", to_payload(changes),
            invalidates=[("/api/user",), ("/api/users",)],
        )

    # Food listings
    def food_listings(self, lat: Optional[float] = None, lng: Optional[float] = None, radius: Optional[float] = None) -> list:
        if lat is None or lng is None or radius is None:
            return self.queries.get_query(("/api/food-listings",))
        return self.queries.get_query(("/api/food-listings", {"lat": lat, "lng": lng, "radius": radius}))

    def food_listing(self, listing_id: int) -> dict:
        return self.queries.get_query(("/api/food-listings", listing_id))

    def user_food_listings(self, user_id: int) -> list:
        return self.queries.get_query(("/api/users", user_id, "food-listings"))

    def create_food_listing(self, listing) -> dict:
        return self.queries.mutate(
            "POST", "/api/food-listings", to_payload(listing),
            invalidates=[("/api/food-listings",), ("/api/users",)],
        )

    def update_food_listing(self, listing_id: int, changes) -> dict:
        return self.queries.mutate(
            "PUT", f"/api/food-listings/{listing_id}", to_payload(changes),
            invalidates=[("/api/food-listings",), ("/api/users",)],
        )

    def delete_food_listing(self, listing_id: int):
        self.queries.mutate(
            "DELETE", f"/api/food-listings/{listing_id}",
            invalidates=[("/api/food-listings",), ("/api/users",)],
        )

    # Messages
    def messages(self) -> list:
        return self.queries.get_query(("/api/messages",))

    def conversation(self, user_id: int) -> list:
        return self.queries.get_query(("/api/messages", user_id))

    def unread_count(self) -> int:
        return self.queries.get_query(("/api/messages", "unread-count"))["unreadCount"]

    def send_message(self, receiver_id: int, content: str) -> dict:
        return self.queries.mutate(
            "POST", "/api/messages", {"receiverId": receiver_id, "content": content},
            invalidates=[("/api/messages",)],
        )

    def mark_message_read(self, message_id: int):
        self.queries.mutate("PUT", f"/api/messages/{message_id}/read", {}, invalidates=[("/api/messages",)])

    # Transactions
    def transactions(self) -> list:
        return self.queries.get_query(("/api/transactions",))

    def transaction(self, transaction_id: int) -> dict:
        return self.queries.get_query(("/api/transactions", transaction_id))

    def create_transaction(self, transaction) -> dict:
        return self.queries.mutate(
            "POST", "/api/transactions", to_payload(transaction), invalidates=[("/api/transactions",)]
        )

    def update_transaction(self, transaction_id: int, changes) -> dict:
        return self.queries.mutate(
            "PUT", f"/api/transactions/{transaction_id}", to_payload(changes), invalidates=[("/api/transactions",)]
        )

    # Reviews
    def user_reviews(self, user_id: int) -> list:
        return self.queries.get_query(("/api/users", user_id, "reviews"))

    def listing_reviews(self, listing_id: int) -> list:
        return self.queries.get_query(("/api/food-listings", listing_id, "reviews"))

    def create_review(self, review) -> dict:
        payload = to_payload(review)
        receiver_id = payload.get("receiverId", payload.get("receiver_id"))
        listing_id = payload.get("listingId", payload.get("listing_id"))
        return self.queries.mutate(
            "POST", "/api/reviews", payload,
            invalidates=[("/api/users", receiver_id, "reviews"), ("/api/food-listings", listing_id, "reviews")],
        )
