"""
Storage interface for FoodShare entities.

``Storage`` is the contract the HTTP layer talks to. ``MemStorage`` keeps
everything in per-instance dictionaries and is used for tests and local
experiments; ``DatabaseStorage`` persists through SQLAlchemy. Pick one with
``create_storage`` at process start.
"""

import logging
from abc import ABC, abstractmethod
from functools import wraps
from math import radians, sin, cos, sqrt, atan2
from typing import Dict, List, Optional

from sqlalchemy import or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

import database
from database import get_utc_now
from schemas import (
    FoodListing, FoodListingCreate, FoodListingUpdate,
    Message, MessageCreate,
    Review, ReviewCreate,
    Transaction, TransactionCreate, TransactionUpdate,
    UserCreate, UserInDB, UserProfileUpdate,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3958.8


class StorageError(Exception):
    """The backing store failed or is unavailable"""


class DuplicateError(StorageError):
    """A unique field (username or email) is already taken"""


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in miles between two points given in degrees"""
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    a = min(1.0, max(0.0, a))
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_RADIUS_MILES * c


def within_radius(listing: FoodListing, lat: float, lng: float, radius_miles: float) -> bool:
    if listing.latitude is None or listing.longitude is None:
        return False
    if not listing.is_available:
        return False
    return calculate_distance(lat, lng, listing.latitude, listing.longitude) <= radius_miles


def conversation_order(message: Message):
    return (message.created_at, message.id)


class Storage(ABC):

    # User operations
    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserInDB]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[UserInDB]: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[UserInDB]: ...

    @abstractmethod
    async def create_user(self, user: UserCreate, hashed_password: str) -> UserInDB: ...

    @abstractmethod
    async def update_user(self, user_id: int, update: UserProfileUpdate) -> Optional[UserInDB]: ...

    # Food listing operations
    @abstractmethod
    async def create_food_listing(self, listing: FoodListingCreate, user_id: int) -> FoodListing: ...

    @abstractmethod
    async def get_food_listing(self, listing_id: int) -> Optional[FoodListing]: ...

    @abstractmethod
    async def get_food_listings_by_user(self, user_id: int) -> List[FoodListing]: ...

    @abstractmethod
    async def get_food_listings_by_location(self, lat: float, lng: float, radius_miles: float) -> List[FoodListing]: ...

    @abstractmethod
    async def update_food_listing(self, listing_id: int, update: FoodListingUpdate) -> Optional[FoodListing]: ...

    @abstractmethod
    async def delete_food_listing(self, listing_id: int) -> bool: ...

    @abstractmethod
    async def get_all_food_listings(self) -> List[FoodListing]: ...

    # Message operations
    @abstractmethod
    async def create_message(self, message: MessageCreate, sender_id: int) -> Message: ...

    @abstractmethod
    async def get_message(self, message_id: int) -> Optional[Message]: ...

    @abstractmethod
    async def get_messages_by_user(self, user_id: int) -> List[Message]: ...

    @abstractmethod
    async def get_conversation(self, user1_id: int, user2_id: int) -> List[Message]: ...

    @abstractmethod
    async def mark_message_as_read(self, message_id: int) -> bool: ...

    @abstractmethod
    async def count_unread_messages(self, user_id: int) -> int: ...

    # Transaction operations
    @abstractmethod
    async def create_transaction(self, transaction: TransactionCreate, buyer_id: int) -> Transaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: int) -> Optional[Transaction]: ...

    @abstractmethod
    async def get_transactions_by_user(self, user_id: int) -> List[Transaction]: ...

    @abstractmethod
    async def update_transaction(self, transaction_id: int, update: TransactionUpdate) -> Optional[Transaction]: ...

    # Review operations
    @abstractmethod
    async def create_review(self, review: ReviewCreate, reviewer_id: int) -> Review: ...

    @abstractmethod
    async def get_reviews_by_user(self, user_id: int) -> List[Review]: ...

    @abstractmethod
    async def get_reviews_by_listing(self, listing_id: int) -> List[Review]: ...


class MemStorage(Storage):
    """Dictionary-backed storage; every instance starts empty with its own id counters"""

    def __init__(self):
        self.users: Dict[int, UserInDB] = {}
        self.food_listings: Dict[int, FoodListing] = {}
        self.messages: Dict[int, Message] = {}
        self.transactions: Dict[int, Transaction] = {}
        self.reviews: Dict[int, Review] = {}
        self._counters: Dict[str, int] = {}

    def _next_id(self, entity: str) -> int:
        self._counters[entity] = self._counters.get(entity, 0) + 1
        return self._counters[entity]

    def _check_unique(self, username: Optional[str], email: Optional[str], exclude_id: Optional[int] = None):
        for user in self.users.values():
            if user.id == exclude_id:
                continue
            if username is not None and user.username == username:
                raise DuplicateError("Username already exists")
            if email is not None and user.email == email:
                raise DuplicateError("Email already exists")

    # User operations
    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def get_user_by_username(self, username):
        return next((u for u in self.users.values() if u.username == username), None)

    async def get_user_by_email(self, email):
        return next((u for u in self.users.values() if u.email == email), None)

    async def create_user(self, user, hashed_password):
        self._check_unique(user.username, user.email)
        record = UserInDB(
            **user.model_dump(exclude={"password"}),
            id=self._next_id("users"),
            hashed_password=hashed_password,
            created_at=get_utc_now(),
        )
        self.users[record.id] = record
        return record

    async def update_user(self, user_id, update):
        user = self.users.get(user_id)
        if user is None:
            return None
        changes = update.changes()
        self._check_unique(changes.get("username"), changes.get("email"), exclude_id=user_id)
        updated = user.model_copy(update=changes)
        self.users[user_id] = updated
        return updated

    # Food listing operations
    async def create_food_listing(self, listing, user_id):
        record = FoodListing(
            **listing.model_dump(),
            id=self._next_id("food_listings"),
            user_id=user_id,
            is_available=True,
            created_at=get_utc_now(),
        )
        self.food_listings[record.id] = record
        return record

    async def get_food_listing(self, listing_id):
        return self.food_listings.get(listing_id)

    async def get_food_listings_by_user(self, user_id):
        return [l for l in self.food_listings.values() if l.user_id == user_id]

    async def get_food_listings_by_location(self, lat, lng, radius_miles):
        return [l for l in self.food_listings.values() if within_radius(l, lat, lng, radius_miles)]

    async def update_food_listing(self, listing_id, update):
        listing = self.food_listings.get(listing_id)
        if listing is None:
            return None
        updated = listing.model_copy(update=update.changes())
        self.food_listings[listing_id] = updated
        return updated

    async def delete_food_listing(self, listing_id):
        return self.food_listings.pop(listing_id, None) is not None

    async def get_all_food_listings(self):
        return list(self.food_listings.values())

    # Message operations
    async def create_message(self, message, sender_id):
        record = Message(
            **message.model_dump(),
            id=self._next_id("messages"),
            sender_id=sender_id,
            is_read=False,
            created_at=get_utc_now(),
        )
        self.messages[record.id] = record
        return record

    async def get_message(self, message_id):
        return self.messages.get(message_id)

    async def get_messages_by_user(self, user_id):
        messages = [m for m in self.messages.values() if user_id in (m.sender_id, m.receiver_id)]
        return sorted(messages, key=conversation_order)

    async def get_conversation(self, user1_id, user2_id):
        pair = {user1_id, user2_id}
        messages = [m for m in self.messages.values() if {m.sender_id, m.receiver_id} == pair]
        return sorted(messages, key=conversation_order)

    async def mark_message_as_read(self, message_id):
        message = self.messages.get(message_id)
        if message is None:
            return False
        self.messages[message_id] = message.model_copy(update={"is_read": True})
        return True

    async def count_unread_messages(self, user_id):
        return sum(1 for m in self.messages.values() if m.receiver_id == user_id and not m.is_read)

    # Transaction operations
    async def create_transaction(self, transaction, buyer_id):
        record = Transaction(
            **transaction.model_dump(),
            id=self._next_id("transactions"),
            buyer_id=buyer_id,
            created_at=get_utc_now(),
        )
        self.transactions[record.id] = record
        return record

    async def get_transaction(self, transaction_id):
        return self.transactions.get(transaction_id)

    async def get_transactions_by_user(self, user_id):
        return [t for t in self.transactions.values() if user_id in (t.buyer_id, t.seller_id)]

    async def update_transaction(self, transaction_id, update):
        transaction = self.transactions.get(transaction_id)
        if transaction is None:
            return None
        updated = transaction.model_copy(update=update.changes())
        self.transactions[transaction_id] = updated
        return updated

    # Review operations
    async def create_review(self, review, reviewer_id):
        record = Review(
            **review.model_dump(),
            id=self._next_id("reviews"),
            reviewer_id=reviewer_id,
            created_at=get_utc_now(),
        )
        self.reviews[record.id] = record
        return record

    async def get_reviews_by_user(self, user_id):
        return [r for r in self.reviews.values() if r.receiver_id == user_id]

    async def get_reviews_by_listing(self, listing_id):
        return [r for r in self.reviews.values() if r.listing_id == listing_id]


def wrap_db_errors(method):
    """Translate SQLAlchemy failures into storage errors"""
    @wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except IntegrityError as e:
            logger.warning("Integrity error in %s: %s", method.__name__, e.orig)
            raise DuplicateError("Username or email already exists") from e
        except SQLAlchemyError as e:
            logger.exception("Database error in %s", method.__name__)
            raise StorageError(f"Database error in {method.__name__}") from e
    return wrapper


class DatabaseStorage(Storage):
    """SQLAlchemy-backed storage; ids and timestamps come from the database layer"""

    def __init__(self, session_factory: sessionmaker = database.SessionLocal):
        self.session_factory = session_factory

    def create_tables(self):
        try:
            database.create_tables(bind=self.session_factory.kw.get("bind"))
        except SQLAlchemyError as e:
            logger.exception("Could not create database tables")
            raise StorageError("Could not create database tables") from e

    def _add(self, row, schema):
        with self.session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return schema.model_validate(row)

    def _first(self, model, schema, *criteria):
        with self.session_factory() as db:
            row = db.query(model).filter(*criteria).first()
            return schema.model_validate(row) if row else None

    def _all(self, model, schema, *criteria, order_by=None):
        with self.session_factory() as db:
            query = db.query(model).filter(*criteria)
            query = query.order_by(*(order_by or (model.id,)))
            return [schema.model_validate(row) for row in query.all()]

    def _update(self, model, schema, row_id, changes: dict):
        with self.session_factory() as db:
            row = db.query(model).filter(model.id == row_id).first()
            if not row:
                return None
            for field, value in changes.items():
                setattr(row, field, value)
            db.commit()
            db.refresh(row)
            return schema.model_validate(row)

    # User operations
    @wrap_db_errors
    async def get_user(self, user_id):
        return self._first(database.User, UserInDB, database.User.id == user_id)

    @wrap_db_errors
    async def get_user_by_username(self, username):
        return self._first(database.User, UserInDB, database.User.username == username)

    @wrap_db_errors
    async def get_user_by_email(self, email):
        return self._first(database.User, UserInDB, database.User.email == email)

    @wrap_db_errors
    async def create_user(self, user, hashed_password):
        row = database.User(**user.model_dump(exclude={"password"}), hashed_password=hashed_password)
        return self._add(row, UserInDB)

    @wrap_db_errors
    async def update_user(self, user_id, update):
        return self._update(database.User, UserInDB, user_id, update.changes())

    # Food listing operations
    @wrap_db_errors
    async def create_food_listing(self, listing, user_id):
        row = database.FoodListing(**listing.model_dump(), user_id=user_id, is_available=True)
        return self._add(row, FoodListing)

    @wrap_db_errors
    async def get_food_listing(self, listing_id):
        return self._first(database.FoodListing, FoodListing, database.FoodListing.id == listing_id)

    @wrap_db_errors
    async def get_food_listings_by_user(self, user_id):
        return self._all(database.FoodListing, FoodListing, database.FoodListing.user_id == user_id)

    @wrap_db_errors
    async def get_food_listings_by_location(self, lat, lng, radius_miles):
        # Full scan of candidate rows; the distance filter runs in Python
        candidates = self._all(
            database.FoodListing, FoodListing,
            database.FoodListing.is_available == True,
            database.FoodListing.latitude.isnot(None),
            database.FoodListing.longitude.isnot(None),
        )
        return [l for l in candidates if within_radius(l, lat, lng, radius_miles)]

    @wrap_db_errors
    async def update_food_listing(self, listing_id, update):
        return self._update(database.FoodListing, FoodListing, listing_id, update.changes())

    @wrap_db_errors
    async def delete_food_listing(self, listing_id):
        with self.session_factory() as db:
            deleted = db.query(database.FoodListing).filter(database.FoodListing.id == listing_id).delete()
            db.commit()
            return deleted > 0

    @wrap_db_errors
    async def get_all_food_listings(self):
        return self._all(database.FoodListing, FoodListing)

    # Message operations
    @wrap_db_errors
    async def create_message(self, message, sender_id):
        row = database.Message(**message.model_dump(), sender_id=sender_id, is_read=False)
        return self._add(row, Message)

    @wrap_db_errors
    async def get_message(self, message_id):
        return self._first(database.Message, Message, database.Message.id == message_id)

    @wrap_db_errors
    async def get_messages_by_user(self, user_id):
        Row = database.Message
        return self._all(
            Row, Message,
            or_(Row.sender_id == user_id, Row.receiver_id == user_id),
            order_by=(Row.created_at, Row.id),
        )

    @wrap_db_errors
    async def get_conversation(self, user1_id, user2_id):
        Row = database.Message
        return self._all(
            Row, Message,
            or_(
                and_(Row.sender_id == user1_id, Row.receiver_id == user2_id),
                and_(Row.sender_id == user2_id, Row.receiver_id == user1_id),
            ),
            order_by=(Row.created_at, Row.id),
        )

    @wrap_db_errors
    async def mark_message_as_read(self, message_id):
        with self.session_factory() as db:
            updated = db.query(database.Message).filter(database.Message.id == message_id).update(
                {database.Message.is_read: True}
            )
            db.commit()
            return updated > 0

    @wrap_db_errors
    async def count_unread_messages(self, user_id):
        with self.session_factory() as db:
            return db.query(database.Message).filter(
                database.Message.receiver_id == user_id,
                database.Message.is_read == False,
            ).count()

    # Transaction operations
    @wrap_db_errors
    async def create_transaction(self, transaction, buyer_id):
        row = database.Transaction(**transaction.model_dump(), buyer_id=buyer_id)
        return self._add(row, Transaction)

    @wrap_db_errors
    async def get_transaction(self, transaction_id):
        return self._first(database.Transaction, Transaction, database.Transaction.id == transaction_id)

    @wrap_db_errors
    async def get_transactions_by_user(self, user_id):
        Row = database.Transaction
        return self._all(Row, Transaction, or_(Row.buyer_id == user_id, Row.seller_id == user_id))

    @wrap_db_errors
    async def update_transaction(self, transaction_id, update):
        return self._update(database.Transaction, Transaction, transaction_id, update.changes())

    # Review operations
    @wrap_db_errors
    async def create_review(self, review, reviewer_id):
        row = database.Review(**review.model_dump(), reviewer_id=reviewer_id)
        return self._add(row, Review)

    @wrap_db_errors
    async def get_reviews_by_user(self, user_id):
        return self._all(database.Review, Review, database.Review.receiver_id == user_id)

    @wrap_db_errors
    async def get_reviews_by_listing(self, listing_id):
        return self._all(database.Review, Review, database.Review.listing_id == listing_id)


def create_storage(backend: str = "database", session_factory: Optional[sessionmaker] = None) -> Storage:
    """Build the storage backend selected at process start"""
    if backend == "memory":
        logger.info("Using in-memory storage")
        return MemStorage()
    if backend == "database":
        logger.info("Using database storage")
        return DatabaseStorage(session_factory or database.SessionLocal)
    raise ValueError(f"Unknown storage backend: {backend}")
