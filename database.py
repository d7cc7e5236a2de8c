from sqlalchemy import create_engine, Column, Integer, String, Float, Boolean, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import pytz

from config import DATABASE_URL, SQL_ECHO

def get_utc_now() -> datetime:
    """Current time in UTC, stored without tzinfo so every backend compares alike"""
    return datetime.now(pytz.utc).replace(tzinfo=None)

def make_engine(url: str = DATABASE_URL, **kwargs):
    """Create an engine with connection pooling suited to the database dialect"""
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    else:
        connect_args = {"connect_timeout": 10}  # 10 second connection timeout
    options = {
        "echo": SQL_ECHO,
        "pool_pre_ping": True,  # Verify connections before using them
        "connect_args": connect_args,
    }
    if not url.startswith("sqlite"):
        options["pool_recycle"] = 3600  # Recycle connections after 1 hour
    options.update(kwargs)
    return create_engine(url, **options)

# Engine and session factory for the configured database
engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create base class for models
Base = declarative_base()

# Database Models
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(100), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False)
    profile_image = Column(String(500), nullable=True)
    bio = Column(Text, nullable=True)

    # Location fields
    location = Column(String(200), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    created_at = Column(DateTime, default=get_utc_now, nullable=False)

class FoodListing(Base):
    __tablename__ = "food_listings"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    images = Column(JSON, nullable=True)  # List of image URLs
    price = Column(Float, nullable=True)
    is_free = Column(Boolean, default=False, nullable=False)
    quantity = Column(Integer, nullable=False)
    portion_size = Column(String(100), nullable=True)
    category = Column(String(100), nullable=False)  # e.g. "home-cooked", "baked-goods"
    ingredients = Column(Text, nullable=True)
    allergens = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    # Location
    location = Column(String(200), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Owner; no foreign key so deleting a user never cascades
    user_id = Column(Integer, index=True, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=get_utc_now, nullable=False)

class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    sender_id = Column(Integer, index=True, nullable=False)
    receiver_id = Column(Integer, index=True, nullable=False)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=get_utc_now, nullable=False)

class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    buyer_id = Column(Integer, index=True, nullable=False)
    seller_id = Column(Integer, index=True, nullable=False)
    listing_id = Column(Integer, index=True, nullable=False)
    status = Column(String(50), nullable=False)  # pending, completed, cancelled
    amount = Column(Float, nullable=True)
    is_paid = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=get_utc_now, nullable=False)

class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    reviewer_id = Column(Integer, index=True, nullable=False)  # User giving the rating
    receiver_id = Column(Integer, index=True, nullable=False)  # User being rated
    listing_id = Column(Integer, index=True, nullable=False)
    rating = Column(Integer, nullable=False)  # 1-5 stars
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=get_utc_now, nullable=False)


# Create all tables
def create_tables(bind=None):
    Base.metadata.create_all(bind=bind or engine)
