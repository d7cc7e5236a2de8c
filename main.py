import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import (
    authenticate_user, create_access_token, get_bearer_token, get_current_user,
    get_password_hash, get_storage,
)
from config import ACCESS_TOKEN_EXPIRE_MINUTES, CORS_ORIGINS, LOG_LEVEL, STORAGE_BACKEND
from schemas import (
    FoodListing, FoodListingCreate, FoodListingUpdate,
    Message, MessageCreate, UnreadCount,
    Review, ReviewCreate,
    Token, Transaction, TransactionCreate, TransactionUpdate,
    UserCreate, UserInDB, UserLogin, UserProfileUpdate, UserResponse,
)
from storage import DatabaseStorage, DuplicateError, Storage, StorageError, create_storage

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def first_error_message(exc: RequestValidationError) -> str:
    """Message of the first validation error, prefixed with the offending field"""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    error = errors[0]
    message = error.get("msg", "Invalid request")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    field = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    return f"{'.'.join(field)}: {message}" if field else message


# Authentication endpoints
@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(user: UserCreate, storage: Storage = Depends(get_storage)):
    """Register a new user"""
    if await storage.get_user_by_username(user.username):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already exists")
    if await storage.get_user_by_email(user.email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already exists")

    db_user = await storage.create_user(user, get_password_hash(user.password))
    logger.info("Registered user %s (id=%s)", db_user.username, db_user.id)
    return UserResponse.from_user(db_user)


@router.post("/login", response_model=Token)
async def login_user(user_credentials: UserLogin, storage: Storage = Depends(get_storage)):
    """Login user and return access token"""
    user = await authenticate_user(storage, user_credentials.username, user_credentials.password)
    if not user:
        logger.info("Failed login for %s", user_credentials.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = create_access_token(
        data={"sub": str(user.id)}, expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,  # in seconds
    }


@router.post("/logout", status_code=status.HTTP_200_OK)
async def logout_user(
    request: Request,
    current_user: UserInDB = Depends(get_current_user),
    token: Optional[str] = Depends(get_bearer_token),
):
    """Logout user by revoking their token"""
    request.app.state.revoked_tokens.add(token)
    return {"message": "Successfully logged out"}


@router.get("/user", response_model=UserResponse)
async def read_current_user(current_user: UserInDB = Depends(get_current_user)):
    """Get current user information"""
    return UserResponse.from_user(current_user)


# Food Listing Endpoints
@router.get("/food-listings", response_model=List[FoodListing])
async def get_food_listings(
    lat: Optional[str] = None,
    lng: Optional[str] = None,
    radius: Optional[str] = None,
    storage: Storage = Depends(get_storage),
):
    """All food listings, or the available ones within `radius` miles of lat/lng"""
    if lat and lng and radius:
        try:
            point = [float(lat), float(lng), float(radius)]
        except ValueError:
            point = None
        if (
            point is None
            or not all(math.isfinite(value) for value in point)
            or abs(point[0]) > 90
            or abs(point[1]) > 180
        ):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid location parameters")
        return await storage.get_food_listings_by_location(*point)

    return await storage.get_all_food_listings()


@router.get("/food-listings/{listing_id}", response_model=FoodListing)
async def get_food_listing(listing_id: int, storage: Storage = Depends(get_storage)):
    listing = await storage.get_food_listing(listing_id)
    if not listing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Food listing not found")
    return listing


@router.post("/food-listings", response_model=FoodListing, status_code=status.HTTP_201_CREATED)
async def create_food_listing(
    listing: FoodListingCreate,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Create a food listing owned by the current user"""
    db_listing = await storage.create_food_listing(listing, current_user.id)
    logger.info("User %s created food listing %s", current_user.id, db_listing.id)
    return db_listing


async def get_owned_listing(listing_id: int, current_user: UserInDB, storage: Storage, action: str) -> FoodListing:
    listing = await storage.get_food_listing(listing_id)
    if not listing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Food listing not found")
    if listing.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Not authorized to {action} this listing")
    return listing


@router.put("/food-listings/{listing_id}", response_model=FoodListing)
async def update_food_listing(
    listing_id: int,
    update: FoodListingUpdate,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Update a food listing (owner only)"""
    await get_owned_listing(listing_id, current_user, storage, "update")
    updated = await storage.update_food_listing(listing_id, update)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Food listing not found")
    return updated


@router.delete("/food-listings/{listing_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_food_listing(
    listing_id: int,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Delete a food listing (owner only)"""
    await get_owned_listing(listing_id, current_user, storage, "delete")
    if not await storage.delete_food_listing(listing_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Food listing not found")
    logger.info("User %s deleted food listing %s", current_user.id, listing_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/{user_id}/food-listings", response_model=List[FoodListing])
async def get_user_food_listings(user_id: int, storage: Storage = Depends(get_storage)):
    return await storage.get_food_listings_by_user(user_id)


@router.get("/food-listings/{listing_id}/reviews", response_model=List[Review])
async def get_listing_reviews(listing_id: int, storage: Storage = Depends(get_storage)):
    return await storage.get_reviews_by_listing(listing_id)


# Message Endpoints
@router.get("/messages", response_model=List[Message])
async def get_user_messages(
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """All messages sent or received by the current user"""
    return await storage.get_messages_by_user(current_user.id)


@router.get("/messages/unread-count", response_model=UnreadCount)
async def get_unread_messages_count(
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Get count of unread messages for current user"""
    return UnreadCount(unread_count=await storage.count_unread_messages(current_user.id))


@router.get("/messages/{user_id}", response_model=List[Message])
async def get_conversation(
    user_id: int,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Conversation between the current user and another user, oldest first"""
    return await storage.get_conversation(current_user.id, user_id)


@router.post("/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    message: MessageCreate,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    if not await storage.get_user(message.receiver_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receiver not found")
    return await storage.create_message(message, current_user.id)


@router.put("/messages/{message_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_message_as_read(
    message_id: int,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Mark a message as read (only the receiver can mark as read)"""
    message = await storage.get_message(message_id)
    if not message:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    if message.receiver_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to mark this message as read")

    if not await storage.mark_message_as_read(message_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Transaction Endpoints
@router.get("/transactions", response_model=List[Transaction])
async def get_user_transactions(
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    return await storage.get_transactions_by_user(current_user.id)


async def get_participant_transaction(transaction_id: int, current_user: UserInDB, storage: Storage, action: str) -> Transaction:
    transaction = await storage.get_transaction(transaction_id)
    if not transaction:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    if current_user.id not in (transaction.buyer_id, transaction.seller_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Not authorized to {action} this transaction")
    return transaction


@router.get("/transactions/{transaction_id}", response_model=Transaction)
async def get_transaction(
    transaction_id: int,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Fetch a transaction (buyer or seller only)"""
    return await get_participant_transaction(transaction_id, current_user, storage, "view")


@router.post("/transactions", response_model=Transaction, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    transaction: TransactionCreate,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Create a transaction with the current user as buyer"""
    db_transaction = await storage.create_transaction(transaction, current_user.id)
    logger.info("User %s opened transaction %s on listing %s", current_user.id, db_transaction.id, db_transaction.listing_id)
    return db_transaction


@router.put("/transactions/{transaction_id}", response_model=Transaction)
async def update_transaction(
    transaction_id: int,
    update: TransactionUpdate,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Update a transaction (buyer or seller only); status is free text"""
    await get_participant_transaction(transaction_id, current_user, storage, "update")
    updated = await storage.update_transaction(transaction_id, update)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return updated


# Review Endpoints
@router.get("/users/{user_id}/reviews", response_model=List[Review])
async def get_user_reviews(user_id: int, storage: Storage = Depends(get_storage)):
    """Reviews received by a user"""
    return await storage.get_reviews_by_user(user_id)


@router.post("/reviews", response_model=Review, status_code=status.HTTP_201_CREATED)
async def create_review(
    review: ReviewCreate,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    return await storage.create_review(review, current_user.id)


# User Profile Endpoints
@router.put("/users/profile", response_model=UserResponse)
async def update_user_profile(
    user_update: UserProfileUpdate,
    current_user: UserInDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    """Update current user's profile; the password cannot be changed here"""
    updated = await storage.update_user(current_user.id, user_update)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserResponse.from_user(updated)


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user_by_id(user_id: int, storage: Storage = Depends(get_storage)):
    """Public profile of a user"""
    user = await storage.get_user(user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserResponse.from_user(user)


# Exception handlers
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": first_error_message(exc)})


async def duplicate_error_handler(request: Request, exc: DuplicateError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})


# Lifespan event handler
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    storage = app.state.storage
    if isinstance(storage, DatabaseStorage):
        try:
            storage.create_tables()
            logger.info("Database tables created successfully")
        except StorageError:
            # Don't crash - requests will fail with 500 until the database is reachable
            logger.warning("Could not create database tables; database operations may fail")
    yield


def create_app(storage: Optional[Storage] = None) -> FastAPI:
    """Build the API around an injected storage backend"""
    app = FastAPI(
        title="FoodShare API",
        description="A marketplace connecting people with surplus food to people seeking it",
        version="1.0.0",
        docs_url="/docs",  # Swagger UI
        redoc_url="/redoc",  # ReDoc
        lifespan=lifespan,
    )
    app.state.storage = storage if storage is not None else create_storage(STORAGE_BACKEND)
    app.state.revoked_tokens = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,  # Allow credentials for authenticated requests
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(DuplicateError, duplicate_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Health check endpoint
    @app.get("/health", response_model=dict)
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,  # Auto-reload on code changes
        log_level="info",
    )
