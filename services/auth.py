"""Identity adapter: token verification and user records mirrored from the identity provider."""
from typing import Optional
import logging
import os
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from models.users import User
from schemas.auth import TokenPayload, WebhookEvent, WebhookUserData


logger = logging.getLogger(__name__)

# Configuration
SECRET_KEY = os.getenv("AUTH_SECRET_KEY", "your-secret-key-here-change-in-production")
ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256")
AUDIENCE = os.getenv("AUTH_AUDIENCE")


class WebhookPayloadError(ValueError):
    """Raised when a lifecycle event lacks data required to apply it."""


class AuthService:
    """Service class for identity operations."""

    @staticmethod
    def decode_token(token: str) -> Optional[TokenPayload]:
        """Verify an identity provider token and return its claims."""
        options = {"verify_aud": AUDIENCE is not None}
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], audience=AUDIENCE, options=options)
            return TokenPayload(**payload)
        except (JWTError, ValueError):
            return None

    @staticmethod
    def get_user_by_id(db: Session, user_id: str) -> Optional[User]:
        """Get a user by ID."""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def ensure_user_exists(db: Session, payload: TokenPayload) -> Optional[User]:
        """
        Return the user row for a verified caller, creating it on first sight.

        A concurrent create (e.g. by the lifecycle webhook) is tolerated. Returns
        None when the row cannot be created, e.g. its email belongs to another user.
        """
        user = AuthService.get_user_by_id(db, payload.sub)
        if user:
            return user

        logger.info(f"User {payload.sub} not found in database, creating from token claims")
        if not payload.email:
            logger.warning(f"Token for user {payload.sub} carries no email, creating with minimal data")

        user = User(
            id=payload.sub,
            email=payload.email or f"{payload.sub}@unknown.com",
            name=payload.name,
            role="USER",
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            user = AuthService.get_user_by_id(db, payload.sub)
            if user is None:
                logger.error(f"Could not create user {payload.sub}: conflicting row, e.g. duplicate email")
                return None
            logger.info(f"User {payload.sub} already exists (race condition), continuing")
            return user

        db.refresh(user)
        logger.info(f"User {payload.sub} created successfully in database")
        return user

    @staticmethod
    def upsert_user(db: Session, user_id: str, email: Optional[str], name: Optional[str]) -> User:
        """Create or update a user from identity provider data."""
        user = AuthService.get_user_by_id(db, user_id)

        if user is None:
            user = User(id=user_id, email=email or f"{user_id}@unknown.com", name=name, role="USER")
            db.add(user)
        else:
            if email:
                user.email = email
            user.name = name

        db.commit()
        db.refresh(user)

        return user

    @staticmethod
    def delete_user(db: Session, user_id: str) -> bool:
        """Delete a user and their threads; missing users are not an error."""
        user = AuthService.get_user_by_id(db, user_id)
        if not user:
            logger.info(f"User {user_id} already deleted or doesn't exist")
            return False

        db.delete(user)
        db.commit()
        return True

    @staticmethod
    def handle_webhook_event(db: Session, event: WebhookEvent) -> None:
        """Apply a user lifecycle event from the identity provider."""
        data = WebhookUserData(**event.data)

        if event.type == "user.created":
            if not data.primary_email:
                raise WebhookPayloadError("Email address is required")
            AuthService.upsert_user(db, data.id, data.primary_email, data.full_name)
            logger.info(f"User {data.id} created/updated successfully via webhook")

        elif event.type == "user.updated":
            AuthService.upsert_user(db, data.id, data.primary_email, data.full_name)
            logger.info(f"User {data.id} updated successfully via webhook")

        elif event.type == "user.deleted":
            if AuthService.delete_user(db, data.id):
                logger.info(f"User {data.id} deleted successfully via webhook")

        else:
            logger.info(f"Ignoring webhook event {event.type}")
