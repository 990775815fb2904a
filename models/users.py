"""User model mirrored from the identity provider."""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from .threads import Base, utcnow


class User(Base):
    """
    SQLAlchemy model for users.

    The primary key is the identity provider's stable user id; rows are
    created on first authenticated request or by lifecycle webhooks.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="USER")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    threads = relationship("Thread", cascade="all, delete-orphan")
