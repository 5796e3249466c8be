"""
User Model - Salla merchant account owner
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    A merchant user who authorized the app through Salla.
    Owns at most one OAuth token record.
    """

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Salla resource owner details
    name = Column(String(255))
    email = Column(String(255), unique=True, nullable=False, index=True)
    salla_id = Column(String(50), index=True)
    mobile = Column(String(50))
    role = Column(String(50))
    salla_created_at = Column(String(50))

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    token = relationship(
        "OAuthToken",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"

    def to_dict(self) -> dict:
        """Public representation (no token material)."""
        return {
            "id": str(self.id),
            "name": self.name,
            "email": self.email,
            "salla_id": self.salla_id,
            "mobile": self.mobile,
            "role": self.role,
            "salla_created_at": self.salla_created_at,
        }
