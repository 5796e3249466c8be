"""
OAuthToken Model - Encrypted Salla OAuth credentials
"""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.user import utcnow


class OAuthToken(Base):
    """
    Salla OAuth credentials for a single user.

    access_token and refresh_token hold ciphertext whenever non-empty.
    expires_at is authoritative; expires_in is the provider TTL kept for
    rows written before expires_at existed.
    """

    __tablename__ = "oauth_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Salla merchant (store) id, informational only
    merchant = Column(BigInteger, nullable=True)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False, index=True)
    refresh_token = Column(Text, nullable=False, default="")

    # Expiry
    expires_in = Column(BigInteger, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="token")

    def __repr__(self) -> str:
        return f"<OAuthToken user={self.user_id} expires_at={self.expires_at}>"

    def to_dict(self) -> dict:
        """Expiry metadata only; token material is never serialized."""
        return {
            "merchant": self.merchant,
            "expires_in": self.expires_in,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
