"""
User Service
Creates and updates merchant users from Salla resource owner data
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import OAuthToken, User

logger = logging.getLogger(__name__)


class UserService:
    """Service for managing merchant users."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email."""
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> Optional[User]:
        """Get user by ID."""
        return await self.db.get(User, user_id)

    async def upsert_from_owner(self, owner: dict) -> User:
        """
        Create or update a user from the Salla resource owner.

        Args:
            owner: Unwrapped user info (id, name, email, mobile, role, created_at)

        Returns:
            User: Created or updated user

        Raises:
            ValueError: If the owner has no email
        """
        email = owner.get("email")
        if not email:
            raise ValueError("Salla resource owner has no email")

        fields = {
            "name": owner.get("name"),
            "salla_id": str(owner["id"]) if owner.get("id") is not None else None,
            "mobile": owner.get("mobile"),
            "role": owner.get("role"),
            "salla_created_at": owner.get("created_at"),
        }

        user = await self.get_user_by_email(email)
        if user:
            for field, value in fields.items():
                setattr(user, field, value)
            logger.info(f"User updated from Salla: {email}")
        else:
            user = User(email=email, **fields)
            self.db.add(user)
            logger.info(f"New user from Salla: {email}")

        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def delete_user(self, user_id: UUID) -> bool:
        """Delete a user; their token record goes with them."""
        user = await self.get_user_by_id(user_id)
        if not user:
            return False
        await self.db.execute(delete(OAuthToken).where(OAuthToken.user_id == user_id))
        await self.db.delete(user)
        await self.db.commit()
        logger.info(f"User deleted: {user_id}")
        return True
