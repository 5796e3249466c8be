"""
Database models for the Salla merchant app
"""

from app.models.user import User
from app.models.oauth_token import OAuthToken

__all__ = [
    "User",
    "OAuthToken",
]
