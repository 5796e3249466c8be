"""Authentication for the Salla merchant app."""

from app.middleware.auth import AuthContext, require_salla_token

__all__ = ["AuthContext", "require_salla_token"]
