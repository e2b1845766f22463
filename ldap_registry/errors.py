"""
Exception hierarchy shared by the query and membership-resolution engine.
"""

from typing import List, Optional


class SyncError(Exception):
    """Base exception for synchronization errors."""
    pass


class ProtocolError(SyncError):
    """Raised when communicating with the directory or parsing its data fails."""
    pass


class DataIntegrityError(SyncError):
    """Raised for missing ids, unresolvable members and duplicate groups when configured to be strict."""
    pass


class AuthenticationError(Exception):
    """Base exception for authentication-category failures."""
    pass


class ResolutionNotFound(AuthenticationError):
    """Raised when no user search base yields a DN for a user id."""

    def __init__(self, user_id: str, diagnostic: Optional[List[str]] = None):
        self.user_id = user_id
        self.diagnostic = list(diagnostic or [])
        message = f"Unable to resolve distinguished name for user '{user_id}'"
        if self.diagnostic:
            message += ": " + "; ".join(self.diagnostic)
        super().__init__(message)
