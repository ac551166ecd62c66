"""
Error taxonomy for the synchronization engine.

Every error carries a human-readable message that doubles as the authentication
diagnostic returned to the caller.
"""


class SyncError(Exception):
    """Base exception for authentication and synchronization errors."""
    pass


class DirectoryUnavailable(SyncError):
    """Raised when the directory cannot be reached or the service bind fails."""
    pass


class CredentialsRejected(SyncError):
    """Raised when the directory rejects the user's credentials."""
    pass


class RequiredGroupsMissing(SyncError):
    """Raised when the user does not resolve into any of the required groups."""

    def __init__(self, message: str = "Missing required LDAP groups."):
        super().__init__(message)


class UserNotPermitted(SyncError):
    """Raised when only existing local users may authenticate and none matches."""
    pass


class MembershipAssignmentRejected(SyncError):
    """Raised when the membership assigner vetoes the resolved group set."""
    pass
