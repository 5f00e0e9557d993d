"""
Exception types raised by the identity sync core.

Reader failures abort the reconciliation cycle that owns them; creation
failures are recorded per user and never abort a cycle.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class CredentialUnavailable(SyncError):
    """Raised when no access token can be obtained from the token endpoint."""
    pass


class DirectoryError(SyncError):
    """Base exception for LDAP directory read failures."""
    pass


class DirectoryConnectError(DirectoryError):
    """Raised when the LDAP server cannot be reached."""
    pass


class DirectoryAuthError(DirectoryError):
    """Raised when the LDAP bind is rejected."""
    pass


class DirectorySearchError(DirectoryError):
    """Raised when the LDAP search is rejected or fails before end of results."""
    pass


class DatastoreError(SyncError):
    """Base exception for identity API failures."""
    pass


class DatastoreUnauthorized(DatastoreError):
    """Raised when the identity API rejects the access token (401/403)."""
    pass


class DatastoreUnreachable(DatastoreError):
    """Raised on network errors, timeouts and 5xx responses."""
    pass


class DatastoreProtocolError(DatastoreError):
    """Raised when the identity API answers with something we cannot interpret."""
    pass


class CreationFailed(SyncError):
    """Raised when a single user could not be created in the identity API."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Failed to create user {key}: {reason}")
