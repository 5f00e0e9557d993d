"""
Identity Sync - Create directory identities that are missing from a token-gated identity API.

This package periodically reads users from an LDAP directory and from an
identity API, and creates in the API every user that only exists in LDAP.
"""

__version__ = "1.0.0"
__author__ = "Identity Sync Team"
