"""
LDAP Auth Sync - Authenticate directory users and reconcile them with local user/group records.

This package resolves identities from an LDAP directory and keeps a local, versioned
record store of users and groups in sync with it on every authentication.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
