"""
LDAP Registry - Query users and groups from several LDAP search bases.

This package provides the query and membership-resolution engine used to
synchronize people and groups (with fully resolved group membership) from one
or more LDAP directory trees into an identity store.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
