"""
GitLab LDAP Sync - Reconcile GitLab users, groups and group memberships against an LDAP directory.

This package reads users and groups from an authoritative LDAP directory and
converges one or more self-hosted GitLab instances toward that state through
their REST APIs. It is meant to be run periodically as a batch job.
"""

__version__ = "1.0.0"
__author__ = "GitLab LDAP Sync Team"
