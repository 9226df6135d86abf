"""User, group and membership reconcilers, run in that order for each platform instance."""

from gitlab_ldap_sync.reconcilers.users import UserReconciler, UserSyncResult
from gitlab_ldap_sync.reconcilers.groups import GroupReconciler, GroupSyncResult
from gitlab_ldap_sync.reconcilers.memberships import MembershipReconciler, MembershipSyncResult

__all__ = [
    'UserReconciler', 'UserSyncResult',
    'GroupReconciler', 'GroupSyncResult',
    'MembershipReconciler', 'MembershipSyncResult',
]
