"""Built-in platform accounts and groups that reconciliation never touches."""

from typing import FrozenSet, Iterable, Optional

from gitlab_ldap_sync.models import canonical

BUILTIN_USER_NAMES = ('root', 'ghost', 'support-bot', 'alert-bot')

BUILTIN_GROUP_NAMES = ('Root', 'Users')


class ProtectedEntitySet:
    """
    Case-insensitive lookup of reserved user and group names.

    Consulted before ignore lists and before any create, update or delete decision.
    """

    def __init__(self, user_names: Optional[Iterable[str]] = None,
                 group_names: Optional[Iterable[str]] = None):
        self.user_names: FrozenSet[str] = frozenset(
            canonical(name) for name in (BUILTIN_USER_NAMES if user_names is None else user_names))
        self.group_names: FrozenSet[str] = frozenset(
            canonical(name) for name in (BUILTIN_GROUP_NAMES if group_names is None else group_names))

    def is_protected_user(self, username: str) -> bool:
        return canonical(username) in self.user_names

    def is_protected_group(self, name: str) -> bool:
        return canonical(name) in self.group_names


DEFAULT_PROTECTED = ProtectedEntitySet()
