"""
Directory snapshot construction.

Raw LDAP entries are validated and normalized once per run into DirectoryUser and
DirectoryGroup records. Group members are resolved to usernames by MemberResolver, and
the administrator/external flags granted by group membership are folded over all groups
before the user records are closed.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Set

from gitlab_ldap_sync.errors import DuplicateEntityError, RecordValidationError
from gitlab_ldap_sync.logging_setup import NOTICE
from gitlab_ldap_sync.models import DirectoryGroup, DirectoryUser, MemberReference, canonical
from gitlab_ldap_sync.naming import group_display_name, group_path, normalize_username

logger = logging.getLogger(__name__)


def _first_value(entry: Dict[str, Any], attribute: str) -> str:
    values = entry.get('attributes', {}).get(attribute.lower())
    if values is None:
        raise RecordValidationError(f"Missing attribute \"{attribute}\".")
    if not isinstance(values, list) or not values or not isinstance(values[0], str):
        raise RecordValidationError(f"Invalid attribute \"{attribute}\".")
    value = values[0].strip()
    if not value:
        raise RecordValidationError(f"Empty attribute \"{attribute}\".")
    return value


def _entry_dn(entry: Dict[str, Any]) -> str:
    dn = entry.get('dn')
    if not isinstance(dn, str):
        raise RecordValidationError("Missing distinguished name.")
    dn = dn.strip()
    if not dn:
        raise RecordValidationError("Empty distinguished name.")
    return dn


class MemberResolver:
    """
    Map raw group member references to known usernames.

    Under MemberReference.LOGIN a reference is compared with each user's match key, under
    MemberReference.DN with each user's distinguished name; both comparisons ignore case.
    A reference shared by more than one user is ambiguous and never resolved.
    """

    def __init__(self, users: Iterable[DirectoryUser], scheme: MemberReference):
        self.scheme = scheme
        self._index: Dict[str, List[str]] = {}
        for user in users:
            reference = user.match_key if scheme is MemberReference.LOGIN else user.external_id
            self._index.setdefault(canonical(reference), []).append(user.username)

        for reference, usernames in self._index.items():
            if len(usernames) > 1:
                logger.warning(f"Directory users {', '.join(usernames)} share the member reference "
                               f"\"{reference}\", it will not be resolved.")

    def resolve(self, reference: str) -> Optional[str]:
        """
        Resolve one member reference.

        Args:
            reference: Raw value of the group member attribute

        Returns:
            Username, or None when no user matches

        Raises:
            DuplicateEntityError: If several users match the reference
        """
        usernames = self._index.get(canonical(reference), [])
        if len(usernames) > 1:
            raise DuplicateEntityError(
                f"Member reference \"{reference}\" is ambiguous ({', '.join(usernames)}).")
        return usernames[0] if usernames else None


@dataclass
class DirectorySnapshot:
    """Normalized directory state, keyed and ordered by canonical key."""
    users: Dict[str, DirectoryUser] = field(default_factory=dict)
    groups: Dict[str, DirectoryGroup] = field(default_factory=dict)
    rejected: int = 0

    def desired_users(self) -> Dict[str, str]:
        return {key: user.username for key, user in self.users.items()}

    def desired_groups(self) -> Dict[str, str]:
        return {key: group.normalized_name for key, group in self.groups.items()}

    def user(self, username: str) -> Optional[DirectoryUser]:
        return self.users.get(canonical(username))

    def group(self, name: str) -> Optional[DirectoryGroup]:
        return self.groups.get(canonical(name))


class DirectorySnapshotBuilder:
    """
    Build a DirectorySnapshot from raw user and group entries.

    Args:
        queries: ldap.queries section of the configuration
        sync_config: sync section of the configuration
    """

    def __init__(self, queries: Dict[str, Any], sync_config: Dict[str, Any]):
        self.unique_attribute = queries['user_unique_attribute']
        self.match_attribute = queries.get('user_match_attribute') or self.unique_attribute
        self.name_attribute = queries['user_name_attribute']
        self.email_attribute = queries['user_email_attribute']
        self.group_attribute = queries['group_unique_attribute']
        self.member_attribute = queries['group_member_attribute']
        self.member_reference = MemberReference(queries['group_member_reference'])

        self.user_names_to_ignore = {canonical(n) for n in sync_config.get('user_names_to_ignore', [])}
        self.group_names_to_ignore = {canonical(n) for n in sync_config.get('group_names_to_ignore', [])}
        self.admin_groups = {canonical(n) for n in sync_config.get('group_names_of_administrators', [])}
        self.external_groups = {canonical(n) for n in sync_config.get('group_names_of_external', [])}

    def build(self, user_entries: List[Dict[str, Any]], group_entries: List[Dict[str, Any]]) -> DirectorySnapshot:
        snapshot = DirectorySnapshot()

        logger.log(NOTICE, f"{len(user_entries)} directory user(s) found.")
        users = self._build_users(user_entries, snapshot)

        logger.log(NOTICE, f"{len(group_entries)} directory group(s) found.")
        groups = self._build_groups(group_entries, users, snapshot)

        snapshot.users = dict(sorted(self._fold_flags(users, groups).items()))
        snapshot.groups = dict(sorted(groups.items()))

        logger.log(NOTICE, f"{len(snapshot.users)} directory user(s) recognised.")
        logger.log(NOTICE, f"{len(snapshot.groups)} directory group(s) recognised.")
        return snapshot

    def parse_user(self, entry: Dict[str, Any]) -> DirectoryUser:
        """
        Validate and normalize one user entry.

        Raises:
            RecordValidationError: If the DN or a required attribute is missing or empty
        """
        dn = _entry_dn(entry)
        try:
            raw_username = _first_value(entry, self.unique_attribute)
            match_key = _first_value(entry, self.match_attribute)
            full_name = _first_value(entry, self.name_attribute)
            email = _first_value(entry, self.email_attribute)
        except RecordValidationError as e:
            raise RecordValidationError(f"[{dn}] {e}")

        username = normalize_username(raw_username)
        if not username:
            raise RecordValidationError(f"[{dn}] User name \"{raw_username}\" is empty once normalized.")

        return DirectoryUser(username=username, external_id=dn, match_key=match_key,
                             full_name=full_name, email=email)

    def _build_users(self, entries: List[Dict[str, Any]], snapshot: DirectorySnapshot) -> Dict[str, DirectoryUser]:
        users: Dict[str, DirectoryUser] = {}
        for n, entry in enumerate(entries, start=1):
            try:
                user = self.parse_user(entry)
            except RecordValidationError as e:
                logger.error(f"User #{n}: {e}")
                snapshot.rejected += 1
                continue

            if user.key in self.user_names_to_ignore:
                logger.info(f"User \"{user.username}\" in ignore list.")
                continue

            if user.key in users:
                logger.warning(f"Duplicate directory user \"{user.username}\" [{user.external_id}].")
                snapshot.rejected += 1
                continue

            logger.info(f"Found directory user \"{user.username}\" [{user.external_id}].")
            users[user.key] = user
        return users

    def _build_groups(self, entries: List[Dict[str, Any]], users: Dict[str, DirectoryUser],
                      snapshot: DirectorySnapshot) -> Dict[str, DirectoryGroup]:
        resolver = MemberResolver(users.values(), self.member_reference)
        groups: Dict[str, DirectoryGroup] = {}

        for n, entry in enumerate(entries, start=1):
            try:
                name = _first_value(entry, self.group_attribute)
            except RecordValidationError as e:
                logger.error(f"Group #{n}: {e}")
                snapshot.rejected += 1
                continue

            normalized_name = group_display_name(name)
            if canonical(name) in self.group_names_to_ignore or canonical(normalized_name) in self.group_names_to_ignore:
                logger.info(f"Group \"{name}\" in ignore list.")
                continue

            if not normalized_name:
                logger.error(f"Group #{n}: Name \"{name}\" is empty once normalized.")
                snapshot.rejected += 1
                continue

            if canonical(normalized_name) in groups:
                logger.warning(f"Duplicate directory group \"{name}\".")
                snapshot.rejected += 1
                continue

            logger.info(f"Found directory group \"{name}\".")
            members = self._resolve_members(n, name, entry, users, resolver)
            group = DirectoryGroup(
                name=name,
                normalized_name=normalized_name,
                normalized_path=group_path(name),
                members=tuple(members),
                members_grant_admin=canonical(name) in self.admin_groups,
                members_grant_external=canonical(name) in self.external_groups,
            )
            if group.members_grant_admin:
                logger.info(f"Group \"{name}\" members are administrators.")
            if group.members_grant_external:
                logger.info(f"Group \"{name}\" members are external.")
            logger.log(NOTICE, f"{len(group.members)} directory group \"{name}\" member(s) recognised.")
            groups[group.key] = group

        return groups

    def _resolve_members(self, n: int, name: str, entry: Dict[str, Any],
                         users: Dict[str, DirectoryUser], resolver: MemberResolver) -> List[str]:
        references = entry.get('attributes', {}).get(self.member_attribute.lower())
        if references is None:
            logger.warning(f"Group #{n}: Missing attribute \"{self.member_attribute}\". "
                           f"(Could also mean this group has no members.)")
            return []

        members: List[str] = []
        seen: Set[str] = set()
        for o, reference in enumerate(references, start=1):
            reference = reference.strip() if isinstance(reference, str) else ''
            if not reference:
                logger.warning(f"Group #{n} / member #{o}: Empty member attribute \"{self.member_attribute}\".")
                continue

            try:
                username = resolver.resolve(reference)
            except DuplicateEntityError as e:
                logger.error(f"Group #{n} / member #{o}: {e}")
                continue

            if username is None:
                if canonical(reference) in self.user_names_to_ignore:
                    logger.info(f"Group #{n} / member #{o}: User \"{reference}\" in ignore list.")
                else:
                    logger.warning(f"Group #{n} / member #{o}: No matching user name found for \"{reference}\".")
                continue

            if canonical(username) not in users:
                logger.warning(f"Group #{n} / member #{o}: User not found \"{username}\".")
                continue

            if canonical(username) in seen:
                logger.warning(f"Duplicate directory group \"{name}\" member \"{username}\".")
                continue

            seen.add(canonical(username))
            members.append(username)
            logger.info(f"Found directory group \"{name}\" member \"{username}\".")

        return sorted(members, key=canonical)

    def _fold_flags(self, users: Dict[str, DirectoryUser],
                    groups: Dict[str, DirectoryGroup]) -> Dict[str, DirectoryUser]:
        """Grant the admin/external flags of every group to its members; flags are never revoked."""
        admins: Set[str] = set()
        externals: Set[str] = set()
        for group in groups.values():
            if group.members_grant_admin:
                admins.update(group.member_keys)
            if group.members_grant_external:
                externals.update(group.member_keys)

        folded = {}
        for key, user in users.items():
            if key in admins or key in externals:
                user = replace(user, is_admin=user.is_admin or key in admins,
                               is_external=user.is_external or key in externals)
                logger.debug(f"User \"{user.username}\": admin={user.is_admin}, external={user.is_external}")
            folded[key] = user
        return folded
