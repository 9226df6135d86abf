"""
Group membership reconciliation.

Runs last, over the post-reconciliation group and user identifiers, so that entities
created earlier in the run (or simulated in a dry run) take part. Access levels are set
when a member is added and are not reconciled afterwards.
"""

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, Set

from gitlab_ldap_sync.classifier import EntityClassifier
from gitlab_ldap_sync.directory import DirectorySnapshot
from gitlab_ldap_sync.executor import ActionExecutor
from gitlab_ldap_sync.logging_setup import NOTICE
from gitlab_ldap_sync.models import PlatformId, PlatformMembership, SyncOptions, canonical, is_simulated
from gitlab_ldap_sync.naming import group_path
from gitlab_ldap_sync.platforms.base import PlatformAPIBase
from gitlab_ldap_sync.protected import DEFAULT_PROTECTED, ProtectedEntitySet
from gitlab_ldap_sync.reconcilers.groups import GroupSyncResult
from gitlab_ldap_sync.reconcilers.users import UserSyncResult

logger = logging.getLogger(__name__)


@dataclass
class MembershipSyncResult:
    added: Dict[PlatformId, Dict[PlatformId, str]] = field(default_factory=dict)
    removed: Dict[PlatformId, Dict[PlatformId, str]] = field(default_factory=dict)
    groups_synced: int = 0
    skipped: int = 0

    @property
    def added_count(self) -> int:
        return sum(len(members) for members in self.added.values())

    @property
    def removed_count(self) -> int:
        return sum(len(members) for members in self.removed.values())


class MembershipReconciler:
    """
    Reconcile the direct members of every synchronised platform group.

    Args:
        platform: Platform collaborator
        executor: Choke-point for mutating calls
        options: Reconciliation policy of the instance
        protected: Built-in accounts never added or removed
    """

    def __init__(self, platform: PlatformAPIBase, executor: ActionExecutor, options: SyncOptions,
                 protected: ProtectedEntitySet = DEFAULT_PROTECTED):
        self.platform = platform
        self.executor = executor
        self.options = options
        self.protected = protected

    def reconcile(self, snapshot: DirectorySnapshot, users: UserSyncResult,
                  groups: GroupSyncResult) -> MembershipSyncResult:
        result = MembershipSyncResult()
        user_ids = users.reconciled_ids()

        logger.log(NOTICE, "Synchronising platform group members with directory group members...")
        targets = sorted(groups.membership_targets().items(), key=lambda item: (canonical(item[1]), str(item[0])))
        for group_id, name in targets:
            self._sync_group(snapshot, group_id, name, user_ids, users.bot_ids, result)
            result.groups_synced += 1

        return result

    def _sync_group(self, snapshot: DirectorySnapshot, group_id: PlatformId, name: str,
                    user_ids: Dict[str, PlatformId], bot_ids: Set[PlatformId], result: MembershipSyncResult):
        path = group_path(name)
        directory_group = snapshot.group(name)
        if directory_group is None:
            logger.warning(f"Platform group #{group_id} \"{name}\" [{path}] has no directory counterpart, "
                           f"all of its members will be removed.")
            desired = {}
        else:
            desired = {canonical(member): member for member in directory_group.members
                       if canonical(member) in user_ids}
        logger.log(NOTICE, f"Synchronising {len(desired)} member(s) for group #{group_id} \"{name}\" [{path}]...")

        classifier = EntityClassifier(
            'group member', partial(PlatformMembership.from_record, group_id), lambda member: member.username,
            is_protected=self.protected.is_protected_user,
            is_ignored=self.options.ignores_user,
            is_excluded=lambda member: member.user_id in bot_ids,
        )

        if is_simulated(group_id):
            current = {}
        else:
            current = classifier.collect(self.platform.list_group_members(group_id))
        classification = classifier.classify(current, desired)
        result.skipped += classifier.rejected
        logger.log(NOTICE, f"{len(classification.found)} platform group \"{name}\" [{path}] member(s) found.")

        added = result.added.setdefault(group_id, {})
        for key, username in classification.to_create.items():
            user_id = user_ids[key]
            logger.info(f"Adding user #{user_id} \"{username}\" to group #{group_id} \"{name}\" [{path}].")
            self.executor.run(f"add user #{user_id} \"{username}\" to group #{group_id} \"{name}\"",
                              self.platform.add_group_member, group_id, user_id,
                              self.options.new_member_access_level,
                              simulated_tag=f"{path}:{user_id}")
            added[user_id] = username
        logger.log(NOTICE, f"{len(added)} platform group \"{name}\" [{path}] member(s) added.")

        removed = result.removed.setdefault(group_id, {})
        for user_id, username in classification.to_retire.items():
            logger.info(f"Deleting user #{user_id} \"{username}\" from group #{group_id} \"{name}\" [{path}].")
            self.executor.run(f"remove user #{user_id} \"{username}\" from group #{group_id} \"{name}\"",
                              self.platform.remove_group_member, group_id, user_id)
            removed[user_id] = username
        logger.log(NOTICE, f"{len(removed)} platform group \"{name}\" [{path}] member(s) deleted.")
